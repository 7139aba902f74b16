"""Spreadsheet-backed record store.

Appointments and patients live on two tabs of one Google spreadsheet. There
is no index: every lookup reads the whole tab, and a record's row number is
its position among the data rows plus two (one for the header, one for
1-based addressing). Cleared rows keep their position.

Nothing here is transactional. ``update`` and ``delete`` locate the row with
a scan and then write to it; another session appending or clearing rows in
between can move the target. The row's id cell is re-read right before the
write, which narrows the window but does not close it.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Type, Union
from urllib.parse import quote

import requests

from records import Appointment, Patient, Record

logger = logging.getLogger(__name__)

SHEETS_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
DEFAULT_TIMEOUT = 15

RequestFn = Callable[..., dict]
Secret = Union[str, Callable[[], str]]


class SheetsApiError(Exception):
    def __init__(self, status: int, message: str = "", details=None) -> None:
        text = f"Google Sheets API error: {status}"
        if message:
            text += f" - {message}"
        if details:
            text += f" ({json.dumps(details)})"
        super().__init__(text)
        self.status = status
        self.message = message
        self.details = details


class ConfigError(Exception):
    pass


class RecordNotFound(Exception):
    pass


class RowMovedError(Exception):
    """The located row no longer holds the record it was located for."""


# ---------------- Credentials ----------------
def _resolve(secret: Secret) -> str:
    value = secret() if callable(secret) else secret
    return (value or "").strip()


class ApiKey:
    """Sends the key as the ``key`` query parameter."""

    def __init__(self, key: Secret) -> None:
        self._key = key

    def apply(self, params: dict, headers: dict) -> None:
        key = _resolve(self._key)
        if key:
            params["key"] = key


class BearerToken:
    def __init__(self, token: Secret) -> None:
        self._token = token

    def apply(self, params: dict, headers: dict) -> None:
        token = _resolve(self._token)
        if token:
            headers["Authorization"] = f"Bearer {token}"


# ---------------- Transport ----------------
class SheetsClient:
    def __init__(self, spreadsheet_id: str, credentials=None, timeout: Optional[float] = DEFAULT_TIMEOUT,
                 base_url: str = SHEETS_BASE) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.credentials = credentials
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def request(self, method: str, endpoint: str = "", params: Optional[dict] = None,
                body: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{quote(self.spreadsheet_id, safe='')}{endpoint}"
        params = dict(params or {})
        headers = {"Content-Type": "application/json"}
        if self.credentials is not None:
            self.credentials.apply(params, headers)
        try:
            resp = requests.request(
                method, url, params=params, headers=headers,
                data=(json.dumps(body) if body is not None else None),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Google Sheets request {method} {endpoint or '/'} failed: {e}")
            raise SheetsApiError(0, str(e)) from e
        if resp.status_code // 100 != 2:
            message, details = "", None
            try:
                err = resp.json().get("error") or {}
                message = err.get("message") or ""
                details = err.get("details")
            except (ValueError, AttributeError):
                message = resp.text
            error = SheetsApiError(resp.status_code, message, details)
            logger.error(f"Google Sheets API request failed: {error}")
            raise error
        try:
            return resp.json()
        except ValueError:
            return {}


# ---------------- Ranges ----------------
def sheet_ref(name: str) -> str:
    if re.fullmatch(r"[A-Za-z0-9_]+", name):
        return name
    return "'" + name.replace("'", "''") + "'"


def values_endpoint(a1_range: str, verb: str = "") -> str:
    return "/values/" + quote(a1_range, safe="") + verb


# ---------------- Store ----------------
@dataclass
class SheetsConfig:
    spreadsheet_id: str
    appointments_sheet_name: Optional[str] = None
    patients_sheet_name: Optional[str] = None

    def __post_init__(self) -> None:
        self.spreadsheet_id = (self.spreadsheet_id or "").strip()
        self.appointments_sheet_name = (self.appointments_sheet_name or "").strip() or "Appointments"
        self.patients_sheet_name = (self.patients_sheet_name or "").strip() or "Patients"


class ListResult(NamedTuple):
    """Records for one owner, or the error that prevented reading them."""
    records: List[Record]
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SheetTable:
    def __init__(self, record_cls: Type[Record], sheet_name: str, request: RequestFn) -> None:
        self.record_cls = record_cls
        self.sheet_name = sheet_name
        self._request = request
        self._ref = sheet_ref(sheet_name)
        self._last = record_cls.last_column()

    @property
    def kind(self) -> str:
        return self.record_cls.__name__.lower()

    def table_range(self) -> str:
        return f"{self._ref}!A:{self._last}"

    def header_range(self) -> str:
        return self.row_range(1)

    def row_range(self, row: int) -> str:
        return f"{self._ref}!A{row}:{self._last}{row}"

    def ensure_headers(self) -> bool:
        """Write the header row if row 1 is blank. Returns True if written."""
        data = self._request("GET", values_endpoint(self.header_range()))
        values = data.get("values") or []
        if values and any(str(cell).strip() for cell in values[0]):
            return False
        logger.info(f"Writing {self.kind} headers to {self.sheet_name}")
        self._request(
            "PUT", values_endpoint(self.header_range()),
            params={"valueInputOption": "RAW"},
            body={"values": [list(self.record_cls.HEADERS)]},
        )
        return True

    def _scan(self, owner_id: str) -> List[Tuple[int, Record]]:
        data = self._request("GET", values_endpoint(self.table_range()))
        rows = data.get("values") or []
        owner_col = self.record_cls.owner_column()
        found = []
        if not owner_id:
            return found
        for pos, row in enumerate(rows[1:]):
            if len(row) > owner_col and row[owner_col] == owner_id:
                found.append((pos + 2, self.record_cls.from_row(row)))
        return found

    def fetch(self, owner_id: str) -> ListResult:
        try:
            return ListResult([rec for _, rec in self._scan(owner_id)])
        except Exception as e:
            logger.warning(f"Error fetching {self.kind} records from {self.sheet_name}: {e}")
            return ListResult([], e)

    def list(self, owner_id: str) -> List[Record]:
        return self.fetch(owner_id).records

    def _locate(self, record_id: str, owner_id: str) -> Tuple[int, Record]:
        for row, rec in self._scan(owner_id):
            if rec.id == record_id:
                return row, rec
        raise RecordNotFound(f"{self.record_cls.__name__} not found")

    def _verify_row(self, row: int, record_id: str) -> None:
        data = self._request("GET", values_endpoint(f"{self._ref}!A{row}:A{row}"))
        values = data.get("values") or [[]]
        current = values[0][0] if values and values[0] else ""
        if current != record_id:
            raise RowMovedError(f"Row {row} of {self.sheet_name} changed while updating {record_id}")

    def get(self, record_id: str, owner_id: str) -> Record:
        return self._locate(record_id, owner_id)[1]

    def create(self, changes: Dict[str, Optional[str]], owner_id: str) -> Record:
        record = self.record_cls.build(changes, owner_id)
        try:
            self._request(
                "POST", values_endpoint(self.table_range(), ":append"),
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                body={"values": [record.to_row()]},
            )
        except Exception as e:
            logger.error(f"Error creating {self.kind}: {e}")
            raise
        return record

    def update(self, record_id: str, changes: Dict[str, Optional[str]], owner_id: str) -> Record:
        try:
            row, current = self._locate(record_id, owner_id)
            updated = current.merged(changes)
            self._verify_row(row, record_id)
            self._request(
                "PUT", values_endpoint(self.row_range(row)),
                params={"valueInputOption": "RAW"},
                body={"values": [updated.to_row()]},
            )
        except Exception as e:
            logger.error(f"Error updating {self.kind} {record_id}: {e}")
            raise
        return updated

    def delete(self, record_id: str, owner_id: str) -> None:
        try:
            row, _ = self._locate(record_id, owner_id)
            self._verify_row(row, record_id)
            self._request("POST", values_endpoint(self.row_range(row), ":clear"), body={})
        except Exception as e:
            logger.error(f"Error deleting {self.kind} {record_id}: {e}")
            raise


class RecordStore:
    """Appointments and patients tables of one spreadsheet.

    ``request`` replaces the HTTP transport; it must accept
    ``(method, endpoint, params=None, body=None)`` and return the decoded
    JSON body, raising ``SheetsApiError`` on failure.
    """

    def __init__(self, config: SheetsConfig, credentials=None, timeout: Optional[float] = DEFAULT_TIMEOUT,
                 request: Optional[RequestFn] = None) -> None:
        self.config = config
        if request is None:
            request = SheetsClient(config.spreadsheet_id, credentials, timeout).request
        self._transport = request
        self.appointments = SheetTable(Appointment, config.appointments_sheet_name, self._request)
        self.patients = SheetTable(Patient, config.patients_sheet_name, self._request)

    @property
    def tables(self) -> List[SheetTable]:
        return [self.appointments, self.patients]

    def _request(self, method: str, endpoint: str = "", params: Optional[dict] = None,
                 body: Optional[dict] = None) -> dict:
        if not self.config.spreadsheet_id:
            raise ConfigError("Spreadsheet ID is required")
        return self._transport(method, endpoint, params=params, body=body)

    def sheet_titles(self) -> List[str]:
        data = self._request("GET", "", params={"fields": "sheets.properties.title"})
        return [str((s.get("properties") or {}).get("title", "")) for s in data.get("sheets") or []]

    def initialize(self) -> Dict[str, bool]:
        """Create missing tabs and header rows. Safe to call repeatedly.

        Returns ``{sheet name: headers written}``.
        """
        try:
            titles = self.sheet_titles()
            written = {}
            for table in self.tables:
                if table.sheet_name not in titles:
                    logger.info(f"Adding missing sheet {table.sheet_name}")
                    self._request("POST", ":batchUpdate", body={
                        "requests": [{"addSheet": {"properties": {"title": table.sheet_name}}}],
                    })
                written[table.sheet_name] = table.ensure_headers()
            return written
        except Exception as e:
            logger.error(f"Error initializing sheets: {e}")
            raise

    def test_connection(self) -> dict:
        if not self.config.spreadsheet_id:
            return {"success": False, "error": "Spreadsheet ID is required"}
        try:
            data = self._request("GET", "")
        except SheetsApiError as e:
            logger.error(f"Google Sheets connection test failed: {e}")
            return {"success": False, "error": describe_connection_error(e)}
        if data and data.get("properties"):
            return {"success": True}
        return {"success": False, "error": "Invalid spreadsheet response"}


def describe_connection_error(error: SheetsApiError) -> str:
    if error.status == 404:
        return "Spreadsheet not found. Please check the spreadsheet ID and make sure it's accessible."
    if error.status == 403:
        return "Access denied. Please check your API key and spreadsheet permissions."
    if error.status == 400:
        return "Invalid request. Please check your API key and spreadsheet ID."
    if error.status == 0:
        return f"Connection failed: {error.message}" if error.message else "Connection failed"
    return str(error)
