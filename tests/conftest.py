import os
import re
from urllib.parse import unquote

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["USER_TOKENS"] = "alice:tok-alice,bob:tok-bob"
os.environ["GOOGLE_SHEETS_API_KEY"] = "test-key"
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

import pytest

from db import Base, engine, SessionLocal
import models  # noqa: F401  (registers tables)
from sheets import RecordStore, SheetsApiError, SheetsConfig


def _col_index(letters):
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - 64)
    return n


class FakeSheets:
    """In-memory stand-in for the Sheets values API.

    Implements the ``request(method, endpoint, params, body)`` contract the
    store uses. Rows are lists of strings; cleared cells become "".
    """

    def __init__(self, tabs=("Appointments", "Patients"), title="Clinic"):
        self.title = title
        self.tabs = {name: [] for name in tabs}
        self.calls = []
        self.failures = []   # (method or None, SheetsApiError), consumed in order
        self.hooks = []      # callables(method, a1_range) run before each values call

    # ---- helpers for tests
    def fail_next(self, status, message="", method=None):
        self.failures.append((method, SheetsApiError(status, message)))

    def rows(self, tab):
        return self.tabs[tab]

    def _parse(self, a1):
        sheet, _, cells = a1.rpartition("!")
        if sheet.startswith("'") and sheet.endswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
        if sheet not in self.tabs:
            raise SheetsApiError(400, f"Unable to parse range: {a1}")
        m = re.fullmatch(r"([A-Z]+)(\d*):([A-Z]+)(\d*)", cells)
        c1, r1, c2, r2 = m.groups()
        return sheet, _col_index(c1), int(r1) if r1 else 1, _col_index(c2), int(r2) if r2 else None

    def _read(self, sheet, c1, r1, c2, r2):
        rows = self.tabs[sheet]
        last = len(rows) if r2 is None else min(r2, len(rows))
        out = []
        for r in range(r1, last + 1):
            cells = list(rows[r - 1][c1 - 1:c2])
            while cells and cells[-1] == "":
                cells.pop()
            out.append(cells)
        while out and not out[-1]:
            out.pop()
        return out

    def _write(self, sheet, c1, row_no, values):
        rows = self.tabs[sheet]
        while len(rows) < row_no:
            rows.append([])
        row = rows[row_no - 1]
        while len(row) < c1 - 1 + len(values):
            row.append("")
        for i, v in enumerate(values):
            row[c1 - 1 + i] = v

    def _last_used_row(self, sheet):
        rows = self.tabs[sheet]
        for i in range(len(rows), 0, -1):
            if any(cell != "" for cell in rows[i - 1]):
                return i
        return 0

    # ---- transport
    def request(self, method, endpoint="", params=None, body=None):
        self.calls.append((method, endpoint, params, body))
        for i, (m, err) in enumerate(self.failures):
            if m is None or m == method:
                del self.failures[i]
                raise err

        if endpoint == "":
            sheets = [{"properties": {"title": t}} for t in self.tabs]
            if params and params.get("fields"):
                return {"sheets": sheets}
            return {"spreadsheetId": "sheet-1", "properties": {"title": self.title}, "sheets": sheets}
        if endpoint == ":batchUpdate":
            for req in body["requests"]:
                self.tabs.setdefault(req["addSheet"]["properties"]["title"], [])
            return {"replies": [{}]}

        rest = endpoint[len("/values/"):]
        verb = ""
        for suffix in (":append", ":clear"):
            if rest.endswith(suffix):
                rest, verb = rest[: -len(suffix)], suffix
        a1 = unquote(rest)
        for hook in list(self.hooks):
            hook(method, a1)
        sheet, c1, r1, c2, r2 = self._parse(a1)

        if method == "GET":
            return {"range": a1, "majorDimension": "ROWS", "values": self._read(sheet, c1, r1, c2, r2)}
        if method == "PUT":
            for offset, values in enumerate(body["values"]):
                self._write(sheet, c1, r1 + offset, values)
            return {"updatedRange": a1}
        if verb == ":append":
            start = self._last_used_row(sheet) + 1
            for offset, values in enumerate(body["values"]):
                self._write(sheet, c1, start + offset, values)
            return {"updates": {"updatedRange": f"{sheet}!A{start}"}}
        if verb == ":clear":
            rows = self.tabs[sheet]
            for r in range(r1, (r2 or len(rows)) + 1):
                if r <= len(rows):
                    row = rows[r - 1]
                    for c in range(c1, min(c2, len(row)) + 1):
                        row[c - 1] = ""
            return {"clearedRange": a1}
        raise AssertionError(f"unexpected request {method} {endpoint}")


@pytest.fixture
def fake():
    return FakeSheets()


@pytest.fixture
def store(fake):
    s = RecordStore(SheetsConfig("sheet-1"), request=fake.request)
    s.initialize()
    fake.calls.clear()
    return s


@pytest.fixture
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        yield db


@pytest.fixture
def client(fake, db_session):
    import app as app_module
    app_module.app.config.update(TESTING=True, SHEETS_REQUEST=fake.request)
    with app_module.app.test_client() as c:
        yield c
    app_module.app.config["SHEETS_REQUEST"] = None


@pytest.fixture
def auth():
    def headers(token="tok-alice"):
        return {"Authorization": f"Bearer {token}"}
    return headers
