"""Clinic records and their positional spreadsheet row layout.

Each record kind lives on its own tab with a fixed column order and a
single header row. Cells are plain strings; optional fields that are not
set are stored as empty cells and read back as ``""``.
"""
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Sequence, Tuple, Type

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from schemas import AppointmentCreate, AppointmentUpdate, PatientCreate, PatientUpdate

DEFAULT_STATUS = "pending"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, ``...Z`` suffixed."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_record_id(prefix: str) -> str:
    millis = int(time.time() * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{millis}_{suffix}"


def column_letter(index: int) -> str:
    # 1 -> A, 26 -> Z, 27 -> AA
    col = index
    letters = []
    while col > 0:
        col, rem = divmod(col - 1, 26)
        letters.append(chr(65 + rem))
    return "".join(reversed(letters))


class Record:
    """Shared row/JSON mapping for the dataclass records below.

    Subclasses declare ``PREFIX`` (id prefix), ``HEADERS`` (header row text,
    one per dataclass field, same order) and the ``CREATE`` / ``UPDATE``
    payload schemas.
    """

    PREFIX: ClassVar[str]
    HEADERS: ClassVar[Tuple[str, ...]]
    CREATE: ClassVar[Type[BaseModel]]
    UPDATE: ClassVar[Type[BaseModel]]
    DEFAULTS: ClassVar[Dict[str, str]] = {}

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def last_column(cls) -> str:
        return column_letter(len(cls.HEADERS))

    @classmethod
    def owner_column(cls) -> int:
        return cls.field_names().index("owner_id")

    def to_row(self) -> List[str]:
        return [getattr(self, name) or "" for name in self.field_names()]

    @classmethod
    def from_row(cls, row: Sequence) -> "Record":
        values = {}
        for i, name in enumerate(cls.field_names()):
            cell = row[i] if i < len(row) else None
            value = "" if cell is None else str(cell)
            if not value and name in cls.DEFAULTS:
                value = cls.DEFAULTS[name]
            values[name] = value
        return cls(**values)

    def to_dict(self) -> dict:
        return {to_camel(name): getattr(self, name) for name in self.field_names()}

    @classmethod
    def build(cls, payload: Any, owner_id: str) -> "Record":
        """Create a fresh record with generated id and timestamps."""
        if not owner_id:
            raise ValueError("owner id is required")
        values = cls.CREATE.model_validate(payload).model_dump()
        now = utc_now_iso()
        return cls(
            **values,
            id=new_record_id(cls.PREFIX),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
        )

    def merged(self, payload: Any) -> "Record":
        changes = self.UPDATE.model_validate(payload).model_dump(exclude_unset=True)
        values = {name: (value or "") for name, value in changes.items()}
        return replace(self, **values, updated_at=utc_now_iso())


@dataclass
class Appointment(Record):
    PREFIX: ClassVar[str] = "apt"
    HEADERS: ClassVar[Tuple[str, ...]] = (
        "ID", "Patient Name", "Patient Phone", "Patient Email",
        "Appointment Date", "Appointment Time", "Service Type",
        "Status", "Notes", "WhatsApp Message ID", "SMS Message ID",
        "Created At", "Updated At", "User ID",
    )
    CREATE: ClassVar[Type[BaseModel]] = AppointmentCreate
    UPDATE: ClassVar[Type[BaseModel]] = AppointmentUpdate
    DEFAULTS: ClassVar[Dict[str, str]] = {"status": DEFAULT_STATUS}

    id: str = ""
    patient_name: str = ""
    patient_phone: str = ""
    patient_email: str = ""
    appointment_date: str = ""
    appointment_time: str = ""
    service_type: str = ""
    status: str = DEFAULT_STATUS
    notes: str = ""
    whatsapp_message_id: str = ""
    sms_message_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    owner_id: str = ""


@dataclass
class Patient(Record):
    PREFIX: ClassVar[str] = "pat"
    HEADERS: ClassVar[Tuple[str, ...]] = (
        "ID", "Name", "Phone", "Email", "Date of Birth",
        "Address", "Emergency Contact", "Medical Notes",
        "Created At", "Updated At", "User ID",
    )
    CREATE: ClassVar[Type[BaseModel]] = PatientCreate
    UPDATE: ClassVar[Type[BaseModel]] = PatientUpdate

    id: str = ""
    name: str = ""
    phone: str = ""
    email: str = ""
    date_of_birth: str = ""
    address: str = ""
    emergency_contact: str = ""
    medical_notes: str = ""
    created_at: str = ""
    updated_at: str = ""
    owner_id: str = ""
