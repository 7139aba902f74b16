"""Request payloads for records, settings and SMS.

Payloads use camelCase keys on the wire; field names are snake_case and are
also accepted. Unknown keys, including the store-owned ``id``,
``createdAt``, ``updatedAt`` and ``ownerId``, are rejected.
"""
from typing import Annotated, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

Status = Literal["pending", "confirmed", "cancelled", "completed"]
Provider = Literal["twilio", "aws_sns", "messagebird"]
NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
HourMinute = Annotated[str, StringConstraints(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


def _not_null(value):
    if value is None:
        raise ValueError("may not be null")
    return value


class AppointmentCreate(Payload):
    patient_name: NonBlank
    patient_phone: NonBlank
    patient_email: str = ""
    appointment_date: NonBlank
    appointment_time: NonBlank
    service_type: NonBlank
    status: Status = "pending"
    notes: str = ""
    whatsapp_message_id: str = ""
    sms_message_id: str = ""


class AppointmentUpdate(Payload):
    patient_name: Optional[NonBlank] = None
    patient_phone: Optional[NonBlank] = None
    patient_email: Optional[str] = None
    appointment_date: Optional[NonBlank] = None
    appointment_time: Optional[NonBlank] = None
    service_type: Optional[NonBlank] = None
    status: Optional[Status] = None
    notes: Optional[str] = None
    whatsapp_message_id: Optional[str] = None
    sms_message_id: Optional[str] = None

    # only checked when the key is sent
    _required = field_validator(
        "patient_name", "patient_phone", "appointment_date", "appointment_time", "service_type", "status",
    )(_not_null)


class PatientCreate(Payload):
    name: NonBlank
    phone: NonBlank
    email: str = ""
    date_of_birth: str = ""
    address: str = ""
    emergency_contact: str = ""
    medical_notes: str = ""


class PatientUpdate(Payload):
    name: Optional[NonBlank] = None
    phone: Optional[NonBlank] = None
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    medical_notes: Optional[str] = None

    _required = field_validator("name", "phone")(_not_null)


class SheetsSettingsIn(Payload):
    spreadsheet_id: NonBlank
    appointments_sheet_name: Optional[str] = None
    patients_sheet_name: Optional[str] = None


class BusinessHoursIn(Payload):
    enabled: Optional[bool] = None
    start: Optional[HourMinute] = None
    end: Optional[HourMinute] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value):
        if value is not None:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"unknown timezone: {value}")
        return value


class SmsSettingsIn(Payload):
    provider: Optional[Provider] = None
    from_number: Optional[str] = None
    is_active: Optional[bool] = None
    auto_reply: Optional[bool] = None
    business_hours: Optional[BusinessHoursIn] = None


class SmsSendIn(Payload):
    to: NonBlank
    message: str = Field(min_length=1)
    appointment_id: Optional[str] = None
