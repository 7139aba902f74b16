from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, func
from db import Base

class SheetsSettings(Base):
    __tablename__ = "sheets_settings"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(200), nullable=False, unique=True, index=True)
    spreadsheet_id = Column(String(200), nullable=False, default="")
    appointments_sheet_name = Column(String(100))
    patients_sheet_name = Column(String(100))
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            "spreadsheetId": self.spreadsheet_id or "",
            "appointmentsSheetName": self.appointments_sheet_name or None,
            "patientsSheetName": self.patients_sheet_name or None,
        }

class SmsSettings(Base):
    __tablename__ = "sms_settings"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(200), nullable=False, unique=True, index=True)
    provider = Column(String(30), nullable=False, default="twilio")
    from_number = Column(String(50), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    auto_reply = Column(Boolean, nullable=False, default=False)
    hours_enabled = Column(Boolean, nullable=False, default=False)
    hours_start = Column(String(5), nullable=False, default="09:00")
    hours_end = Column(String(5), nullable=False, default="17:00")
    timezone = Column(String(64), nullable=False, default="UTC")
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            "provider": self.provider,
            "fromNumber": self.from_number,
            "isActive": bool(self.is_active),
            "autoReply": bool(self.auto_reply),
            "businessHours": {
                "enabled": bool(self.hours_enabled),
                "start": self.hours_start,
                "end": self.hours_end,
                "timezone": self.timezone,
            },
        }

class SmsMessage(Base):
    __tablename__ = "sms_messages"
    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String(100), nullable=False, index=True)
    owner_id = Column(String(200), nullable=False, index=True)
    sender = Column(String(50), nullable=False)
    recipient = Column(String(50), nullable=False)
    body = Column(Text, nullable=False)
    direction = Column(String(10), nullable=False)  # incoming | outgoing
    status = Column(String(20), nullable=False)     # sent | delivered | failed
    appointment_id = Column(String(100))
    provider_message_id = Column(String(200))
    created_at = Column(DateTime, server_default=func.now(), index=True)

    def to_dict(self):
        return {
            "id": self.message_id,
            "from": self.sender,
            "to": self.recipient,
            "message": self.body,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
            "type": self.direction,
            "status": self.status,
            "appointmentId": self.appointment_id,
            "providerMessageId": self.provider_message_id,
        }
