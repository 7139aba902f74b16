"""SMS pass-through to the owner's configured provider.

One attempt per message, no queue. Every sent or received message is logged
in the ``sms_messages`` table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

import requests
from botocore.exceptions import BotoCoreError, ClientError

from models import SmsMessage, SmsSettings
from records import Appointment, new_record_id
from schemas import BusinessHoursIn, SmsSettingsIn

logger = logging.getLogger(__name__)

TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
MESSAGEBIRD_URL = "https://rest.messagebird.com/messages"
PROVIDER_TIMEOUT = 15

WELCOME_TEXT = (
    "Thank you for contacting our clinic! We will respond to your message during business hours. "
    "For emergencies, please call our main number."
)
BOOKING_REPLY = (
    "Thank you for your appointment request! Our staff will contact you shortly to schedule your "
    "appointment. You can also call us directly at our main number."
)
CONFIRM_REPLY = "Your appointment has been confirmed. We look forward to seeing you!"
CHANGE_REPLY = (
    "We have received your request to modify your appointment. Our staff will contact you shortly "
    "to assist with rescheduling."
)


class SmsError(Exception):
    pass


class SmsNotConfigured(SmsError):
    pass


class OutsideBusinessHours(SmsError):
    pass


class ProviderError(SmsError):
    def __init__(self, provider: str, status: int, message: str = "") -> None:
        text = f"{provider} API error: {status}"
        if message:
            text += f" - {message}"
        super().__init__(text)
        self.provider = provider
        self.status = status


@dataclass
class ProviderKeys:
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    messagebird_api_key: str = ""


def confirmation_text(apt: Appointment) -> str:
    return (
        f"Hi {apt.patient_name}, your appointment with our clinic is confirmed for "
        f"{apt.appointment_date} at {apt.appointment_time}. Please arrive 15 minutes early. "
        "Reply CANCEL to cancel."
    )


def reminder_text(apt: Appointment) -> str:
    return (
        f"Reminder: You have an appointment tomorrow at {apt.appointment_time} with our clinic. "
        "Reply CONFIRM to confirm or RESCHEDULE to change."
    )


def auto_reply_text(settings: SmsSettings) -> str:
    return (
        "Thank you for contacting our clinic! We have received your message and will respond during "
        f"business hours ({settings.hours_start} - {settings.hours_end}). "
        "For emergencies, please call our main number."
    )


def _minutes(hhmm: str) -> int:
    hh, mm = map(int, hhmm.split(":"))
    return hh * 60 + mm


def within_business_hours(settings: SmsSettings, now: datetime) -> bool:
    if not settings.hours_enabled:
        return True
    local = now.astimezone(ZoneInfo(settings.timezone or "UTC"))
    current = local.hour * 60 + local.minute
    return _minutes(settings.hours_start) <= current <= _minutes(settings.hours_end)


def apply_settings(settings: SmsSettings, data: dict) -> SmsSettings:
    """Copy a camelCase settings payload onto ``settings``; unset keys keep their value."""
    payload = SmsSettingsIn.model_validate(data)
    hours = payload.business_hours or BusinessHoursIn()

    settings.provider = payload.provider or settings.provider or "twilio"
    if payload.from_number is not None:
        settings.from_number = payload.from_number
    elif settings.from_number is None:
        settings.from_number = ""
    settings.is_active = _pick(payload.is_active, settings.is_active, True)
    settings.auto_reply = _pick(payload.auto_reply, settings.auto_reply, False)
    settings.hours_enabled = _pick(hours.enabled, settings.hours_enabled, False)
    settings.hours_start = hours.start or settings.hours_start or "09:00"
    settings.hours_end = hours.end or settings.hours_end or "17:00"
    settings.timezone = hours.timezone or settings.timezone or "UTC"
    return settings


def _pick(value, current, default):
    if value is not None:
        return value
    return default if current is None else bool(current)


class SmsService:
    def __init__(self, db, owner_id: str, keys: ProviderKeys, sns=None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.owner_id = owner_id
        self.keys = keys
        self.sns = sns
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.settings: Optional[SmsSettings] = (
            db.query(SmsSettings).filter_by(owner_id=owner_id).one_or_none()
        )

    def update_settings(self, data: dict) -> SmsSettings:
        settings = self.settings or SmsSettings(owner_id=self.owner_id)
        apply_settings(settings, data)
        self.db.add(settings)
        self.db.commit()
        self.db.refresh(settings)
        self.settings = settings
        return settings

    def send(self, to: str, message: str, appointment_id: Optional[str] = None) -> SmsMessage:
        settings = self.settings
        if settings is None or not settings.is_active:
            raise SmsNotConfigured("SMS service is not configured or inactive")
        if not to or not message:
            raise ValueError("recipient and message are required")
        if not within_business_hours(settings, self._clock()):
            raise OutsideBusinessHours("SMS can only be sent during business hours")

        provider_id = self._dispatch(settings, to, message)
        msg = SmsMessage(
            message_id=new_record_id("sms"), owner_id=self.owner_id,
            sender=settings.from_number, recipient=to, body=message,
            direction="outgoing", status="sent",
            appointment_id=appointment_id, provider_message_id=provider_id,
        )
        self.db.add(msg)
        self.db.commit()
        self.db.refresh(msg)
        return msg

    def _dispatch(self, settings: SmsSettings, to: str, message: str) -> str:
        provider = settings.provider
        try:
            if provider == "twilio":
                return self._send_twilio(settings, to, message)
            if provider == "aws_sns":
                return self._send_sns(to, message)
            if provider == "messagebird":
                return self._send_messagebird(settings, to, message)
        except SmsError as e:
            logger.error(f"Failed to send SMS via {provider}: {e}")
            raise
        raise SmsError(f"Unsupported SMS provider: {provider}")

    def _post(self, provider: str, url: str, **kwargs) -> dict:
        try:
            resp = requests.post(url, timeout=PROVIDER_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(provider, 0, str(e)) from e
        if resp.status_code != 201:
            try:
                detail = resp.json().get("message") or ""
            except (ValueError, AttributeError):
                detail = ""
            raise ProviderError(provider, resp.status_code, detail)
        try:
            return resp.json()
        except ValueError:
            return {}

    def _send_twilio(self, settings: SmsSettings, to: str, message: str) -> str:
        sid = self.keys.twilio_account_sid
        if not sid or not self.keys.twilio_auth_token:
            raise SmsNotConfigured("Twilio credentials are not configured")
        body = self._post(
            "Twilio", TWILIO_URL.format(sid=sid),
            data={"From": settings.from_number, "To": to, "Body": message},
            auth=(sid, self.keys.twilio_auth_token),
        )
        return str(body.get("sid") or "")

    def _send_messagebird(self, settings: SmsSettings, to: str, message: str) -> str:
        if not self.keys.messagebird_api_key:
            raise SmsNotConfigured("MessageBird API key is not configured")
        body = self._post(
            "MessageBird", MESSAGEBIRD_URL,
            headers={"Authorization": f"AccessKey {self.keys.messagebird_api_key}"},
            json={"originator": settings.from_number, "recipients": [to], "body": message},
        )
        return str(body.get("id") or "")

    def _send_sns(self, to: str, message: str) -> str:
        if self.sns is None:
            raise SmsNotConfigured("AWS SNS client is not configured")
        try:
            resp = self.sns.publish(PhoneNumber=to, Message=message)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            raise ProviderError("AWS SNS", status, e.response.get("Error", {}).get("Message", "")) from e
        except BotoCoreError as e:
            raise ProviderError("AWS SNS", 0, str(e)) from e
        return str(resp.get("MessageId") or "")

    def send_confirmation(self, apt: Appointment) -> SmsMessage:
        return self.send(apt.patient_phone, confirmation_text(apt), apt.id)

    def send_reminder(self, apt: Appointment) -> SmsMessage:
        return self.send(apt.patient_phone, reminder_text(apt), apt.id)

    def send_welcome(self, phone: str) -> SmsMessage:
        return self.send(phone, WELCOME_TEXT)

    def process_incoming(self, sender: str, message: str) -> List[SmsMessage]:
        """Log an inbound message and send keyword replies. Returns the replies sent."""
        settings = self.settings
        incoming = SmsMessage(
            message_id=new_record_id("sms"), owner_id=self.owner_id,
            sender=sender, recipient=(settings.from_number if settings else "") or "clinic",
            body=message, direction="incoming", status="delivered",
        )
        self.db.add(incoming)
        self.db.commit()

        lower = (message or "").lower()
        replies = []
        if any(k in lower for k in ("appointment", "book", "schedule")):
            replies.append(BOOKING_REPLY)
        if "confirm" in lower or lower.strip() == "yes":
            replies.append(CONFIRM_REPLY)
        if "cancel" in lower or "reschedule" in lower:
            replies.append(CHANGE_REPLY)
        # never answer our own auto-reply
        if settings is not None and settings.auto_reply and "thank you for contacting" not in lower:
            replies.append(auto_reply_text(settings))

        sent = []
        for text in replies:
            try:
                sent.append(self.send(sender, text))
            except SmsError as e:
                logger.error(f"Failed to reply to incoming SMS from {sender}: {e}")
        return sent

    def history(self, limit: int = 50) -> List[SmsMessage]:
        items = (
            self.db.query(SmsMessage)
            .filter_by(owner_id=self.owner_id)
            .order_by(SmsMessage.created_at.desc(), SmsMessage.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(items))
