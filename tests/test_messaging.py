from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError
from pydantic import ValidationError

import messaging
from messaging import (
    OutsideBusinessHours, ProviderError, ProviderKeys, SmsNotConfigured, SmsService,
    confirmation_text, within_business_hours,
)
from models import SmsMessage, SmsSettings
from records import Appointment

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
KEYS = ProviderKeys(twilio_account_sid="AC1", twilio_auth_token="secret", messagebird_api_key="mb")


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


class StubSns:
    def __init__(self, error=None):
        self.published = []
        self.error = error

    def publish(self, **kwargs):
        if self.error:
            raise self.error
        self.published.append(kwargs)
        return {"MessageId": "sns-1"}


@pytest.fixture
def posts(monkeypatch):
    calls = []
    replies = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return replies.pop(0) if replies else FakeResponse(201, {"sid": "SM1", "id": "mb1"})

    monkeypatch.setattr(messaging.requests, "post", fake_post)
    return calls, replies


def service(db, sns=None, **settings):
    svc = SmsService(db, "alice", KEYS, sns=sns, clock=lambda: NOON)
    svc.update_settings({"provider": "twilio", "fromNumber": "+15550000", **settings})
    return svc


def test_send_requires_settings(db_session):
    svc = SmsService(db_session, "alice", KEYS)
    with pytest.raises(SmsNotConfigured):
        svc.send("+1555", "hi")


def test_send_inactive(db_session):
    svc = service(db_session, isActive=False)
    with pytest.raises(SmsNotConfigured):
        svc.send("+1555", "hi")


def test_send_via_twilio_logs_message(db_session, posts):
    calls, _ = posts
    svc = service(db_session)
    msg = svc.send("+15551234", "hello", appointment_id="apt_1")

    url, kwargs = calls[0]
    assert url == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json"
    assert kwargs["data"] == {"From": "+15550000", "To": "+15551234", "Body": "hello"}
    assert kwargs["auth"] == ("AC1", "secret")
    assert msg.provider_message_id == "SM1"
    assert msg.direction == "outgoing" and msg.status == "sent"
    assert db_session.query(SmsMessage).filter_by(appointment_id="apt_1").count() == 1


def test_provider_error(db_session, posts):
    _, replies = posts
    replies.append(FakeResponse(400, {"message": "invalid To number"}))
    svc = service(db_session)
    with pytest.raises(ProviderError, match="Twilio API error: 400 - invalid To number"):
        svc.send("bad", "hello")
    assert db_session.query(SmsMessage).count() == 0


def test_send_via_messagebird(db_session, posts):
    calls, _ = posts
    svc = service(db_session, provider="messagebird")
    svc.send("+1555", "hello")
    url, kwargs = calls[0]
    assert url == "https://rest.messagebird.com/messages"
    assert kwargs["headers"]["Authorization"] == "AccessKey mb"
    assert kwargs["json"]["recipients"] == ["+1555"]


def test_send_via_sns(db_session):
    sns = StubSns()
    svc = service(db_session, sns=sns, provider="aws_sns")
    msg = svc.send("+1555", "hello")
    assert sns.published == [{"PhoneNumber": "+1555", "Message": "hello"}]
    assert msg.provider_message_id == "sns-1"


def test_sns_client_error(db_session):
    err = ClientError({"Error": {"Code": "InvalidParameter", "Message": "bad phone"},
                       "ResponseMetadata": {"HTTPStatusCode": 400}}, "Publish")
    svc = service(db_session, sns=StubSns(err), provider="aws_sns")
    with pytest.raises(ProviderError, match="bad phone"):
        svc.send("+1555", "hello")


def test_business_hours(db_session, posts):
    svc = service(db_session, businessHours={"enabled": True, "start": "13:00", "end": "17:00", "timezone": "UTC"})
    with pytest.raises(OutsideBusinessHours):
        svc.send("+1555", "hello")

    settings = svc.settings
    assert within_business_hours(settings, datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc))
    assert not within_business_hours(settings, datetime(2026, 10, 19, 17, 1, tzinfo=timezone.utc))


def test_settings_validation(db_session):
    svc = SmsService(db_session, "alice", KEYS)
    with pytest.raises(ValidationError, match="provider"):
        svc.update_settings({"provider": "pigeon"})
    with pytest.raises(ValidationError, match="start"):
        svc.update_settings({"businessHours": {"start": "9am"}})
    with pytest.raises(ValidationError, match="unknown timezone"):
        svc.update_settings({"businessHours": {"timezone": "Mars/Olympus"}})
    assert db_session.query(SmsSettings).count() == 0


def test_confirmation_template():
    apt = Appointment(patient_name="Ana", appointment_date="2026-10-20", appointment_time="09:30")
    text = confirmation_text(apt)
    assert "Hi Ana" in text and "2026-10-20 at 09:30" in text


def test_incoming_keywords_and_auto_reply(db_session, posts):
    calls, _ = posts
    svc = service(db_session, autoReply=True)
    replies = svc.process_incoming("+1555", "I want to book an appointment")
    assert len(replies) == 2
    assert "appointment request" in replies[0].body
    assert "business hours (09:00 - 17:00)" in replies[1].body
    assert len(calls) == 2

    incoming = db_session.query(SmsMessage).filter_by(direction="incoming").one()
    assert incoming.sender == "+1555" and incoming.recipient == "+15550000"


def test_incoming_ignores_own_auto_reply(db_session, posts):
    svc = service(db_session, autoReply=True)
    assert svc.process_incoming("+1555", "Thank you for contacting our clinic!") == []


def test_incoming_reply_failure_is_logged(db_session, posts):
    _, replies = posts
    replies.append(FakeResponse(500, {}))
    svc = service(db_session)
    assert svc.process_incoming("+1555", "please cancel") == []
    assert db_session.query(SmsMessage).filter_by(direction="incoming").count() == 1


def test_history_is_chronological(db_session, posts):
    svc = service(db_session)
    for text in ("one", "two", "three"):
        svc.send("+1555", text)
    assert [m.body for m in svc.history(limit=2)] == ["two", "three"]
