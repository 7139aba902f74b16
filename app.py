import os, logging
from datetime import date
from functools import wraps
from flask import Flask, jsonify, request, g, redirect
import boto3
from dotenv import load_dotenv
from pydantic import ValidationError

from db import Base, engine, SessionLocal
from models import SheetsSettings
from schemas import SheetsSettingsIn, SmsSendIn
from sheets import (
    RecordStore, SheetsConfig, ApiKey, BearerToken,
    SheetsApiError, ConfigError, RecordNotFound, RowMovedError,
)
from messaging import (
    SmsService, ProviderKeys, SmsError, SmsNotConfigured, OutsideBusinessHours,
)

load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ---------------- App & config ----------------
app = Flask(__name__)
app.config["SHEETS_REQUEST"] = None  # transport override, see RecordStore
Base.metadata.create_all(bind=engine)

PORT           = int(os.getenv("PORT", "8000"))
CLINIC         = os.getenv("CLINIC_NAME", "Clinic Front Desk")
SHEETS_TIMEOUT = float(os.getenv("SHEETS_TIMEOUT", "15"))
AWS_REGION     = os.getenv("AWS_REGION", "us-east-1")

ADMIN_TOKEN  = os.getenv("ADMIN_TOKEN", "")
ADMIN_USER   = os.getenv("ADMIN_USER", "")

if os.getenv("GOOGLE_SHEETS_TOKEN"):
    SHEETS_CREDENTIALS = BearerToken(lambda: os.getenv("GOOGLE_SHEETS_TOKEN", ""))
else:
    SHEETS_CREDENTIALS = ApiKey(lambda: os.getenv("GOOGLE_SHEETS_API_KEY", ""))

PROVIDER_KEYS = ProviderKeys(
    twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
    twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
    messagebird_api_key=os.getenv("MESSAGEBIRD_API_KEY", ""),
)

sns = boto3.client("sns", region_name=AWS_REGION)

# ---------------- Helpers ----------------
def parse_user_tokens(raw: str) -> dict:
    """``alice:tok1,bob:tok2`` -> ``{"tok1": "alice", "tok2": "bob"}``"""
    tokens = {}
    for part in (raw or "").split(","):
        owner, sep, tok = part.strip().partition(":")
        if sep and owner.strip() and tok.strip():
            tokens[tok.strip()] = owner.strip()
    return tokens

USER_TOKENS = parse_user_tokens(os.getenv("USER_TOKENS", ""))
if ADMIN_TOKEN and ADMIN_USER:
    USER_TOKENS.setdefault(ADMIN_TOKEN, ADMIN_USER)

def _extract_token():
    # Header
    hdr = request.headers.get("Authorization", "")
    if hdr.startswith("Bearer "):
        return hdr[7:].strip()
    # Cookie
    c = request.cookies.get("Authorization", "")
    if c.startswith("Bearer "):
        return c[7:].strip()
    # Query param (provider webhooks)
    q = request.args.get("token", "")
    if q:
        return q.strip()
    return ""

def require_user(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not USER_TOKENS:
            return jsonify({"error":"no user tokens configured"}), 500
        owner = USER_TOKENS.get(_extract_token())
        if not owner:
            return jsonify({"error":"unauthorized"}), 401
        g.owner_id = owner
        return f(*args, **kwargs)
    return wrapper

def sheets_config(db, owner_id: str) -> SheetsConfig:
    row = db.query(SheetsSettings).filter_by(owner_id=owner_id).one_or_none()
    if row is None:
        return SheetsConfig("")
    return SheetsConfig(row.spreadsheet_id, row.appointments_sheet_name, row.patients_sheet_name)

def record_store(db) -> RecordStore:
    return RecordStore(
        sheets_config(db, g.owner_id), SHEETS_CREDENTIALS,
        timeout=SHEETS_TIMEOUT, request=app.config.get("SHEETS_REQUEST"),
    )

def sms_service(db) -> SmsService:
    return SmsService(db, g.owner_id, PROVIDER_KEYS, sns=sns)

def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data

def _list_response(result):
    resp = jsonify([r.to_dict() for r in result.records])
    if not result.ok:
        resp.headers["X-Sheets-Error"] = str(result.error)
    return resp

# ---------------- Errors ----------------
@app.errorhandler(RecordNotFound)
def not_found(e):
    return jsonify({"error": str(e)}), 404

@app.errorhandler(ValidationError)
def invalid_payload(e):
    details = e.errors(include_url=False, include_context=False, include_input=False)
    return jsonify({"error": "invalid payload", "details": details}), 400

@app.errorhandler(ValueError)
def bad_request(e):
    return jsonify({"error": str(e)}), 400

@app.errorhandler(ConfigError)
@app.errorhandler(RowMovedError)
def conflict(e):
    return jsonify({"error": str(e)}), 409

@app.errorhandler(SheetsApiError)
def sheets_failed(e):
    return jsonify({"error": str(e), "status": e.status}), 502

@app.errorhandler(SmsError)
def sms_failed(e):
    code = 409 if isinstance(e, (SmsNotConfigured, OutsideBusinessHours)) else 502
    return jsonify({"error": str(e)}), code

# ---------------- Health / Me ----------------
@app.get("/health")
def health():
    return jsonify({"status":"ok"})

@app.get("/me")
def me():
    owner = USER_TOKENS.get(_extract_token())
    return jsonify({"user": owner, "clinic": CLINIC})

# ---------------- Sheets settings ----------------
@app.get("/settings/sheets")
@require_user
def sheets_settings_get():
    with SessionLocal() as db:
        row = db.query(SheetsSettings).filter_by(owner_id=g.owner_id).one_or_none()
        if not row:
            return jsonify({"spreadsheetId": "", "appointmentsSheetName": None, "patientsSheetName": None})
        return jsonify(row.to_dict())

@app.put("/settings/sheets")
@require_user
def sheets_settings_put():
    data = SheetsSettingsIn.model_validate(_json_body())
    with SessionLocal() as db:
        row = db.query(SheetsSettings).filter_by(owner_id=g.owner_id).one_or_none()
        if not row:
            row = SheetsSettings(owner_id=g.owner_id)
            db.add(row)
        row.spreadsheet_id = data.spreadsheet_id
        row.appointments_sheet_name = (data.appointments_sheet_name or "").strip() or None
        row.patients_sheet_name = (data.patients_sheet_name or "").strip() or None
        db.commit(); db.refresh(row)
        result = record_store(db).test_connection()
        return jsonify({**row.to_dict(), "connection": result})

@app.post("/settings/sheets/test")
@require_user
def sheets_test():
    with SessionLocal() as db:
        return jsonify(record_store(db).test_connection())

@app.post("/settings/sheets/init")
@require_user
def sheets_init():
    with SessionLocal() as db:
        return jsonify({"headersWritten": record_store(db).initialize()})

# ---------------- Appointments ----------------
@app.get("/appointments")
@require_user
def appt_list():
    with SessionLocal() as db:
        return _list_response(record_store(db).appointments.fetch(g.owner_id))

@app.post("/appointments")
@require_user
def appt_create():
    changes = _json_body()
    with SessionLocal() as db:
        apt = record_store(db).appointments.create(changes, g.owner_id)
        return jsonify(apt.to_dict()), 201

@app.get("/appointments/<apt_id>")
@require_user
def appt_get(apt_id):
    with SessionLocal() as db:
        return jsonify(record_store(db).appointments.get(apt_id, g.owner_id).to_dict())

@app.patch("/appointments/<apt_id>")
@require_user
def appt_update(apt_id):
    changes = _json_body()
    with SessionLocal() as db:
        apt = record_store(db).appointments.update(apt_id, changes, g.owner_id)
        return jsonify(apt.to_dict())

@app.delete("/appointments/<apt_id>")
@require_user
def appt_delete(apt_id):
    with SessionLocal() as db:
        record_store(db).appointments.delete(apt_id, g.owner_id)
        return "", 204

@app.post("/appointments/<apt_id>/sms/<kind>")
@require_user
def appt_sms(apt_id, kind):
    if kind not in ("confirmation", "reminder"):
        return jsonify({"error":"kind must be confirmation or reminder"}), 404
    with SessionLocal() as db:
        store = record_store(db)
        apt = store.appointments.get(apt_id, g.owner_id)
        svc = sms_service(db)
        msg = svc.send_confirmation(apt) if kind == "confirmation" else svc.send_reminder(apt)
        store.appointments.update(apt_id, {"sms_message_id": msg.provider_message_id}, g.owner_id)
        return jsonify(msg.to_dict()), 201

# ---------------- Patients ----------------
@app.get("/patients")
@require_user
def patients_list():
    with SessionLocal() as db:
        return _list_response(record_store(db).patients.fetch(g.owner_id))

@app.post("/patients")
@require_user
def patients_create():
    changes = _json_body()
    with SessionLocal() as db:
        p = record_store(db).patients.create(changes, g.owner_id)
        return jsonify(p.to_dict()), 201

@app.get("/patients/<pat_id>")
@require_user
def patients_get(pat_id):
    with SessionLocal() as db:
        return jsonify(record_store(db).patients.get(pat_id, g.owner_id).to_dict())

@app.patch("/patients/<pat_id>")
@require_user
def patients_update(pat_id):
    changes = _json_body()
    with SessionLocal() as db:
        p = record_store(db).patients.update(pat_id, changes, g.owner_id)
        return jsonify(p.to_dict())

@app.delete("/patients/<pat_id>")
@require_user
def patients_delete(pat_id):
    with SessionLocal() as db:
        record_store(db).patients.delete(pat_id, g.owner_id)
        return "", 204

# ---------------- Dashboard ----------------
@app.get("/dashboard/stats")
@require_user
def dashboard_stats():
    today = date.today().isoformat()
    with SessionLocal() as db:
        store = record_store(db)
        appts = store.appointments.list(g.owner_id)
        patients = store.patients.list(g.owner_id)
        return jsonify({
            "totalAppointments": len(appts),
            "todayAppointments": sum(1 for a in appts if a.appointment_date == today),
            "pendingAppointments": sum(1 for a in appts if a.status == "pending"),
            "totalPatients": len(patients),
            "smsMessages": sum(1 for a in appts if a.sms_message_id),
        })

# ---------------- SMS ----------------
@app.get("/settings/sms")
@require_user
def sms_settings_get():
    with SessionLocal() as db:
        settings = sms_service(db).settings
        return jsonify(settings.to_dict() if settings else None)

@app.put("/settings/sms")
@require_user
def sms_settings_put():
    data = _json_body()
    with SessionLocal() as db:
        return jsonify(sms_service(db).update_settings(data).to_dict())

@app.post("/sms/send")
@require_user
def sms_send():
    data = SmsSendIn.model_validate(_json_body())
    with SessionLocal() as db:
        msg = sms_service(db).send(data.to, data.message, appointment_id=data.appointment_id)
        return jsonify(msg.to_dict()), 201

@app.get("/sms/messages")
@require_user
def sms_messages():
    limit = request.args.get("limit", 50, type=int)
    with SessionLocal() as db:
        return jsonify([m.to_dict() for m in sms_service(db).history(limit)])

@app.post("/sms/incoming")
@require_user
def sms_incoming():
    # Twilio posts form fields, other providers JSON
    data = request.get_json(silent=True)
    if data is None:
        data = request.form
    elif not isinstance(data, dict):
        raise ValueError("expected a JSON object or form fields")
    sender = data.get("From") or data.get("from") or data.get("originator") or ""
    body = data.get("Body") or data.get("body") or data.get("message") or ""
    if not isinstance(sender, str) or not isinstance(body, str):
        raise ValueError("sender and body must be strings")
    sender = sender.strip()
    if not sender:
        raise ValueError("sender is required")
    with SessionLocal() as db:
        replies = sms_service(db).process_incoming(sender, body)
        return jsonify({"replies": [m.to_dict() for m in replies]})

@app.get("/")
def root():
    return redirect("/health", code=302)

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=PORT)
