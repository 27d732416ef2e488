# provisioning.py: link a phone number to a user with a one-time WhatsApp code
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional

import database as db
from messaging import WhatsAppMessenger, normalize_number

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=10)
OTP_MESSAGE = "Seu código de verificação é {code}. Vai expirar em 10 minutos."


def generate_code() -> str:
    """Six digits, never starting with 0."""
    return str(100000 + secrets.randbelow(900000))


def provision(
    phone: str,
    messenger: WhatsAppMessenger,
    email: Optional[str] = None,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Upsert the user (by email when given, otherwise a fresh anonymous user),
    store a verification code and send it over WhatsApp when delivery is configured.
    """
    phone = normalize_number(phone)
    if not phone:
        raise ValueError("phone is required")
    now = now or datetime.now()

    if email:
        user = db.upsert_user_by_email(email, name)
    else:
        user = db.create_anonymous_user(name)

    code = generate_code()
    db.create_phone_verification(user["id"], phone, code, now + OTP_TTL)

    if not messenger.configured:
        logger.warning("OTP generated for user %s but messaging is not configured", user["id"])
        return {"ok": True, "user_id": user["id"], "notice": "OTP generated; messaging not configured on server"}

    if not messenger.send_text(phone, OTP_MESSAGE.format(code=code)):
        return {"ok": True, "user_id": user["id"], "notice": "OTP generated; delivery failed"}
    return {"ok": True, "user_id": user["id"]}


def verify(phone: str, code: str, now: Optional[datetime] = None) -> Optional[int]:
    phone = normalize_number(phone)
    code = (code or "").strip()
    if not phone or not code:
        raise ValueError("phone and code are required")
    return db.consume_phone_verification(phone, code, now or datetime.now())
