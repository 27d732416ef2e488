# TESTS/test_provision.py
import re
from datetime import datetime, timedelta

import pytest

import database as db
import provisioning
from messaging import WhatsAppMessenger

PHONE = "+5541987654321"


def _sent_code(fake_twilio):
    return re.search(r"\b(\d{6})\b", fake_twilio.sent[-1]["body"]).group(1)


def test_generate_code_is_six_digits():
    for _ in range(50):
        code = provisioning.generate_code()
        assert len(code) == 6 and code.isdigit() and code[0] != "0"


def test_provision_sends_code_and_verify_links_number(temp_db, messenger, fake_twilio):
    out = provisioning.provision(PHONE, messenger, email="ana@example.com", name="Ana")
    assert out == {"ok": True, "user_id": out["user_id"]}
    assert fake_twilio.sent[-1]["to"] == f"whatsapp:{PHONE}"

    code = _sent_code(fake_twilio)
    assert provisioning.verify(PHONE, "000000") is None
    assert provisioning.verify(PHONE, code) == out["user_id"]
    assert db.find_user_by_whatsapp(PHONE)["email"] == "ana@example.com"


def test_provision_same_email_reuses_user(temp_db, messenger):
    first = provisioning.provision(PHONE, messenger, email="ana@example.com")
    second = provisioning.provision(PHONE, messenger, email="ana@example.com")
    assert first["user_id"] == second["user_id"]


def test_code_expires(temp_db, messenger, fake_twilio):
    start = datetime(2026, 10, 18, 9, 0)
    provisioning.provision(PHONE, messenger, now=start)
    code = _sent_code(fake_twilio)
    assert provisioning.verify(PHONE, code, now=start + timedelta(minutes=11)) is None


def test_provision_without_messaging_returns_notice(temp_db):
    out = provisioning.provision(PHONE, WhatsAppMessenger(None, None, None))
    assert out["ok"] is True
    assert "not configured" in out["notice"]


def test_verify_requires_phone_and_code(temp_db):
    with pytest.raises(ValueError):
        provisioning.verify("", "123456")


def test_provision_routes(app_client, fake_twilio):
    assert app_client.post("/api/provision", json={}).status_code == 400

    r = app_client.post("/api/provision", json={"phone": PHONE, "email": "bob@example.com"})
    assert r.status_code == 200
    user_id = r.get_json()["user_id"]

    bad = app_client.post("/api/provision/verify", json={"phone": PHONE, "code": "999999"})
    assert bad.status_code == 400

    ok = app_client.post("/api/provision/verify", json={"phone": PHONE, "code": _sent_code(fake_twilio)})
    assert ok.status_code == 200
    assert ok.get_json() == {"ok": True, "user_id": user_id}


def test_verify_moves_number_from_chat_created_account(temp_db, handler, messenger, fake_twilio):
    from message_handler import InboundMessage

    chat = handler.handle(InboundMessage(sender=f"whatsapp:{PHONE}", body="oi"))
    assert db.find_user_by_whatsapp(PHONE)["id"] == chat.user_id

    out = provisioning.provision(PHONE, messenger, email="carla@example.com")
    assert out["user_id"] != chat.user_id

    verified = provisioning.verify(PHONE, _sent_code(fake_twilio))
    assert verified == out["user_id"]
    assert db.find_user_by_whatsapp(PHONE)["id"] == verified
    assert db.get_user(chat.user_id)["whatsapp_number"] is None

    # later chat messages land on the verified account
    again = handler.handle(InboundMessage(sender=f"whatsapp:{PHONE}", body="saldo"))
    assert again.user_id == verified
    assert again.created_user is False
