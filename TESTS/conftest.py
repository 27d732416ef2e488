# TESTS/conftest.py
import json
import os
import sys
import types

import pytest

# --- Make project importable ---
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

KNOWN_NUMBER = "+5511999990000"
VERIFY_TOKEN = "s3cret-token"


def scripted_reply(text: str) -> dict:
    """Deterministic stand-in for the model's classification output."""
    t = (text or "").lower()
    if "gastei" in t and "mercado" in t:
        return {
            "isTransaction": True, "amount": 50, "type": "expense", "category": "Alimentação",
            "description": "Compra no mercado", "payment_method": "card", "supplier_name": "Mercado",
        }
    if "recebi" in t and "salário" in t:
        return {
            "isTransaction": True, "amount": 1000, "type": "income", "category": "Salário",
            "description": "Salário", "payment_method": "pix", "client_name": "Empresa",
        }
    return {"isTransaction": False}


class FakeOpenAI:
    """Duck-types the parts of openai.OpenAI the assistant touches."""

    def __init__(self):
        self.calls = []
        self.transcriptions = []
        self.responder = lambda text: json.dumps(scripted_reply(text), ensure_ascii=False)
        self.transcript = "Gastei R$ 50 no mercado com cartão"
        self.chat = types.SimpleNamespace(completions=types.SimpleNamespace(create=self._create))
        self.audio = types.SimpleNamespace(transcriptions=types.SimpleNamespace(create=self._transcribe))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.responder(kwargs["messages"][-1]["content"])
        message = types.SimpleNamespace(content=content)
        return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])

    def _transcribe(self, **kwargs):
        self.transcriptions.append(kwargs)
        return types.SimpleNamespace(text=self.transcript)


class FakeTwilio:
    def __init__(self):
        self.sent = []
        self.messages = types.SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.sent.append(kwargs)
        return types.SimpleNamespace(sid=f"SM{len(self.sent):04d}")


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import database as db
    test_db = str(tmp_path / "test_finance.db")
    monkeypatch.setattr(db, "DB_PATH", test_db, raising=False)
    db.initialize_database()
    db.apply_compat_migrations()
    return test_db


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def assistant(fake_openai):
    from ai_assistant import AssistantClient
    return AssistantClient(api_key=None, client=fake_openai, max_retries=0, request_sleep_sec=0)


@pytest.fixture
def fake_twilio():
    return FakeTwilio()


@pytest.fixture
def messenger(fake_twilio):
    from messaging import WhatsAppMessenger
    return WhatsAppMessenger("ACtest", "authtoken", "+14155238886", client=fake_twilio)


@pytest.fixture
def handler(temp_db, assistant, messenger):
    from message_handler import MessageHandler
    return MessageHandler(assistant, messenger)


@pytest.fixture
def user(temp_db):
    import database as db
    u, _ = db.get_or_create_whatsapp_user(KNOWN_NUMBER)
    return u


@pytest.fixture
def app(temp_db, assistant, messenger):
    from app import create_app
    return create_app(
        {"TESTING": True, "WHATSAPP_VERIFY_TOKEN": VERIFY_TOKEN},
        assistant=assistant,
        messenger=messenger,
    )


@pytest.fixture
def app_client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(user):
    return {"X-User-Id": str(user["id"])}
