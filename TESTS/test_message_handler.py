# TESTS/test_message_handler.py
from datetime import date

import pytest

import database as db
from query_responder import HELP_REPLY
from conftest import KNOWN_NUMBER
from message_handler import (
    APOLOGY_REPLY,
    AUDIO_PLACEHOLDER,
    InboundMessage,
    MessageHandler,
)
from messaging import WhatsAppMessenger


def _inbound(body, sender=KNOWN_NUMBER, **kw):
    return InboundMessage(sender=f"whatsapp:{sender}", body=body, **kw)


def test_expense_message_is_recorded_and_confirmed(handler, user, fake_twilio):
    result = handler.handle(_inbound("Gastei R$ 50 no mercado com cartão"))

    assert result.reply == "✅ Transação registrada: Despesa de R$ 50.00 na categoria Alimentação"
    assert result.delivered is True
    txn = db.get_transaction(user["id"], result.transaction_id)
    assert txn["amount"] == 50
    assert txn["type"] == "expense"
    assert txn["payment_method"] == "card"
    assert txn["supplier_name"] == "Mercado"
    assert txn["source"] == "whatsapp"
    assert txn["date"] == date.today().isoformat()
    assert txn["category_id"] == db.find_category_id(user["id"], "Alimentação")

    log = db.list_messages(user["id"])
    assert len(log) == 1
    assert log[0]["parsed_data"]["amount"] == 50
    assert log[0]["response"] == result.reply

    sent = fake_twilio.sent[0]
    assert sent["to"] == f"whatsapp:{KNOWN_NUMBER}"
    assert sent["body"] == result.reply


def test_first_message_creates_user_with_default_categories(handler):
    result = handler.handle(_inbound("Recebi R$ 1000 de salário", sender="+5548912345678"))

    assert result.created_user is True
    user = db.find_user_by_whatsapp("+5548912345678")
    assert user["id"] == result.user_id
    assert len(db.list_categories(user["id"])) == len(db.DEFAULT_CATEGORIES)
    assert db.fetch_summary(user["id"])["income"] == 1000

    again = handler.handle(_inbound("saldo", sender="+5548912345678"))
    assert again.created_user is False
    assert again.user_id == user["id"]


def test_query_message_writes_no_transaction(handler, user):
    db.add_transaction(user["id"], {"amount": 1000, "type": "income"})
    db.add_transaction(user["id"], {"amount": 400, "type": "expense"})

    result = handler.handle(_inbound("Qual meu saldo?"))

    assert result.transaction_id is None
    assert "R$ 600.00" in result.reply
    assert len(db.fetch_transactions(user["id"])) == 2
    assert db.list_messages(user["id"])[0]["parsed_data"] is None


def test_model_failure_falls_back_to_keyword_answer(handler, user, fake_openai):
    def boom(text):
        raise RuntimeError("upstream down")
    fake_openai.responder = boom

    result = handler.handle(_inbound("saldo"))

    assert result.reply.startswith("💰")
    assert result.transaction_id is None


def test_unconfigured_assistant_answers_by_keyword(temp_db, messenger, fake_twilio):
    from ai_assistant import AssistantClient
    h = MessageHandler(AssistantClient(api_key=None), messenger)

    result = h.handle(_inbound("Gastei R$ 50 no mercado"))

    assert result.transaction_id is None
    assert result.reply == HELP_REPLY
    assert fake_twilio.sent


def test_audio_is_transcribed_before_classification(handler, user, messenger, monkeypatch):
    monkeypatch.setattr(messenger, "fetch_media", lambda url: b"OggS")
    result = handler.handle(_inbound("", media_url="https://api.twilio.com/media/1", media_type="audio/ogg"))

    assert result.transaction_id is not None
    log = db.list_messages(user["id"])[0]
    assert log["message_type"] == "audio"
    assert log["original_message"] == "Gastei R$ 50 no mercado com cartão"


def test_failed_audio_uses_placeholder(handler, user, messenger, monkeypatch):
    def broken(url):
        raise IOError("403")
    monkeypatch.setattr(messenger, "fetch_media", broken)

    result = handler.handle(_inbound("", media_url="https://api.twilio.com/media/2", media_type="audio/ogg"))

    assert result.transaction_id is None
    assert db.list_messages(user["id"])[0]["original_message"] == AUDIO_PLACEHOLDER


def test_storage_failure_rolls_back_and_apologizes(handler, user, fake_twilio, monkeypatch):
    def failing_log(*args, **kwargs):
        raise RuntimeError("disk full")
    monkeypatch.setattr(db, "log_message", failing_log)

    result = handler.handle(_inbound("Gastei R$ 50 no mercado"))

    assert result.reply == APOLOGY_REPLY
    assert db.fetch_transactions(user["id"]) == []
    assert fake_twilio.sent[-1]["body"] == APOLOGY_REPLY


def test_reply_is_still_computed_without_messaging(temp_db, assistant, fake_twilio):
    h = MessageHandler(assistant, WhatsAppMessenger(None, None, None))

    result = h.handle(_inbound("Gastei R$ 50 no mercado"))

    assert result.transaction_id is not None
    assert result.delivered is False


def test_missing_sender_is_ignored(handler, fake_twilio):
    result = handler.handle(InboundMessage(sender="", body="saldo"))
    assert result.user_id is None
    assert fake_twilio.sent == []


@pytest.mark.parametrize("form, audio", [
    ({"From": "whatsapp:+551100", "Body": " oi ", "MediaUrl0": "", "MediaContentType0": ""}, False),
    ({"From": "whatsapp:+551100", "MediaUrl0": "https://x/1", "MediaContentType0": "audio/ogg"}, True),
    ({"From": "whatsapp:+551100", "MediaUrl0": "https://x/1", "MediaContentType0": "image/jpeg"}, False),
])
def test_inbound_from_form(form, audio):
    msg = InboundMessage.from_form(form)
    assert msg.sender == "whatsapp:+551100"
    assert msg.has_audio is audio
