# TESTS/test_ai_assistant.py
import pytest

from ai_assistant import (
    AssistantClient,
    Classification,
    _loads_lenient,
    build_classification_prompt,
    parse_classification,
)


def test_parse_preferred_shape():
    c = parse_classification({
        "isTransaction": True, "amount": "R$ 50,90", "type": "despesa", "category": "Alimentação",
        "payment_method": "cartão", "supplier_name": "Mercado", "client_name": "ignored",
        "date": "05/10/2026",
    })
    assert c.is_transaction
    assert c.amount == 50.90
    assert c.type == "expense"
    assert c.payment_method == "card"
    assert c.supplier_name == "Mercado"
    assert c.client_name is None
    assert c.date == "2026-10-05"


def test_parse_compat_shape_and_query():
    c = parse_classification({"type": "income", "amount": 200})
    assert c.is_transaction and c.type == "income"
    assert c.payment_method == "cash"
    assert parse_classification({"type": "query"}) == Classification(is_transaction=False)


@pytest.mark.parametrize("payload", [
    {"isTransaction": True, "amount": 0, "type": "expense"},
    {"isTransaction": True, "amount": "muito", "type": "expense"},
    {"isTransaction": True, "amount": 10, "type": "transfer"},
    {"isTransaction": "false", "amount": 10, "type": "expense"},
])
def test_unusable_transactions_are_downgraded(payload):
    assert parse_classification(payload).is_transaction is False


def test_loads_lenient_handles_fences_and_prose():
    assert _loads_lenient('```json\n{"isTransaction": false}\n```') == {"isTransaction": False}
    assert _loads_lenient('Claro! {"amount": 5} espero ter ajudado') == {"amount": 5}
    assert _loads_lenient("sem json aqui") is None
    assert _loads_lenient("[1, 2]") is None


def test_prompt_embeds_categories_and_caps_payables():
    cats = [{"name": "Alimentação", "type": "expense"}, {"name": "Salário", "type": "income"}]
    payables = [{"party_name": f"F{i}", "amount": 10 * i, "due_date": "2026-11-01"} for i in range(1, 8)]
    prompt = build_classification_prompt("Ana", cats, payables, today="2026-10-18")
    assert "- Alimentação (expense)" in prompt
    assert "F5: R$ 50.00 até 2026-11-01" in prompt
    assert "F6" not in prompt
    assert "2026-10-18" in prompt
    assert "Nenhuma pendente" in build_classification_prompt(None, cats, [], today="2026-10-18")


def test_unconfigured_client_short_circuits():
    client = AssistantClient(api_key=None)
    assert client.configured is False
    assert client.classify("Gastei R$ 50 no mercado", "system") is None
    with pytest.raises(RuntimeError):
        client.transcribe(b"audio")


def test_classify_uses_json_mode(assistant, fake_openai):
    c = assistant.classify("Gastei R$ 50 no mercado", "system")
    assert c.amount == 50 and c.category == "Alimentação"
    call = fake_openai.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][0] == {"role": "system", "content": "system"}


def test_bad_output_falls_back_then_gives_up(assistant, fake_openai):
    fake_openai.responder = lambda text: "not json"
    assert assistant.classify("qualquer coisa", "system") is None
    # one enforced attempt, one unenforced fallback
    assert len(fake_openai.calls) == 2
    assert "response_format" not in fake_openai.calls[-1]


def test_classify_skips_blank_text(assistant, fake_openai):
    assert assistant.classify("   ", "system") is None
    assert fake_openai.calls == []


def test_transcribe_requests_portuguese(assistant, fake_openai):
    assert assistant.transcribe(b"OggS...") == "Gastei R$ 50 no mercado com cartão"
    kwargs = fake_openai.transcriptions[0]
    assert kwargs["language"] == "pt"
    assert kwargs["model"] == "whisper-1"
    assert kwargs["file"].name == "audio.ogg"
