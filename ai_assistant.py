# ai_assistant.py: language-understanding collaborator (classification + transcription)
import io
import os
import re
import json
import time
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from openai import OpenAI

logger = logging.getLogger(__name__)

# --- Config ---
MODEL = os.getenv("OPENAI_ASSISTANT_MODEL", "gpt-4o-mini")
TRANSCRIPTION_MODEL = os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1")
TRANSCRIPTION_LANGUAGE = "pt"
REQUEST_SLEEP_SEC = float(os.getenv("AI_REQUEST_SLEEP_SEC", "1.0"))
MAX_RETRIES = int(os.getenv("AI_MAX_RETRIES", "2"))  # first try + 2 retries

PAYMENT_METHODS = ("pix", "card", "cash", "transfer")
DEFAULT_PAYMENT_METHOD = "cash"

# Loose synonyms the model sometimes returns instead of the allowed codes.
_PAYMENT_ALIASES = {
    "cartão": "card", "cartao": "card", "crédito": "card", "credito": "card",
    "débito": "card", "debito": "card", "credit": "card", "debit": "card",
    "dinheiro": "cash", "espécie": "cash", "especie": "cash",
    "transferência": "transfer", "transferencia": "transfer", "ted": "transfer", "doc": "transfer",
}

_TYPE_ALIASES = {
    "income": "income", "receita": "income", "entrada": "income",
    "expense": "expense", "despesa": "expense", "gasto": "expense", "saída": "expense", "saida": "expense",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


# ------------------------------ Helpers ------------------------------

def _normalize(s: Optional[str]) -> str:
    return (s or "").strip()


def _lower(s: Optional[str]) -> str:
    return (s or "").strip().lower()


def build_classification_prompt(
    user_name: Optional[str],
    categories: List[Dict],
    payables: List[Dict],
    today: Optional[str] = None,
) -> str:
    """
    System prompt for the structured classification call.
    Embeds the user's categories and up to 5 pending payables as context.
    """
    today = today or datetime.now().strftime("%Y-%m-%d")
    cat_lines = "\n".join(f"- {c['name']} ({c['type']})" for c in categories) or "- (nenhuma)"
    pay_lines = "\n".join(
        f"- {p['party_name']}: R$ {float(p['amount']):.2f} até {p['due_date']}" for p in payables[:5]
    ) or "Nenhuma pendente"

    return f"""
Você é um assistente financeiro chamado Lasy Finance. Analise a mensagem do usuário
e extraia dados de transação financeira.

Data de hoje: {today}
Nome do usuário: {user_name or 'Usuário'}

Categorias disponíveis:
{cat_lines}

Contas a pagar próximas:
{pay_lines}

Regras:
- Use uma das categorias disponíveis sempre que possível.
- "Gastei", "paguei", "comprei" indicam despesa (expense); "recebi", "vendi" indicam receita (income).
- Datas relativas ("ontem") devem ser convertidas para YYYY-MM-DD; sem data, omita o campo.

Se for uma transação, retorne JSON assim:
{{
  "isTransaction": true,
  "amount": 100.00,
  "type": "expense" ou "income",
  "category": "categoria",
  "description": "descrição",
  "date": "YYYY-MM-DD",
  "payment_method": "pix|card|cash|transfer",
  "supplier_name": "nome da loja/fornecedor" (se expense),
  "client_name": "nome do cliente" (se income)
}}

Se NÃO for transação, retorne: {{ "isTransaction": false }}

IMPORTANTE: Retorne APENAS o JSON, sem markdown ou explicações.
""".strip()


def _loads_lenient(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """json.loads that tolerates ```json fences and leading prose around one object."""
    if not content:
        return None
    text = _FENCE_RE.sub("", content.strip())
    try:
        data = json.loads(text)
    except ValueError:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(text[start : end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def _parse_amount(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amt = float(value)
    else:
        s = str(value).replace("R$", "").strip()
        # 1.234,56 -> 1234.56 ; 50,90 -> 50.90
        if "," in s:
            s = s.replace(".", "").replace(",", ".")
        try:
            amt = float(s)
        except ValueError:
            return None
    return round(amt, 2) if amt > 0 else None


def _parse_date(value) -> Optional[str]:
    s = _normalize(value if isinstance(value, str) else None)
    if not s:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(s[:10], fmt).strftime("%Y-%m-%d")
        except ValueError:
            pass
    return None


@dataclass
class Classification:
    is_transaction: bool
    amount: Optional[float] = None
    type: Optional[str] = None
    category: Optional[str] = None
    description: str = ""
    date: Optional[str] = None
    payment_method: Optional[str] = None
    supplier_name: Optional[str] = None
    client_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_classification(data: Optional[Dict[str, Any]]) -> Optional[Classification]:
    """
    Normalize either model format into a Classification:
      {"isTransaction": true, "amount": ..., "type": ...}   (preferred)
      {"type": "expense", "amount": ...} / {"type": "query"} (compat)
    Returns None when the payload is unusable. A transaction without a positive
    amount or a recognizable direction is downgraded to not-a-transaction.
    """
    if not isinstance(data, dict):
        return None

    raw_type = _lower(data.get("type"))
    flag = data.get("isTransaction", data.get("is_transaction"))
    if flag is None:
        flag = raw_type in _TYPE_ALIASES
    if isinstance(flag, str):
        flag = flag.strip().lower() in ("true", "1", "yes", "sim")
    if not flag:
        return Classification(is_transaction=False)

    ttype = _TYPE_ALIASES.get(raw_type)
    amount = _parse_amount(data.get("amount"))
    if ttype is None or amount is None:
        return Classification(is_transaction=False)

    method = _lower(data.get("payment_method"))
    method = _PAYMENT_ALIASES.get(method, method)
    if method not in PAYMENT_METHODS:
        method = DEFAULT_PAYMENT_METHOD

    supplier = _normalize(data.get("supplier_name")) or None
    client = _normalize(data.get("client_name")) or None
    return Classification(
        is_transaction=True,
        amount=amount,
        type=ttype,
        category=_normalize(data.get("category")) or None,
        description=_normalize(data.get("description")),
        date=_parse_date(data.get("date")),
        payment_method=method,
        supplier_name=supplier if ttype == "expense" else None,
        client_name=client if ttype == "income" else None,
    )


# ------------------------------ Client ------------------------------

class AssistantClient:
    """
    Thin wrapper over the OpenAI client.
    `configured` is False when no API key was given; every call then short-circuits.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = MODEL,
        transcription_model: str = TRANSCRIPTION_MODEL,
        max_retries: int = MAX_RETRIES,
        request_sleep_sec: float = REQUEST_SLEEP_SEC,
        client=None,
    ):
        self.model = model
        self.transcription_model = transcription_model
        self.max_retries = max_retries
        self.request_sleep_sec = request_sleep_sec
        self._client = client
        if self._client is None and api_key:
            try:
                self._client = OpenAI(api_key=api_key)
            except Exception:
                logger.exception("Error initializing OpenAI client")
                self._client = None

    @classmethod
    def from_env(cls) -> "AssistantClient":
        return cls(api_key=os.getenv("OPENAI_API_KEY"))

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _complete(self, system_prompt: str, message: str, enforce_json: bool, temperature: float) -> Optional[str]:
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": message},
            ],
            "temperature": temperature,
        }
        if enforce_json:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self._client.chat.completions.create(**kwargs)
        return resp.choices[0].message.content

    def complete_json(self, system_prompt: str, message: str, temperature: float = 0.3) -> Optional[Dict[str, Any]]:
        """
        JSON-enforced completion with retry/backoff; one final non-enforced attempt.
        Returns None on any failure or unparseable output.
        """
        if not self.configured:
            return None

        delay = self.request_sleep_sec
        for attempt in range(self.max_retries + 1):
            try:
                data = _loads_lenient(self._complete(system_prompt, message, True, temperature))
                if data is not None:
                    return data
                logger.warning("Assistant returned non-JSON content (attempt %d)", attempt + 1)
            except Exception as e:
                logger.warning("Assistant call failed (attempt %d): %s", attempt + 1, e)
            if attempt < self.max_retries:
                if delay > 0:
                    time.sleep(delay)
                delay *= 2

        # final fallback without enforcement
        try:
            return _loads_lenient(self._complete(system_prompt, message, False, temperature))
        except Exception:
            logger.exception("Assistant fallback call failed")
            return None

    def classify(self, text: str, system_prompt: str) -> Optional[Classification]:
        """Pure call: no side effects. None means 'nothing actionable'."""
        if not _normalize(text):
            return None
        return parse_classification(self.complete_json(system_prompt, text))

    def transcribe(self, audio: bytes, filename: str = "audio.ogg") -> str:
        """Speech-to-text in Portuguese. Raises on failure; callers pick their fallback."""
        if not self.configured:
            raise RuntimeError("OpenAI client is not initialized. Check your API key.")
        buf = io.BytesIO(audio)
        buf.name = filename
        result = self._client.audio.transcriptions.create(
            model=self.transcription_model,
            file=buf,
            language=TRANSCRIPTION_LANGUAGE,
        )
        return _normalize(getattr(result, "text", "") or "")
