# message_handler.py: inbound WhatsApp message pipeline
#
#   sender resolution -> content normalization (audio transcription)
#   -> classification (pure model call) -> one DB transaction:
#        transaction row (if any) + message log row with parsed data and reply
#   -> reply delivery
#
# handle() never raises: every failure degrades to APOLOGY_REPLY so the webhook
# can always acknowledge the delivery.

import logging
from dataclasses import dataclass
from datetime import date
from typing import Mapping, Optional

import database as db
from ai_assistant import AssistantClient, Classification, build_classification_prompt
from messaging import WhatsAppMessenger, normalize_number
from query_responder import answer_query, format_brl

logger = logging.getLogger(__name__)

AUDIO_PLACEHOLDER = "[Áudio não pôde ser transcrito]"
APOLOGY_REPLY = "❌ Desculpe, houve um erro ao processar sua mensagem. Tente novamente."

_TYPE_LABELS = {"income": "Receita", "expense": "Despesa"}


@dataclass
class InboundMessage:
    sender: str
    body: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None

    @classmethod
    def from_form(cls, form: Mapping[str, str]) -> "InboundMessage":
        """Build from a Twilio form-encoded webhook body."""
        return cls(
            sender=(form.get("From") or "").strip(),
            body=(form.get("Body") or "").strip(),
            media_url=(form.get("MediaUrl0") or "").strip() or None,
            media_type=(form.get("MediaContentType0") or "").strip() or None,
        )

    @property
    def has_audio(self) -> bool:
        return bool(self.media_url) and "audio" in (self.media_type or "").lower()


@dataclass
class HandlerResult:
    user_id: Optional[int]
    reply: Optional[str]
    transaction_id: Optional[int] = None
    delivered: bool = False
    created_user: bool = False


def confirmation_reply(c: Classification) -> str:
    label = _TYPE_LABELS.get(c.type, "Transação")
    category = c.category or "sem categoria"
    return f"✅ Transação registrada: {label} de {format_brl(c.amount)} na categoria {category}"


class MessageHandler:
    def __init__(self, assistant: AssistantClient, messenger: WhatsAppMessenger):
        self.assistant = assistant
        self.messenger = messenger

    # ------------------------------ steps ------------------------------

    def _normalize_content(self, inbound: InboundMessage):
        """Returns (text, message_type). Audio that can't be fetched or transcribed becomes a placeholder."""
        if not inbound.has_audio:
            return inbound.body, "text"
        try:
            audio = self.messenger.fetch_media(inbound.media_url)
            text = self.assistant.transcribe(audio)
            return (text or AUDIO_PLACEHOLDER), "audio"
        except Exception:
            logger.exception("Audio transcription failed for %s", inbound.media_url)
            return AUDIO_PLACEHOLDER, "audio"

    def _classify(self, user: dict, text: str) -> Optional[Classification]:
        try:
            prompt = build_classification_prompt(
                user.get("name"),
                db.list_categories(user["id"]),
                db.list_pending_payables(user["id"], limit=5),
                today=date.today().isoformat(),
            )
            return self.assistant.classify(text, prompt)
        except Exception:
            logger.exception("Classification failed; treating message as a query")
            return None

    def _persist(self, user: dict, number: str, text: str, message_type: str,
                 classification: Optional[Classification]):
        """Transaction row and audit row commit together or not at all."""
        txn_id = None
        with db.transaction_scope() as conn:
            if classification and classification.is_transaction:
                txn_id = db.add_transaction(
                    user["id"],
                    {
                        "amount": classification.amount,
                        "type": classification.type,
                        "category": classification.category,
                        "description": classification.description,
                        "date": classification.date or date.today().isoformat(),
                        "payment_method": classification.payment_method,
                        "supplier_name": classification.supplier_name,
                        "client_name": classification.client_name,
                        "source": "whatsapp",
                    },
                    conn,
                )
                reply = confirmation_reply(classification)
                parsed = classification.to_dict()
            else:
                # keyword rules look at what the user said, not at the model output
                reply = answer_query(text, user["id"], conn=conn)
                parsed = None
            db.log_message(user["id"], number, message_type, text, parsed, reply, conn)
        return txn_id, reply

    def _log_failure(self, user_id: int, number: str, message_type: str, text: str):
        try:
            db.log_message(user_id, number, message_type, text, None, APOLOGY_REPLY)
        except Exception:
            logger.exception("Could not write failure entry to messages_log")

    # ------------------------------ entrypoint ------------------------------

    def handle(self, inbound: InboundMessage) -> HandlerResult:
        number = normalize_number(inbound.sender)
        if not number:
            logger.warning("Inbound message without sender; ignoring")
            return HandlerResult(user_id=None, reply=None)

        result = HandlerResult(user_id=None, reply=APOLOGY_REPLY)
        text, message_type = inbound.body, "text"
        try:
            user, created = db.get_or_create_whatsapp_user(number)
            result.user_id, result.created_user = user["id"], created
            if created:
                logger.info("Created user %s for %s", user["id"], number)

            text, message_type = self._normalize_content(inbound)
            classification = self._classify(user, text)
            result.transaction_id, result.reply = self._persist(
                user, number, text, message_type, classification
            )
        except Exception:
            logger.exception("Error processing message from %s", number)
            result.reply = APOLOGY_REPLY
            if result.user_id is not None:
                self._log_failure(result.user_id, number, message_type, text)

        result.delivered = self.messenger.send_text(inbound.sender, result.reply)
        return result
