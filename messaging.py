# messaging.py: WhatsApp delivery through Twilio
import os
import logging
from typing import Optional

import requests
from twilio.rest import Client

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"
MAX_BODY_CHARS = 1600  # WhatsApp message limit on Twilio
MEDIA_TIMEOUT_SEC = 30


def normalize_number(sender: Optional[str]) -> str:
    """'whatsapp:+5511999999999' -> '+5511999999999'."""
    s = (sender or "").strip()
    if s.lower().startswith(WHATSAPP_PREFIX):
        s = s[len(WHATSAPP_PREFIX):]
    return s.strip()


def _as_whatsapp(number: str) -> str:
    number = normalize_number(number)
    if number and not number.startswith("+"):
        number = "+" + number
    return f"{WHATSAPP_PREFIX}{number}"


class WhatsAppMessenger:
    """
    Outbound messages and media download.
    `configured` is False without account SID, auth token and sender number;
    send_text() then logs and returns False instead of raising.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        client=None,
    ):
        self.account_sid = account_sid or ""
        self.auth_token = auth_token or ""
        self.from_number = from_number or ""
        self._client = client
        if self._client is None and self.account_sid and self.auth_token:
            try:
                self._client = Client(self.account_sid, self.auth_token)
            except Exception:
                logger.exception("Twilio initialization failed")
                self._client = None

    @classmethod
    def from_env(cls) -> "WhatsAppMessenger":
        return cls(
            account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
            auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
            from_number=os.getenv("TWILIO_WHATSAPP_NUMBER"),
        )

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self.from_number)

    def send_text(self, to: str, body: str) -> bool:
        if not self.configured:
            logger.warning("Twilio not configured; skipping reply to %s", normalize_number(to))
            return False
        try:
            msg = self._client.messages.create(
                from_=_as_whatsapp(self.from_number),
                to=_as_whatsapp(to),
                body=(body or "")[:MAX_BODY_CHARS],
            )
            logger.info("WhatsApp sent: %s", getattr(msg, "sid", "?"))
            return True
        except Exception:
            logger.exception("Error sending WhatsApp message to %s", normalize_number(to))
            return False

    def fetch_media(self, url: str) -> bytes:
        """Download an inbound attachment. Twilio media URLs need basic auth with the account credentials."""
        auth = (self.account_sid, self.auth_token) if self.account_sid and self.auth_token else None
        resp = requests.get(url, auth=auth, timeout=MEDIA_TIMEOUT_SEC)
        resp.raise_for_status()
        return resp.content
