import hmac
import logging

from flask import Blueprint, Response, current_app, jsonify, request

from message_handler import InboundMessage

logger = logging.getLogger(__name__)

whatsapp_bp = Blueprint("whatsapp", __name__)


@whatsapp_bp.get("/api/whatsapp/webhook")
def whatsapp_verify():
    """Webhook registration handshake: echo hub.challenge when the token matches."""
    expected = current_app.config.get("WHATSAPP_VERIFY_TOKEN") or ""
    mode = request.args.get("hub.mode", "")
    token = request.args.get("hub.verify_token", "")
    challenge = request.args.get("hub.challenge", "")

    if expected and mode == "subscribe" and hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        return Response(challenge, status=200, mimetype="text/plain")
    logger.warning("Rejected webhook verification (mode=%r)", mode)
    return jsonify({"error": "Invalid verification token"}), 403


@whatsapp_bp.post("/api/whatsapp/webhook")
def whatsapp_inbound():
    """
    Always acknowledge with 200: the provider redelivers anything else.
    Processing failures are handled (and answered) inside the message handler.
    """
    try:
        form = request.form if request.form else (request.get_json(silent=True) or {})
        inbound = InboundMessage.from_form(form)
        if inbound.sender:
            current_app.extensions["message_handler"].handle(inbound)
        else:
            logger.warning("Webhook delivery without From field")
    except Exception:
        logger.exception("Unhandled error in WhatsApp webhook")
    return jsonify({"success": True})
