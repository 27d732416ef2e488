# app.py — Flask application factory for Lasy Finance
import os
import logging
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, jsonify

import database as db
from ai_assistant import AssistantClient
from message_handler import MessageHandler
from messaging import WhatsAppMessenger
from routes_finance import finance_bp
from routes_provision import provision_bp
from routes_whatsapp import whatsapp_bp

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(
    overrides: Optional[dict] = None,
    assistant: Optional[AssistantClient] = None,
    messenger: Optional[WhatsAppMessenger] = None,
) -> Flask:
    """
    Build the app and its collaborators once. Tests pass doubles for
    `assistant` / `messenger`; production builds them from the environment.
    """
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config.update(
        WHATSAPP_VERIFY_TOKEN=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        INIT_DB=True,
    )
    if overrides:
        app.config.update(overrides)

    if app.config["INIT_DB"]:
        db.initialize_database()
        db.apply_compat_migrations()

    assistant = assistant or AssistantClient.from_env()
    messenger = messenger or WhatsAppMessenger.from_env()
    if not assistant.configured:
        logger.warning("OPENAI_API_KEY not set; messages will only get keyword answers")
    if not messenger.configured:
        logger.warning("Twilio credentials not set; replies will not be delivered")

    app.extensions["assistant"] = assistant
    app.extensions["messenger"] = messenger
    app.extensions["message_handler"] = MessageHandler(assistant, messenger)

    app.register_blueprint(whatsapp_bp)
    app.register_blueprint(provision_bp)
    app.register_blueprint(finance_bp)

    @app.get("/health")
    def health():
        return jsonify({
            "status": "ok",
            "assistant_configured": assistant.configured,
            "messaging_configured": messenger.configured,
        })

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
