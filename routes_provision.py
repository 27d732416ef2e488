import logging

from flask import Blueprint, current_app, jsonify, request

import provisioning

logger = logging.getLogger(__name__)

provision_bp = Blueprint("provision", __name__)


@provision_bp.post("/api/provision")
def provision_start():
    p = request.get_json(silent=True) or {}
    phone = (p.get("phone") or "").strip()
    if not phone:
        return jsonify({"error": "phone is required"}), 400
    try:
        out = provisioning.provision(
            phone,
            current_app.extensions["messenger"],
            email=(p.get("email") or "").strip() or None,
            name=(p.get("name") or "").strip() or None,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.exception("Provisioning failed for %s", phone)
        return jsonify({"error": str(e)}), 500
    return jsonify(out)


@provision_bp.post("/api/provision/verify")
def provision_verify():
    p = request.get_json(silent=True) or {}
    try:
        user_id = provisioning.verify(p.get("phone") or "", str(p.get("code") or ""))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if user_id is None:
        return jsonify({"error": "invalid or expired code"}), 400
    return jsonify({"ok": True, "user_id": user_id})
