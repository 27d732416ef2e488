# routes_finance.py: JSON CRUD + reports, always scoped to the calling user
#
# The caller identity arrives in the X-User-Id header, set by the auth layer in
# front of this service. Every query below passes g.user_id down to database.py.

from datetime import date

from flask import Blueprint, g, jsonify, request

import bills
import database as db
import reports

finance_bp = Blueprint("finance", __name__, url_prefix="/api")


@finance_bp.before_request
def _resolve_user():
    raw = (request.headers.get("X-User-Id") or "").strip()
    if not raw.isdigit() or db.get_user(int(raw)) is None:
        return jsonify({"error": "unauthenticated"}), 401
    g.user_id = int(raw)


@finance_bp.errorhandler(ValueError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _range():
    return reports.resolve_date_range(
        request.args.get("month"), request.args.get("start"), request.args.get("end")
    )


def _found(ok: bool):
    if not ok:
        return jsonify({"error": "not found"}), 404
    return jsonify({"ok": True})


# ------------------------------ me / categories ------------------------------

@finance_bp.get("/me")
def me():
    user = db.get_user(g.user_id)
    user.pop("password_hash", None)
    return jsonify(user)


@finance_bp.get("/categories")
def categories():
    return jsonify(db.list_categories(g.user_id, request.args.get("type") or None))


# ------------------------------ transactions ------------------------------

@finance_bp.get("/transactions")
def transactions_list():
    start, end = _range()
    ttype = request.args.get("type")
    if ttype in (None, "", "all"):
        ttype = None
    elif ttype not in db.TRANSACTION_TYPES:
        raise ValueError("type must be one of: all, income, expense")
    rows = db.fetch_transactions(
        g.user_id, start_date=start, end_date=end, type=ttype,
        search=request.args.get("search"), category=request.args.get("category"),
    )
    return jsonify(rows)


@finance_bp.post("/transactions")
def transactions_create():
    p = _payload()
    p.pop("source", None)
    txn_id = db.add_transaction(g.user_id, p)
    return jsonify(db.get_transaction(g.user_id, txn_id)), 201


@finance_bp.get("/transactions/<int:txn_id>")
def transactions_get(txn_id):
    row = db.get_transaction(g.user_id, txn_id)
    if not row:
        return jsonify({"error": "not found"}), 404
    return jsonify(row)


@finance_bp.put("/transactions/<int:txn_id>")
def transactions_update(txn_id):
    if not db.update_transaction(g.user_id, txn_id, _payload()):
        if not db.get_transaction(g.user_id, txn_id):
            return jsonify({"error": "not found"}), 404
    return jsonify(db.get_transaction(g.user_id, txn_id))


@finance_bp.delete("/transactions/<int:txn_id>")
def transactions_delete(txn_id):
    return _found(db.delete_transaction(g.user_id, txn_id))


# ------------------------------ payables / receivables ------------------------------

def _kind(kind: str) -> str:
    if kind not in db.BILL_KINDS:
        raise ValueError("kind must be payable or receivable")
    return kind


def _bill_out(kind: str, bill_id: int):
    row = db.get_bill(g.user_id, kind, bill_id)
    if not row:
        return None
    return bills.with_effective_status([row])[0]


@finance_bp.get("/bills/<kind>")
def bills_list(kind):
    start, end = _range()
    rows = bills.list_bills_with_status(
        g.user_id, _kind(kind), start, end, request.args.get("status") or "all"
    )
    return jsonify(rows)


@finance_bp.get("/bills/<kind>/upcoming")
def bills_upcoming(kind):
    try:
        days = int(request.args.get("days", 30))
    except ValueError:
        raise ValueError("days must be an integer")
    return jsonify(bills.upcoming_occurrences(g.user_id, _kind(kind), date.today(), days))


@finance_bp.post("/bills/<kind>")
def bills_create(kind):
    bill_id = db.add_bill(g.user_id, _kind(kind), _payload())
    return jsonify(_bill_out(kind, bill_id)), 201


@finance_bp.put("/bills/<kind>/<int:bill_id>")
def bills_update(kind, bill_id):
    db.update_bill(g.user_id, _kind(kind), bill_id, _payload())
    row = _bill_out(kind, bill_id)
    if row is None:
        return jsonify({"error": "not found"}), 404
    return jsonify(row)


@finance_bp.post("/bills/<kind>/<int:bill_id>/pay")
def bills_pay(kind, bill_id):
    if not db.mark_bill_paid(g.user_id, _kind(kind), bill_id):
        return jsonify({"error": "not found"}), 404
    return jsonify(_bill_out(kind, bill_id))


@finance_bp.delete("/bills/<kind>/<int:bill_id>")
def bills_delete(kind, bill_id):
    return _found(db.delete_bill(g.user_id, _kind(kind), bill_id))


# ------------------------------ reminders ------------------------------

@finance_bp.get("/reminders")
def reminders_list():
    start, end = _range()
    status = request.args.get("status") or "all"
    if status not in ("all", "pending", "completed"):
        raise ValueError("status must be one of: all, pending, completed")
    return jsonify(db.list_reminders(g.user_id, start, end, None if status == "all" else status))


@finance_bp.post("/reminders")
def reminders_create():
    rid = db.add_reminder(g.user_id, _payload())
    return jsonify({"id": rid}), 201


@finance_bp.put("/reminders/<int:reminder_id>")
def reminders_update(reminder_id):
    return _found(db.update_reminder(g.user_id, reminder_id, _payload()))


@finance_bp.post("/reminders/<int:reminder_id>/complete")
def reminders_complete(reminder_id):
    return _found(db.complete_reminder(g.user_id, reminder_id))


@finance_bp.delete("/reminders/<int:reminder_id>")
def reminders_delete(reminder_id):
    return _found(db.delete_reminder(g.user_id, reminder_id))


# ------------------------------ goals ------------------------------

@finance_bp.get("/goals")
def goals_list():
    return jsonify(db.list_goals(g.user_id))


@finance_bp.post("/goals")
def goals_create():
    goal_id = db.add_goal(g.user_id, _payload())
    return jsonify(db.get_goal(g.user_id, goal_id)), 201


@finance_bp.put("/goals/<int:goal_id>")
def goals_update(goal_id):
    db.update_goal(g.user_id, goal_id, _payload())
    row = db.get_goal(g.user_id, goal_id)
    if not row:
        return jsonify({"error": "not found"}), 404
    return jsonify(row)


@finance_bp.post("/goals/<int:goal_id>/contribute")
def goals_contribute(goal_id):
    row = db.add_goal_contribution(g.user_id, goal_id, _payload().get("amount"))
    if row is None:
        return jsonify({"error": "not found"}), 404
    return jsonify(row)


@finance_bp.delete("/goals/<int:goal_id>")
def goals_delete(goal_id):
    return _found(db.delete_goal(g.user_id, goal_id))


# ------------------------------ chat log / reports ------------------------------

@finance_bp.get("/messages")
def messages_list():
    try:
        limit = min(int(request.args.get("limit", 50)), 500)
    except ValueError:
        raise ValueError("limit must be an integer")
    return jsonify(db.list_messages(g.user_id, limit))


@finance_bp.get("/reports/monthly")
def reports_monthly():
    start, end = _range()
    return jsonify(reports.monthly_report(g.user_id, start, end))


@finance_bp.get("/reports/categories")
def reports_categories():
    start, end = _range()
    return jsonify(reports.category_report(g.user_id, start, end))


@finance_bp.get("/analytics")
def analytics():
    start, end = _range()
    return jsonify(reports.analytics(
        g.user_id,
        period=request.args.get("period") or "all",
        start=start, end=end,
        search=request.args.get("search"),
    ))


@finance_bp.get("/dashboard")
def dashboard():
    return jsonify(reports.dashboard(g.user_id))
