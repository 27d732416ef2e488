# TESTS/test_upgrade_db.py
import sqlite3

import database as db
import upgrade_db


def test_setup_creates_schema(tmp_path, monkeypatch):
    path = str(tmp_path / "fresh.db")
    monkeypatch.setattr(db, "DB_PATH", db.DB_PATH)
    upgrade_db.setup_database(path)

    conn = sqlite3.connect(path)
    try:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    assert {"users", "categories", "transactions", "bills", "reminders",
            "financial_goals", "messages_log", "phone_verifications"} <= tables


def test_stored_overdue_status_is_migrated(user):
    bill_id = db.add_bill(user["id"], "payable", {"amount": 10, "party_name": "Antiga", "due_date": "2025-01-01"})
    conn = db.get_db_connection()
    try:
        # rows written by older builds carried 'overdue' in the column
        conn.execute("PRAGMA ignore_check_constraints = ON")
        conn.execute("UPDATE bills SET status='overdue' WHERE id=?", (bill_id,))
        conn.commit()
    finally:
        conn.close()

    db.apply_compat_migrations()
    assert db.get_bill(user["id"], "payable", bill_id)["status"] == "pending"


def test_setup_is_idempotent(temp_db):
    upgrade_db.setup_database(temp_db)
    upgrade_db.setup_database(temp_db)
