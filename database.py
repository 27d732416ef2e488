# database.py — canonical DB layer for Lasy Finance
# -------------------------------------------------------
# Single source of truth: finance.db
# - every owned row carries user_id; every query here filters on it
# - bills.status only stores pending|paid (overdue is derived, see bills.py)
# - messages_log is append-only
#
# This module exposes:
#   Connection & schema:
#     - get_db_connection(), transaction_scope(), initialize_database(), apply_compat_migrations()
#   Users:
#     - get_user(), find_user_by_whatsapp(), find_user_by_email(), get_or_create_whatsapp_user()
#     - upsert_user_by_email(), create_anonymous_user(), link_whatsapp_number()
#   Categories:
#     - seed_default_categories(), list_categories(), find_category_id()
#   Transactions:
#     - add_transaction(), fetch_transactions(), get_transaction(), update_transaction()
#     - delete_transaction(), fetch_summary()
#   Payables / receivables:
#     - add_bill(), list_bills(), get_bill(), update_bill(), mark_bill_paid(), delete_bill()
#     - list_pending_payables()
#   Reminders / goals:
#     - add_reminder(), list_reminders(), update_reminder(), complete_reminder(), delete_reminder()
#     - add_goal(), list_goals(), get_goal(), update_goal(), add_goal_contribution(), delete_goal()
#   Message log & phone verification:
#     - log_message(), list_messages()
#     - create_phone_verification(), consume_phone_verification()
#
# Functions that take `conn` join the caller's transaction and never commit it;
# without `conn` they open, commit and close their own connection.
# Invalid input raises ValueError.

from __future__ import annotations

import os
import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple
from datetime import date, datetime

# -------------------------------------------------------------------
# Paths / connection
# -------------------------------------------------------------------

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.getenv("FINANCE_DB") or os.path.join(PROJECT_DIR, "finance.db")


def get_db_connection():
    conn = sqlite3.connect(DB_PATH, detect_types=sqlite3.PARSE_DECLTYPES, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


@contextmanager
def transaction_scope() -> Iterator[sqlite3.Connection]:
    """
    One explicit BEGIN/COMMIT around everything done on the yielded connection.
    Any exception rolls the whole unit back.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def _use(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    own = get_db_connection()
    try:
        yield own
        own.commit()
    except Exception:
        own.rollback()
        raise
    finally:
        own.close()


# -------------------------------------------------------------------
# Schema / migrations
# -------------------------------------------------------------------

def initialize_database():
    """
    Create tables if they don't exist.
    Owned tables cascade on user delete; the UNIQUE whatsapp_number is what
    keeps two concurrent first messages from producing two users.
    """
    conn = get_db_connection()
    try:
        conn.executescript(
            """
            PRAGMA foreign_keys=ON;

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE,
                whatsapp_number TEXT UNIQUE,
                password_hash TEXT,                     -- chat-origin users get a non-usable marker
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('income','expense')),
                UNIQUE (user_id, name, type),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                amount REAL NOT NULL CHECK (amount > 0),
                type TEXT NOT NULL CHECK (type IN ('income','expense')),
                category TEXT,
                category_id INTEGER,
                description TEXT,
                date TEXT NOT NULL,
                payment_method TEXT,
                supplier_name TEXT,                     -- expense counterparty
                client_name TEXT,                       -- income counterparty
                source TEXT DEFAULT 'manual',           -- manual | whatsapp
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS bills (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('payable','receivable')),
                party_name TEXT NOT NULL,               -- supplier (payable) or client (receivable)
                amount REAL NOT NULL CHECK (amount > 0),
                due_date TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','paid')),
                paid_at TEXT,
                is_recurring INTEGER NOT NULL DEFAULT 0,
                recurrence_interval TEXT,
                recurrence_count INTEGER,
                recurrence_end_date TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS reminders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                reminder_type TEXT NOT NULL DEFAULT 'task',
                due_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','completed')),
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS financial_goals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                target_amount REAL NOT NULL CHECK (target_amount > 0),
                current_amount REAL NOT NULL DEFAULT 0,
                category TEXT DEFAULT 'savings',
                status TEXT NOT NULL DEFAULT 'not_started',
                target_date TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS messages_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                whatsapp_number TEXT,
                message_type TEXT NOT NULL DEFAULT 'text',
                original_message TEXT,
                parsed_data TEXT,                       -- JSON, NULL when not a transaction
                response TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS phone_verifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                whatsapp_number TEXT NOT NULL,
                otp_code TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                verified_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS ix_txn_user_date ON transactions(user_id, date);
            CREATE INDEX IF NOT EXISTS ix_bills_user_due ON bills(user_id, kind, due_date);
            CREATE INDEX IF NOT EXISTS ix_reminders_user_due ON reminders(user_id, due_date);
            CREATE INDEX IF NOT EXISTS ix_log_user ON messages_log(user_id, created_at);
            """
        )
        conn.commit()
    finally:
        conn.close()


def apply_compat_migrations():
    """
    Bring databases created by older builds up to the current shape.
    Safe to re-run.
    """
    conn = get_db_connection()
    try:
        def has_col(table: str, col: str) -> bool:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return any(r["name"] == col for r in rows)

        needed = [
            ("users", "updated_at", "ALTER TABLE users ADD COLUMN updated_at TEXT"),
            ("transactions", "source", "ALTER TABLE transactions ADD COLUMN source TEXT DEFAULT 'manual'"),
            ("transactions", "supplier_name", "ALTER TABLE transactions ADD COLUMN supplier_name TEXT"),
            ("transactions", "client_name", "ALTER TABLE transactions ADD COLUMN client_name TEXT"),
            ("bills", "paid_at", "ALTER TABLE bills ADD COLUMN paid_at TEXT"),
            ("phone_verifications", "verified_at", "ALTER TABLE phone_verifications ADD COLUMN verified_at TEXT"),
        ]
        for table, col, ddl in needed:
            if not has_col(table, col):
                conn.execute(ddl)

        # Older builds stored 'overdue'; it is derived at read time now.
        conn.execute("UPDATE bills SET status='pending' WHERE status='overdue'")
        conn.commit()
    finally:
        conn.close()


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

TRANSACTION_TYPES = ("income", "expense")
PAYMENT_METHODS = ("pix", "card", "cash", "transfer")
BILL_KINDS = ("payable", "receivable")
RECURRENCE_INTERVALS = ("weekly", "monthly", "quarterly", "annual")
REMINDER_TYPES = ("task", "payment", "meeting", "other")
GOAL_STATUSES = ("not_started", "in_progress", "completed")

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d/%m/%y", "%Y/%m/%d")


def to_iso_date(value) -> Optional[str]:
    """Best-effort convert to YYYY-MM-DD."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()
    if not s:
        return None
    # tolerate full ISO timestamps
    if len(s) > 10 and s[4:5] == "-" and s[10:11] in ("T", " "):
        s = s[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).strftime("%Y-%m-%d")
        except ValueError:
            pass
    return None


def _require_date(value, field: str) -> str:
    iso = to_iso_date(value)
    if not iso:
        raise ValueError(f"{field} must be a date (YYYY-MM-DD)")
    return iso


def _positive_amount(value, field: str = "amount") -> float:
    try:
        amt = round(float(value), 2)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number")
    if amt <= 0:
        raise ValueError(f"{field} must be greater than 0")
    return amt


def _choice(value, allowed: Tuple[str, ...], field: str) -> str:
    v = (value or "").strip().lower()
    if v not in allowed:
        raise ValueError(f"{field} must be one of: {', '.join(allowed)}")
    return v


def _text(value) -> Optional[str]:
    s = (value or "").strip() if isinstance(value, str) else value
    return s or None


def _row(r) -> Optional[Dict]:
    return dict(r) if r else None


def _update_row(conn: sqlite3.Connection, table: str, user_id: int, row_id: int, sets: Dict[str, Any]) -> bool:
    if not sets:
        return False
    cols = ", ".join(f"{k}=?" for k in sets)
    cur = conn.execute(
        f"UPDATE {table} SET {cols} WHERE id=? AND user_id=?",
        (*sets.values(), row_id, user_id),
    )
    return cur.rowcount == 1


def _delete_row(table: str, user_id: int, row_id: int) -> bool:
    with _use() as conn:
        cur = conn.execute(f"DELETE FROM {table} WHERE id=? AND user_id=?", (row_id, user_id))
        return cur.rowcount == 1


# -------------------------------------------------------------------
# Users
# -------------------------------------------------------------------

WHATSAPP_PASSWORD_MARKER = "whatsapp_user"  # chat-origin users never log in with a password


def get_user(user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict]:
    with _use(conn) as c:
        return _row(c.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone())


def find_user_by_whatsapp(number: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict]:
    with _use(conn) as c:
        return _row(c.execute("SELECT * FROM users WHERE whatsapp_number=?", (number,)).fetchone())


def find_user_by_email(email: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict]:
    with _use(conn) as c:
        return _row(c.execute("SELECT * FROM users WHERE lower(email)=lower(?)", (email,)).fetchone())


def get_or_create_whatsapp_user(number: str, conn: Optional[sqlite3.Connection] = None) -> Tuple[Dict, bool]:
    """
    Resolve the sender of an inbound chat message, creating the user on first contact.
    Returns (user, created). A new user gets the default category set.
    """
    if not number:
        raise ValueError("whatsapp number is required")
    with _use(conn) as c:
        existing = find_user_by_whatsapp(number, c)
        if existing:
            return existing, False
        try:
            cur = c.execute(
                "INSERT INTO users(name, email, whatsapp_number, password_hash) VALUES (?,?,?,?)",
                (f"User {number}", f"{number}@whatsapp.local", number, WHATSAPP_PASSWORD_MARKER),
            )
        except sqlite3.IntegrityError:
            # lost the race against a concurrent first message from the same number
            winner = find_user_by_whatsapp(number, c)
            if winner is None:
                raise
            return winner, False
        user_id = int(cur.lastrowid)
        seed_default_categories(user_id, c)
        return get_user(user_id, c), True


def upsert_user_by_email(email: str, name: Optional[str] = None, conn: Optional[sqlite3.Connection] = None) -> Dict:
    email = (email or "").strip()
    if not email:
        raise ValueError("email is required")
    with _use(conn) as c:
        existing = find_user_by_email(email, c)
        if existing:
            if name:
                c.execute(
                    "UPDATE users SET name=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                    (name.strip(), existing["id"]),
                )
            return get_user(existing["id"], c)
        cur = c.execute(
            "INSERT INTO users(name, email) VALUES (?, ?)",
            ((name or "").strip() or email.split("@")[0], email),
        )
        user_id = int(cur.lastrowid)
        seed_default_categories(user_id, c)
        return get_user(user_id, c)


def create_anonymous_user(name: Optional[str] = None, conn: Optional[sqlite3.Connection] = None) -> Dict:
    with _use(conn) as c:
        cur = c.execute("INSERT INTO users(name) VALUES (?)", ((name or "").strip() or "WhatsApp user",))
        user_id = int(cur.lastrowid)
        seed_default_categories(user_id, c)
        return get_user(user_id, c)


def link_whatsapp_number(user_id: int, number: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    with _use(conn) as c:
        cur = c.execute(
            "UPDATE users SET whatsapp_number=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (number, user_id),
        )
        return cur.rowcount == 1


# -------------------------------------------------------------------
# Categories
# -------------------------------------------------------------------

DEFAULT_CATEGORIES = [
    ("Salário", "income"),
    ("Vendas", "income"),
    ("Alimentação", "expense"),
    ("Aluguel", "expense"),
    ("Internet", "expense"),
    ("Transporte", "expense"),
    ("Outros", "expense"),
]


def seed_default_categories(user_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
    with _use(conn) as c:
        added = 0
        for name, ctype in DEFAULT_CATEGORIES:
            cur = c.execute(
                "INSERT OR IGNORE INTO categories(user_id, name, type) VALUES (?,?,?)",
                (user_id, name, ctype),
            )
            added += cur.rowcount
        return added


def list_categories(user_id: int, type: Optional[str] = None, conn: Optional[sqlite3.Connection] = None) -> List[Dict]:
    with _use(conn) as c:
        q = "SELECT id, name, type FROM categories WHERE user_id=?"
        args: List = [user_id]
        if type:
            q += " AND type=?"
            args.append(type)
        q += " ORDER BY type, name"
        return [dict(r) for r in c.execute(q, args).fetchall()]


def find_category_id(user_id: int, name: Optional[str], conn: Optional[sqlite3.Connection] = None) -> Optional[int]:
    """Best-effort lookup by name (case-insensitive). None when nothing matches."""
    name = (name or "").strip()
    if not name:
        return None
    with _use(conn) as c:
        for r in c.execute("SELECT id, name FROM categories WHERE user_id=?", (user_id,)).fetchall():
            if r["name"].casefold() == name.casefold():
                return int(r["id"])
    return None


# -------------------------------------------------------------------
# Transactions
# -------------------------------------------------------------------

def add_transaction(user_id: int, data: Dict, conn: Optional[sqlite3.Connection] = None) -> int:
    amount = _positive_amount(data.get("amount"))
    ttype = _choice(data.get("type"), TRANSACTION_TYPES, "type")
    tdate = to_iso_date(data.get("date")) or date.today().isoformat()
    method = (data.get("payment_method") or "").strip().lower() or None
    if method and method not in PAYMENT_METHODS:
        raise ValueError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")

    with _use(conn) as c:
        category_id = data.get("category_id")
        if category_id is None:
            category_id = find_category_id(user_id, data.get("category"), c)
        cur = c.execute(
            """
            INSERT INTO transactions
            (user_id, amount, type, category, category_id, description, date,
             payment_method, supplier_name, client_name, source)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                user_id, amount, ttype, _text(data.get("category")), category_id,
                _text(data.get("description")) or "", tdate, method,
                _text(data.get("supplier_name")), _text(data.get("client_name")),
                data.get("source") or "manual",
            ),
        )
        return int(cur.lastrowid)


def fetch_transactions(
    user_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
    limit: Optional[int] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> List[Dict]:
    with _use(conn) as c:
        q = "SELECT * FROM transactions WHERE user_id=?"
        args: List = [user_id]
        if start_date:
            q += " AND date >= ?"
            args.append(start_date)
        if end_date:
            q += " AND date <= ?"
            args.append(end_date)
        if type:
            q += " AND type = ?"
            args.append(type)
        if category:
            q += " AND lower(category) = lower(?)"
            args.append(category)
        if search and search.strip():
            term = f"%{search.strip().lower()}%"
            q += " AND (lower(COALESCE(description,'')) LIKE ? OR lower(COALESCE(category,'')) LIKE ?)"
            args.extend([term, term])
        q += " ORDER BY date DESC, id DESC"
        if limit:
            q += " LIMIT ?"
            args.append(int(limit))
        return [dict(r) for r in c.execute(q, args).fetchall()]


def get_transaction(user_id: int, transaction_id: int) -> Optional[Dict]:
    with _use() as c:
        return _row(c.execute(
            "SELECT * FROM transactions WHERE id=? AND user_id=?", (transaction_id, user_id)
        ).fetchone())


def update_transaction(user_id: int, transaction_id: int, data: Dict) -> bool:
    sets: Dict[str, Any] = {}
    if "amount" in data:
        sets["amount"] = _positive_amount(data["amount"])
    if "type" in data:
        sets["type"] = _choice(data["type"], TRANSACTION_TYPES, "type")
    if "date" in data:
        sets["date"] = _require_date(data["date"], "date")
    if "payment_method" in data:
        method = data["payment_method"]
        sets["payment_method"] = _choice(method, PAYMENT_METHODS, "payment_method") if method else None
    for key in ("description", "supplier_name", "client_name"):
        if key in data:
            sets[key] = _text(data[key])
    with _use() as c:
        if "category" in data:
            sets["category"] = _text(data["category"])
            sets["category_id"] = find_category_id(user_id, data["category"], c)
        return _update_row(c, "transactions", user_id, transaction_id, sets)


def delete_transaction(user_id: int, transaction_id: int) -> bool:
    return _delete_row("transactions", user_id, transaction_id)


def fetch_summary(
    user_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Dict:
    """
    Top-line P&L for one user:
      - income  = sum of income rows
      - expense = sum of expense rows (amounts are stored positive)
      - balance = income - expense
    """
    with _use(conn) as c:
        base = "FROM transactions WHERE user_id=?"
        args: List = [user_id]
        if start_date:
            base += " AND date >= ?"
            args.append(start_date)
        if end_date:
            base += " AND date <= ?"
            args.append(end_date)
        row = c.execute(
            "SELECT "
            "  COALESCE(SUM(CASE WHEN type='income' THEN amount ELSE 0 END),0) AS income, "
            "  COALESCE(SUM(CASE WHEN type='expense' THEN amount ELSE 0 END),0) AS expense "
            f"{base}",
            args,
        ).fetchone()
        income = round(float(row["income"] or 0.0), 2)
        expense = round(float(row["expense"] or 0.0), 2)
        return {"income": income, "expense": expense, "balance": round(income - expense, 2)}


# -------------------------------------------------------------------
# Payables / receivables
# -------------------------------------------------------------------

def _bill_fields(data: Dict, partial: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if not partial or "amount" in data:
        out["amount"] = _positive_amount(data.get("amount"))
    if not partial or "party_name" in data:
        party = _text(data.get("party_name"))
        if not party:
            raise ValueError("party_name is required")
        out["party_name"] = party
    if not partial or "due_date" in data:
        out["due_date"] = _require_date(data.get("due_date"), "due_date")
    if not partial or "description" in data:
        out["description"] = _text(data.get("description")) or ""

    if not partial or "is_recurring" in data:
        is_rec = bool(data.get("is_recurring"))
        out["is_recurring"] = 1 if is_rec else 0
        if is_rec:
            out["recurrence_interval"] = _interval(data.get("recurrence_interval"))
            out["recurrence_count"] = _recurrence_count(data.get("recurrence_count"))
            out["recurrence_end_date"] = _optional_date(data.get("recurrence_end_date"), "recurrence_end_date")
        else:
            out["recurrence_interval"] = None
            out["recurrence_count"] = None
            out["recurrence_end_date"] = None
        return out

    # partial update without is_recurring: touch only the descriptor keys that were sent
    if "recurrence_interval" in data:
        out["recurrence_interval"] = _interval(data["recurrence_interval"])
    if "recurrence_count" in data:
        out["recurrence_count"] = _recurrence_count(data["recurrence_count"])
    if "recurrence_end_date" in data:
        out["recurrence_end_date"] = _optional_date(data["recurrence_end_date"], "recurrence_end_date")
    return out


def _interval(value) -> str:
    return _choice(value or "monthly", RECURRENCE_INTERVALS, "recurrence_interval")


def _recurrence_count(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValueError("recurrence_count must be a positive integer")
    if count <= 0:
        raise ValueError("recurrence_count must be a positive integer")
    return count


def _optional_date(value, field: str) -> Optional[str]:
    return _require_date(value, field) if value else None


def add_bill(user_id: int, kind: str, data: Dict, conn: Optional[sqlite3.Connection] = None) -> int:
    kind = _choice(kind, BILL_KINDS, "kind")
    fields = _bill_fields(data)
    with _use(conn) as c:
        cols = ["user_id", "kind", "status"] + list(fields)
        vals = [user_id, kind, "pending"] + list(fields.values())
        cur = c.execute(
            f"INSERT INTO bills ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            vals,
        )
        return int(cur.lastrowid)


def list_bills(
    user_id: int,
    kind: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> List[Dict]:
    """Stored rows only; see bills.list_bills_with_status() for derived status filtering."""
    kind = _choice(kind, BILL_KINDS, "kind")
    with _use(conn) as c:
        q = "SELECT * FROM bills WHERE user_id=? AND kind=?"
        args: List = [user_id, kind]
        if start_date:
            q += " AND due_date >= ?"
            args.append(start_date)
        if end_date:
            q += " AND due_date <= ?"
            args.append(end_date)
        if status:
            q += " AND status = ?"
            args.append(status)
        q += " ORDER BY due_date ASC, id ASC"
        return [dict(r) for r in c.execute(q, args).fetchall()]


def get_bill(user_id: int, kind: str, bill_id: int) -> Optional[Dict]:
    with _use() as c:
        return _row(c.execute(
            "SELECT * FROM bills WHERE id=? AND user_id=? AND kind=?", (bill_id, user_id, kind)
        ).fetchone())


def update_bill(user_id: int, kind: str, bill_id: int, data: Dict) -> bool:
    kind = _choice(kind, BILL_KINDS, "kind")
    sets = _bill_fields(data, partial=True)
    if not sets:
        return False
    with _use() as c:
        cols = ", ".join(f"{k}=?" for k in sets)
        cur = c.execute(
            f"UPDATE bills SET {cols} WHERE id=? AND user_id=? AND kind=?",
            (*sets.values(), bill_id, user_id, kind),
        )
        return cur.rowcount == 1


def mark_bill_paid(user_id: int, kind: str, bill_id: int) -> bool:
    """pending -> paid. Marking an already paid bill again is a no-op that still reports success."""
    with _use() as c:
        row = c.execute(
            "SELECT status FROM bills WHERE id=? AND user_id=? AND kind=?", (bill_id, user_id, kind)
        ).fetchone()
        if not row:
            return False
        if row["status"] != "paid":
            c.execute(
                "UPDATE bills SET status='paid', paid_at=CURRENT_TIMESTAMP WHERE id=? AND user_id=?",
                (bill_id, user_id),
            )
        return True


def delete_bill(user_id: int, kind: str, bill_id: int) -> bool:
    with _use() as c:
        cur = c.execute("DELETE FROM bills WHERE id=? AND user_id=? AND kind=?", (bill_id, user_id, kind))
        return cur.rowcount == 1


def list_pending_payables(user_id: int, limit: int = 5, conn: Optional[sqlite3.Connection] = None) -> List[Dict]:
    with _use(conn) as c:
        rows = c.execute(
            "SELECT party_name, amount, due_date FROM bills "
            "WHERE user_id=? AND kind='payable' AND status='pending' "
            "ORDER BY due_date ASC, id ASC LIMIT ?",
            (user_id, int(limit)),
        ).fetchall()
        return [dict(r) for r in rows]


# -------------------------------------------------------------------
# Reminders
# -------------------------------------------------------------------

def _reminder_fields(data: Dict, partial: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if not partial or "title" in data:
        title = _text(data.get("title"))
        if not title:
            raise ValueError("title is required")
        out["title"] = title
    if not partial or "due_date" in data:
        out["due_date"] = _require_date(data.get("due_date"), "due_date")
    if not partial or "description" in data:
        out["description"] = _text(data.get("description")) or ""
    if not partial or "reminder_type" in data:
        out["reminder_type"] = _choice(data.get("reminder_type") or "task", REMINDER_TYPES, "reminder_type")
    return out


def add_reminder(user_id: int, data: Dict) -> int:
    fields = _reminder_fields(data)
    with _use() as c:
        cols = ["user_id"] + list(fields)
        cur = c.execute(
            f"INSERT INTO reminders ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            [user_id] + list(fields.values()),
        )
        return int(cur.lastrowid)


def list_reminders(
    user_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict]:
    with _use() as c:
        q = "SELECT * FROM reminders WHERE user_id=?"
        args: List = [user_id]
        if start_date:
            q += " AND due_date >= ?"
            args.append(start_date)
        if end_date:
            q += " AND due_date <= ?"
            args.append(end_date)
        if status:
            q += " AND status = ?"
            args.append(status)
        q += " ORDER BY due_date ASC, id ASC"
        return [dict(r) for r in c.execute(q, args).fetchall()]


def update_reminder(user_id: int, reminder_id: int, data: Dict) -> bool:
    sets = _reminder_fields(data, partial=True)
    if "status" in data:
        sets["status"] = _choice(data["status"], ("pending", "completed"), "status")
    with _use() as c:
        return _update_row(c, "reminders", user_id, reminder_id, sets)


def complete_reminder(user_id: int, reminder_id: int) -> bool:
    with _use() as c:
        return _update_row(c, "reminders", user_id, reminder_id, {"status": "completed"})


def delete_reminder(user_id: int, reminder_id: int) -> bool:
    return _delete_row("reminders", user_id, reminder_id)


# -------------------------------------------------------------------
# Financial goals
# -------------------------------------------------------------------

def _goal_status(current: float, target: float) -> str:
    if current >= target:
        return "completed"
    if current > 0:
        return "in_progress"
    return "not_started"


def add_goal(user_id: int, data: Dict) -> int:
    name = _text(data.get("name"))
    if not name:
        raise ValueError("name is required")
    target = _positive_amount(data.get("target_amount"), "target_amount")
    current = data.get("current_amount") or 0
    try:
        current = round(float(current), 2)
    except (TypeError, ValueError):
        raise ValueError("current_amount must be a number")
    if current < 0:
        raise ValueError("current_amount cannot be negative")
    target_date = to_iso_date(data.get("target_date")) or date(date.today().year + 1, 1, 1).isoformat()
    with _use() as c:
        cur = c.execute(
            "INSERT INTO financial_goals(user_id, name, target_amount, current_amount, category, status, target_date) "
            "VALUES (?,?,?,?,?,?,?)",
            (user_id, name, target, current, _text(data.get("category")) or "savings",
             _goal_status(current, target), target_date),
        )
        return int(cur.lastrowid)


def list_goals(user_id: int) -> List[Dict]:
    with _use() as c:
        rows = c.execute(
            "SELECT * FROM financial_goals WHERE user_id=? ORDER BY target_date ASC, id ASC", (user_id,)
        ).fetchall()
        return [dict(r) for r in rows]


def get_goal(user_id: int, goal_id: int) -> Optional[Dict]:
    with _use() as c:
        return _row(c.execute(
            "SELECT * FROM financial_goals WHERE id=? AND user_id=?", (goal_id, user_id)
        ).fetchone())


def update_goal(user_id: int, goal_id: int, data: Dict) -> bool:
    sets: Dict[str, Any] = {}
    if "name" in data:
        name = _text(data["name"])
        if not name:
            raise ValueError("name is required")
        sets["name"] = name
    if "target_amount" in data:
        sets["target_amount"] = _positive_amount(data["target_amount"], "target_amount")
    if "category" in data:
        sets["category"] = _text(data["category"]) or "savings"
    if "target_date" in data:
        sets["target_date"] = _require_date(data["target_date"], "target_date")
    if "status" in data:
        sets["status"] = _choice(data["status"], GOAL_STATUSES, "status")
    with _use() as c:
        if "target_amount" in sets and "status" not in sets:
            row = c.execute(
                "SELECT current_amount FROM financial_goals WHERE id=? AND user_id=?", (goal_id, user_id)
            ).fetchone()
            if not row:
                return False
            sets["status"] = _goal_status(float(row["current_amount"] or 0.0), sets["target_amount"])
        return _update_row(c, "financial_goals", user_id, goal_id, sets)


def add_goal_contribution(user_id: int, goal_id: int, amount) -> Optional[Dict]:
    """
    Add a contribution to a goal. current_amount only ever grows here;
    status follows progress (in_progress, then completed at or above target).
    """
    amount = _positive_amount(amount)
    with _use() as c:
        row = c.execute(
            "SELECT * FROM financial_goals WHERE id=? AND user_id=?", (goal_id, user_id)
        ).fetchone()
        if not row:
            return None
        current = round(float(row["current_amount"] or 0.0) + amount, 2)
        status = _goal_status(current, float(row["target_amount"]))
        c.execute(
            "UPDATE financial_goals SET current_amount=?, status=? WHERE id=? AND user_id=?",
            (current, status, goal_id, user_id),
        )
        return _row(c.execute("SELECT * FROM financial_goals WHERE id=?", (goal_id,)).fetchone())


def delete_goal(user_id: int, goal_id: int) -> bool:
    return _delete_row("financial_goals", user_id, goal_id)


# -------------------------------------------------------------------
# Message log
# -------------------------------------------------------------------

def log_message(
    user_id: int,
    whatsapp_number: Optional[str],
    message_type: str,
    original_message: str,
    parsed_data: Optional[Dict] = None,
    response: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    with _use(conn) as c:
        cur = c.execute(
            "INSERT INTO messages_log(user_id, whatsapp_number, message_type, original_message, parsed_data, response) "
            "VALUES (?,?,?,?,?,?)",
            (
                user_id, whatsapp_number, message_type, original_message,
                json.dumps(parsed_data, ensure_ascii=False) if parsed_data is not None else None,
                response,
            ),
        )
        return int(cur.lastrowid)


def list_messages(user_id: int, limit: int = 50) -> List[Dict]:
    with _use() as c:
        rows = c.execute(
            "SELECT * FROM messages_log WHERE user_id=? ORDER BY id DESC LIMIT ?", (user_id, int(limit))
        ).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["parsed_data"] = json.loads(d["parsed_data"]) if d.get("parsed_data") else None
        out.append(d)
    return out


# -------------------------------------------------------------------
# Phone verification
# -------------------------------------------------------------------

def create_phone_verification(user_id: int, number: str, code: str, expires_at: datetime) -> int:
    with _use() as c:
        cur = c.execute(
            "INSERT INTO phone_verifications(user_id, whatsapp_number, otp_code, expires_at) VALUES (?,?,?,?)",
            (user_id, number, code, expires_at.isoformat(timespec="seconds")),
        )
        return int(cur.lastrowid)


def consume_phone_verification(number: str, code: str, now: datetime) -> Optional[int]:
    """
    Mark the newest matching, unexpired, unused code as verified and move the number
    to its user, unlinking it from any other account that held it.
    Returns the verified user id, or None.
    """
    with _use() as c:
        row = c.execute(
            "SELECT id, user_id, expires_at FROM phone_verifications "
            "WHERE whatsapp_number=? AND otp_code=? AND verified_at IS NULL "
            "ORDER BY id DESC LIMIT 1",
            (number, code),
        ).fetchone()
        if not row or datetime.fromisoformat(row["expires_at"]) < now:
            return None
        c.execute(
            "UPDATE phone_verifications SET verified_at=? WHERE id=?",
            (now.isoformat(timespec="seconds"), row["id"]),
        )
        owner = find_user_by_whatsapp(number, c)
        if owner is not None and owner["id"] != row["user_id"]:
            # the number moves to the verified account; the old (usually chat-created) row keeps its data
            c.execute(
                "UPDATE users SET whatsapp_number=NULL, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (owner["id"],),
            )
        if not link_whatsapp_number(row["user_id"], number, c):
            raise RuntimeError(f"could not link {number} to user {row['user_id']}")
        return int(row["user_id"])
