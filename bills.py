# bills.py
#
# Stored status is only pending|paid. "overdue" is computed here from the due
# date at read time and never written back.
# Recurrence descriptors (interval, count, end date) are expanded on demand into
# due dates; the projected occurrences are not persisted.

from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from dateutil.relativedelta import relativedelta

import database as db

_STEPS = {
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "annual": relativedelta(years=1),
}

# Upper bound for open-ended series (no count, no end date) so a projection always terminates.
MAX_OCCURRENCES = 520


def _as_date(value) -> Optional[date]:
    iso = db.to_iso_date(value)
    return date.fromisoformat(iso) if iso else None


def effective_status(bill: Dict, today: Optional[date] = None) -> str:
    today = today or date.today()
    if bill.get("status") == "paid":
        return "paid"
    due = _as_date(bill.get("due_date"))
    if due is not None and due < today:
        return "overdue"
    return "pending"


def with_effective_status(rows: Iterable[Dict], today: Optional[date] = None) -> List[Dict]:
    today = today or date.today()
    out = []
    for r in rows:
        d = dict(r)
        d["status"] = effective_status(d, today)
        d["is_recurring"] = bool(d.get("is_recurring"))
        out.append(d)
    return out


def list_bills_with_status(
    user_id: int,
    kind: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[str] = None,
    today: Optional[date] = None,
) -> List[Dict]:
    """List bills with derived status; `status` filters on the derived value (all|pending|paid|overdue)."""
    status = (status or "all").lower()
    if status not in ("all", "pending", "paid", "overdue"):
        raise ValueError("status must be one of: all, pending, paid, overdue")
    rows = with_effective_status(db.list_bills(user_id, kind, start_date, end_date), today)
    if status == "all":
        return rows
    return [r for r in rows if r["status"] == status]


def occurrence_dates(bill: Dict, until: date) -> List[date]:
    """
    Due dates of a bill up to and including `until`.
    The first occurrence is the stored due date. A recurring bill then steps by its
    interval (calendar arithmetic, so Jan 31 + 1 month = Feb 28/29) until the
    occurrence count or end date is exhausted, whichever comes first.
    """
    first = _as_date(bill.get("due_date"))
    if first is None or first > until:
        return []
    if not bill.get("is_recurring"):
        return [first]

    step = _STEPS.get((bill.get("recurrence_interval") or "monthly").lower())
    if step is None:
        return [first]
    count = bill.get("recurrence_count")
    limit = int(count) if count else MAX_OCCURRENCES
    end = _as_date(bill.get("recurrence_end_date"))
    stop = min(until, end) if end else until

    out: List[date] = []
    for i in range(limit):
        # step from the anchor each time so month-end dates don't drift
        d = first + step * i
        if d > stop:
            break
        out.append(d)
    return out


def upcoming_occurrences(user_id: int, kind: str, today: Optional[date] = None, days: int = 30) -> List[Dict]:
    """
    Unpaid occurrences falling in [today, today + days], including future
    instalments of recurring bills. Paid rows contribute nothing.
    """
    today = today or date.today()
    if days < 0:
        raise ValueError("days must be zero or positive")
    horizon = today + timedelta(days=days)
    out: List[Dict] = []
    for bill in db.list_bills(user_id, kind, status="pending"):
        for n, due in enumerate(occurrence_dates(bill, horizon), start=1):
            if due < today:
                continue
            out.append({
                "bill_id": bill["id"],
                "party_name": bill["party_name"],
                "amount": bill["amount"],
                "due_date": due.isoformat(),
                "occurrence": n,
                "description": bill.get("description") or "",
            })
    out.sort(key=lambda o: (o["due_date"], o["bill_id"]))
    return out
