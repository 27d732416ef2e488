# reports.py
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pandas as pd
from dateutil.relativedelta import relativedelta

import database as db
from bills import with_effective_status

UNCATEGORIZED = "Sem categoria"
PERIODS = ("all", "month", "quarter", "year")


def resolve_date_range(
    month: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    A "YYYY-MM" month wins over an explicit start/end pair.
    Returns ISO (start, end); either side may be None for an open range.
    """
    if month:
        try:
            first = datetime.strptime(month.strip(), "%Y-%m").date()
        except ValueError:
            raise ValueError("month must look like YYYY-MM")
        last = first + relativedelta(months=1, days=-1)
        return first.isoformat(), last.isoformat()

    out = []
    for label, value in (("start", start), ("end", end)):
        if value:
            iso = db.to_iso_date(value)
            if not iso:
                raise ValueError(f"{label} must be a date (YYYY-MM-DD)")
            out.append(iso)
        else:
            out.append(None)
    return out[0], out[1]


def period_start(period: str, today: date) -> Optional[str]:
    period = (period or "all").lower()
    if period not in PERIODS:
        raise ValueError(f"period must be one of: {', '.join(PERIODS)}")
    if period == "month":
        return today.replace(day=1).isoformat()
    if period == "quarter":
        return date(today.year, (today.month - 1) // 3 * 3 + 1, 1).isoformat()
    if period == "year":
        return date(today.year, 1, 1).isoformat()
    return None


def _frame(user_id: int, start: Optional[str], end: Optional[str], rows: Optional[List[Dict]] = None) -> pd.DataFrame:
    if rows is None:
        rows = db.fetch_transactions(user_id, start_date=start, end_date=end)
    if not rows:
        return pd.DataFrame(columns=["id", "amount", "type", "category", "description", "date"])
    df = pd.DataFrame(rows)
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0.0)
    df["category"] = df["category"].fillna(UNCATEGORIZED).replace("", UNCATEGORIZED)
    return df


def monthly_report(user_id: int, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict]:
    """Income vs expense per calendar month, oldest first."""
    df = _frame(user_id, start, end)
    if df.empty:
        return []
    df["month"] = df["date"].astype(str).str[:7]
    pivot = (
        df.pivot_table(index="month", columns="type", values="amount", aggfunc="sum", fill_value=0.0)
        .reindex(columns=["income", "expense"], fill_value=0.0)
        .sort_index()
    )
    return [
        {
            "month": month,
            "income": round(float(r["income"]), 2),
            "expense": round(float(r["expense"]), 2),
            "balance": round(float(r["income"] - r["expense"]), 2),
        }
        for month, r in pivot.iterrows()
    ]


def category_report(user_id: int, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict]:
    """Expense totals per category, largest first."""
    df = _frame(user_id, start, end)
    df = df[df["type"] == "expense"]
    if df.empty:
        return []
    totals = df.groupby("category")["amount"].sum().sort_values(ascending=False)
    return [{"name": name, "value": round(float(v), 2)} for name, v in totals.items()]


def analytics(
    user_id: int,
    period: str = "all",
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict:
    """
    Totals and per-category breakdown (both directions) for a window.
    An explicit start/end overrides the quick period.
    """
    today = today or date.today()
    if not start and not end:
        start = period_start(period, today)
    rows = db.fetch_transactions(user_id, start_date=start, end_date=end, search=search)
    df = _frame(user_id, start, end, rows)

    income = round(float(df.loc[df["type"] == "income", "amount"].sum()), 2) if not df.empty else 0.0
    expense = round(float(df.loc[df["type"] == "expense", "amount"].sum()), 2) if not df.empty else 0.0
    by_category: Dict[str, float] = {}
    if not df.empty:
        by_category = {k: round(float(v), 2) for k, v in df.groupby("category")["amount"].sum().items()}

    return {
        "start": start,
        "end": end,
        "total_income": income,
        "total_expense": expense,
        "balance": round(income - expense, 2),
        "count": int(len(df)),
        "categories": by_category,
        "transactions": rows,
    }


def _bill_totals(user_id: int, kind: str, today: date) -> Dict:
    rows = with_effective_status(db.list_bills(user_id, kind), today)
    out = {"pending": 0, "overdue": 0, "paid": 0, "open_amount": 0.0}
    for r in rows:
        out[r["status"]] += 1
        if r["status"] != "paid":
            out["open_amount"] += float(r["amount"])
    out["open_amount"] = round(out["open_amount"], 2)
    return out


def dashboard(user_id: int, today: Optional[date] = None) -> Dict:
    today = today or date.today()
    month_start = today.replace(day=1).isoformat()
    month_end = (today.replace(day=1) + relativedelta(months=1, days=-1)).isoformat()

    goals = db.list_goals(user_id)
    target_total = sum(float(g["target_amount"]) for g in goals)
    current_total = sum(float(g["current_amount"]) for g in goals)

    reminders = db.list_reminders(
        user_id, start_date=today.isoformat(), end_date=(today + timedelta(days=7)).isoformat(), status="pending"
    )

    return {
        "month": db.fetch_summary(user_id, month_start, month_end),
        "overall": db.fetch_summary(user_id),
        "recent_transactions": db.fetch_transactions(user_id, limit=5),
        "payables": _bill_totals(user_id, "payable", today),
        "receivables": _bill_totals(user_id, "receivable", today),
        "goals": {
            "total": len(goals),
            "completed": sum(1 for g in goals if g["status"] == "completed"),
            "in_progress": sum(1 for g in goals if g["status"] == "in_progress"),
            "target_amount": round(target_total, 2),
            "current_amount": round(current_total, 2),
            "progress_pct": round(current_total / target_total * 100, 1) if target_total else 0.0,
        },
        "upcoming_reminders": reminders,
    }
