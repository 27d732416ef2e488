# TESTS/test_bills.py
from datetime import date

import bills
import database as db

TODAY = date(2026, 10, 18)


def test_effective_status_is_derived_from_due_date():
    assert bills.effective_status({"status": "pending", "due_date": "2026-10-17"}, TODAY) == "overdue"
    assert bills.effective_status({"status": "pending", "due_date": "2026-10-18"}, TODAY) == "pending"
    assert bills.effective_status({"status": "pending", "due_date": "2026-11-01"}, TODAY) == "pending"
    assert bills.effective_status({"status": "paid", "due_date": "2020-01-01"}, TODAY) == "paid"


def test_overdue_is_never_written_back(user):
    uid = user["id"]
    late = db.add_bill(uid, "payable", {"amount": 90, "party_name": "Internet", "due_date": "2026-09-10"})
    db.add_bill(uid, "payable", {"amount": 40, "party_name": "Água", "due_date": "2026-11-10"})

    overdue = bills.list_bills_with_status(uid, "payable", status="overdue", today=TODAY)
    assert [b["id"] for b in overdue] == [late]
    assert db.get_bill(uid, "payable", late)["status"] == "pending"

    db.mark_bill_paid(uid, "payable", late)
    assert bills.list_bills_with_status(uid, "payable", status="overdue", today=TODAY) == []
    assert len(bills.list_bills_with_status(uid, "payable", status="paid", today=TODAY)) == 1


def test_monthly_recurrence_clamps_to_month_end():
    bill = {"due_date": "2026-01-31", "is_recurring": 1, "recurrence_interval": "monthly", "recurrence_count": 3}
    assert bills.occurrence_dates(bill, date(2027, 1, 1)) == [
        date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31),
    ]


def test_weekly_recurrence_stops_at_end_date():
    bill = {"due_date": "2026-10-01", "is_recurring": 1, "recurrence_interval": "weekly",
            "recurrence_end_date": "2026-10-20"}
    assert bills.occurrence_dates(bill, date(2026, 12, 31)) == [
        date(2026, 10, 1), date(2026, 10, 8), date(2026, 10, 15),
    ]


def test_non_recurring_bill_has_single_occurrence():
    bill = {"due_date": "2026-10-25", "is_recurring": 0}
    assert bills.occurrence_dates(bill, date(2027, 1, 1)) == [date(2026, 10, 25)]
    assert bills.occurrence_dates(bill, date(2026, 10, 1)) == []


def test_upcoming_occurrences_projects_recurring_series(user):
    uid = user["id"]
    rent = db.add_bill(uid, "payable", {
        "amount": 1500, "party_name": "Aluguel", "due_date": "2026-09-05",
        "is_recurring": True, "recurrence_interval": "monthly",
    })
    paid = db.add_bill(uid, "payable", {"amount": 20, "party_name": "Pago", "due_date": "2026-10-20"})
    db.mark_bill_paid(uid, "payable", paid)

    upcoming = bills.upcoming_occurrences(uid, "payable", TODAY, days=30)
    assert [(o["bill_id"], o["due_date"], o["occurrence"]) for o in upcoming] == [(rent, "2026-11-05", 3)]
