"""Tests for recurring invoice schedules and generation."""
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.backoffice.modules.invoices import recurring
from app.backoffice.modules.invoices.models import Invoice
from app.backoffice.modules.invoices.recurring import (
    add_months,
    calculate_next_invoice_date,
    create_recurring_invoice,
    delete_recurring_invoice,
    generate_due_recurring_invoices,
    generate_invoice_from_recurring,
    invoice_schedule,
    toggle_recurring_invoice,
    update_recurring_invoice,
)
from app.backoffice.modules.invoices.service import create_vendor

LINES = [{"description": "Monthly room hire", "quantity": "1", "unit_price": "100.00"}]


@pytest.fixture()
def vendor(db, admin):
    return create_vendor(db, {"name": "Community Choir"}, user=admin)


def _recurring(db, vendor, admin, *, today=date(2026, 1, 1), **kw):
    payload = {"vendor_id": vendor.id, "frequency": "monthly", "start_date": "2026-01-31", "days_before_due": "14"}
    payload.update(kw)
    return create_recurring_invoice(db, payload, LINES, user=admin, today=today)


@pytest.mark.parametrize(
    "start,months,anchor,expected",
    [
        (date(2026, 1, 31), 1, None, date(2026, 2, 28)),
        (date(2024, 1, 31), 1, None, date(2024, 2, 29)),
        (date(2026, 2, 28), 1, 31, date(2026, 3, 31)),
        (date(2026, 11, 30), 3, None, date(2027, 2, 28)),
        (date(2024, 2, 29), 12, None, date(2025, 2, 28)),
    ],
)
def test_add_months_clamps_to_month_end(start, months, anchor, expected):
    assert add_months(start, months, anchor_day=anchor) == expected


def test_next_invoice_date():
    assert calculate_next_invoice_date(date(2026, 3, 2), "weekly") == date(2026, 3, 9)
    assert calculate_next_invoice_date(date(2026, 1, 15), "quarterly") == date(2026, 4, 15)
    assert calculate_next_invoice_date(date(2026, 1, 15), "yearly") == date(2027, 1, 15)
    with pytest.raises(ValueError, match="Unknown frequency"):
        calculate_next_invoice_date(date(2026, 1, 15), "fortnightly")


def test_schedule_keeps_anchor_day():
    assert invoice_schedule(date(2026, 1, 31), "monthly", count=4) == [
        date(2026, 1, 31),
        date(2026, 2, 28),
        date(2026, 3, 31),
        date(2026, 4, 30),
    ]
    assert invoice_schedule(date(2026, 1, 1), "weekly", end=date(2026, 1, 20)) == [
        date(2026, 1, 1),
        date(2026, 1, 8),
        date(2026, 1, 15),
    ]
    with pytest.raises(ValueError, match="end date or a count"):
        invoice_schedule(date(2026, 1, 1), "weekly")


def test_create_validation(db, admin, vendor):
    with pytest.raises(ValueError, match="Frequency must be one of"):
        _recurring(db, vendor, admin, frequency="daily")
    with pytest.raises(ValueError, match="End date cannot be before"):
        _recurring(db, vendor, admin, end_date="2026-01-01")
    ri = _recurring(db, vendor, admin)
    assert ri.next_invoice_date == date(2026, 1, 31)
    assert ri.is_active


def test_generation_catches_up_one_period_per_run(db, admin, vendor):
    ri = _recurring(db, vendor, admin)
    today = date(2026, 3, 5)

    first = generate_due_recurring_invoices(db, today=today)
    assert len(first.generated) == 1
    inv = db.get(Invoice, first.generated[0])
    assert inv.invoice_date == date(2026, 1, 31)
    assert inv.due_date == date(2026, 2, 14)
    assert inv.recurring_invoice_id == ri.id
    assert ri.next_invoice_date == date(2026, 2, 28)
    assert ri.last_invoice_id == inv.id

    second = generate_due_recurring_invoices(db, today=today)
    assert len(second.generated) == 1
    assert ri.next_invoice_date == date(2026, 3, 31)

    assert generate_due_recurring_invoices(db, today=today).generated == []


def test_generation_stops_at_end_date(db, admin, vendor):
    ri = _recurring(db, vendor, admin, frequency="weekly", start_date="2026-01-01", end_date="2026-01-15")
    for _ in range(3):
        generate_invoice_from_recurring(db, ri, user=admin, today=date(2026, 2, 1))
    assert ri.next_invoice_date == date(2026, 1, 22)
    assert not ri.is_active
    with pytest.raises(ValueError, match="not active"):
        generate_invoice_from_recurring(db, ri, user=admin, today=date(2026, 2, 1))


def test_failed_schedule_does_not_block_others(db, admin, vendor):
    other = create_vendor(db, {"name": "Closed Supplier"}, user=admin)
    broken = _recurring(db, other, admin, start_date="2026-01-01")
    ok = _recurring(db, vendor, admin, start_date="2026-01-02")
    other.is_active = False
    db.flush()

    result = generate_due_recurring_invoices(db, today=date(2026, 1, 10))
    assert broken.id in result.failed
    assert "inactive" in result.failed[broken.id]
    assert len(result.generated) == 1
    assert ok.next_invoice_date == date(2026, 2, 2)
    assert broken.next_invoice_date == date(2026, 1, 1)


def test_database_error_on_one_schedule_does_not_block_others(db, admin, vendor, monkeypatch):
    locked = _recurring(db, vendor, admin, start_date="2026-01-01")
    ok = _recurring(db, vendor, admin, start_date="2026-01-02")
    real = recurring.generate_invoice_from_recurring

    def flaky(s, ri, **kw):
        if ri.id == locked.id:
            raise OperationalError("INSERT INTO invoices", {}, Exception("database is locked"))
        return real(s, ri, **kw)

    monkeypatch.setattr(recurring, "generate_invoice_from_recurring", flaky)
    result = generate_due_recurring_invoices(db, today=date(2026, 1, 10))

    assert result.failed == {locked.id: "Database error: OperationalError"}
    assert len(result.generated) == 1
    assert ok.next_invoice_date == date(2026, 2, 2)
    assert locked.next_invoice_date == date(2026, 1, 1)


def test_update_restarts_schedule(db, admin, vendor):
    ri = _recurring(db, vendor, admin)
    update_recurring_invoice(
        db,
        ri,
        {"vendor_id": vendor.id, "frequency": "weekly", "start_date": "2026-01-05"},
        LINES,
        user=admin,
        today=date(2026, 1, 20),
    )
    assert ri.next_invoice_date == date(2026, 1, 26)


def test_toggle_and_delete(db, admin, vendor):
    ri = _recurring(db, vendor, admin)
    toggle_recurring_invoice(db, ri, user=admin)
    assert not ri.is_active
    toggle_recurring_invoice(db, ri, user=admin)

    generate_invoice_from_recurring(db, ri, user=admin, today=date(2026, 2, 1))
    assert delete_recurring_invoice(db, ri, user=admin) is False
    assert not ri.is_active

    unused = _recurring(db, vendor, admin)
    assert delete_recurring_invoice(db, unused, user=admin) is True
    db.flush()


def test_weekly_due_date_offset(db, admin, vendor):
    ri = _recurring(db, vendor, admin, frequency="weekly", start_date="2026-03-02", days_before_due="0")
    inv = generate_invoice_from_recurring(db, ri, user=admin, today=date(2026, 3, 2))
    assert inv.due_date == inv.invoice_date == date(2026, 3, 2)
    assert ri.next_invoice_date == date(2026, 3, 2) + timedelta(days=7)
