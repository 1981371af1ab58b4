"""Tests for the dashboard snapshot and the table booking report."""
from datetime import date, datetime, time
from decimal import Decimal

import pytest

from app.backoffice.modules.private_bookings.service import create_booking as create_private_booking
from app.backoffice.modules.reporting.service import dashboard_snapshot, table_booking_report
from app.backoffice.modules.table_bookings.service import (
    cancel_booking,
    create_booking,
    create_table,
    mark_completed,
    mark_no_show,
)

NOW = datetime(2026, 3, 2, 10, 0)
FRIDAY = date(2026, 3, 6)


@pytest.fixture()
def bookings(db, admin, customer):
    create_table(db, table_number="1", capacity=4, user=admin)
    create_table(db, table_number="2", capacity=4, user=admin)

    def book(hour, party_size):
        return create_booking(
            db,
            customer=customer,
            user=admin,
            now=NOW,
            booking_date=FRIDAY,
            booking_time=time(hour, 0),
            party_size=party_size,
        )

    confirmed = book(12, 2)
    completed = book(14, 3)
    cancelled = book(17, 4)
    cancel_booking(db, cancelled, reason="Plans changed", user=admin, now=NOW)
    no_show = book(19, 5)

    after_service = datetime(2026, 3, 6, 23, 0)
    mark_completed(db, completed, user=admin, now=after_service)
    mark_no_show(db, no_show, user=admin, now=after_service)
    db.flush()
    return confirmed, completed, cancelled, no_show


def test_table_booking_report(db, bookings):
    report = table_booking_report(db, start=FRIDAY, end=FRIDAY)
    assert report.total_bookings == 4
    assert report.by_status == {"cancelled": 1, "completed": 1, "confirmed": 1, "no_show": 1}
    assert report.covers_by_day == {FRIDAY: 5}
    assert report.covers_by_type == {"regular": 5}
    assert report.total_covers == 5
    assert report.no_show_rate == Decimal("25.0")
    assert report.cancellation_rate == Decimal("25.0")


def test_empty_report_and_range_checks(db):
    report = table_booking_report(db, start=FRIDAY, end=FRIDAY)
    assert report.total_bookings == 0
    assert report.no_show_rate == Decimal("0")
    with pytest.raises(ValueError, match="on or after the start date"):
        table_booking_report(db, start=FRIDAY, end=date(2026, 3, 1))
    with pytest.raises(ValueError, match="at most 366 days"):
        table_booking_report(db, start=date(2026, 1, 1), end=date(2027, 1, 2))


def test_dashboard_snapshot(db, admin, bookings):
    private = create_private_booking(
        db,
        {
            "customer_first_name": "Priya",
            "contact_phone": "07700 900456",
            "event_date": "2026-03-16",
            "start_time": "18:00",
        },
        user=admin,
        now=NOW,
    )
    db.flush()

    snap = dashboard_snapshot(db, today=FRIDAY)
    assert [b.status for b in snap.bookings_today] == ["confirmed", "completed"]
    assert snap.covers_today == 5
    assert snap.pending_payment_count == 0
    assert snap.upcoming_private == [private]
    assert snap.expiring_holds == [private]
    assert snap.invoices.count_draft == 0
    assert snap.loyalty["member_count"] == 0
    assert snap.messages_queued >= 1
