"""Tests for table bookings: policy, availability, lifecycle and refunds."""
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from app.backoffice.db import session_scope
from app.backoffice.modules.messaging.models import Message
from app.backoffice.modules.table_bookings.models import TableBooking, TableBookingModification, VenueTable
from app.backoffice.modules.table_bookings.policy import DEFAULT_POLICIES, calculate_refund, default_policy, policy_violations
from app.backoffice.modules.table_bookings.service import (
    assign_tables,
    cancel_booking,
    check_availability,
    create_booking,
    create_table,
    delete_booking,
    delete_table,
    mark_completed,
    mark_no_show,
    record_payment,
    update_booking,
    update_booking_policy,
)
from app.backoffice.utils import venue_today

# Monday; the Friday and Sunday below are inside every advance window.
NOW = datetime(2026, 3, 2, 10, 0)
FRIDAY = date(2026, 3, 6)
SUNDAY = date(2026, 3, 8)
ROAST = [{"custom_item_name": "Roast beef", "item_type": "main", "quantity": 2, "price_at_booking": "15.00"}]


@pytest.fixture()
def tables(db, admin):
    t1 = create_table(db, table_number="1", capacity=4, user=admin)
    t2 = create_table(db, table_number="2", capacity=2, user=admin)
    return t1, t2


def _book(db, customer, admin, **kw):
    kw.setdefault("booking_date", FRIDAY)
    kw.setdefault("booking_time", time(19, 0))
    kw.setdefault("party_size", 2)
    return create_booking(db, customer=customer, user=admin, now=kw.pop("now", NOW), **kw)


# ─────────────────────────────────────────────────────────────────────────────
# Refund ladder (pure)
# ─────────────────────────────────────────────────────────────────────────────


def test_refund_full_with_enough_notice():
    starts = datetime(2026, 3, 8, 13, 0)
    d = calculate_refund(default_policy("sunday_lunch"), starts_at=starts, paid_amount=Decimal("50.00"), now=starts - timedelta(hours=72))
    assert d.refund_percentage == 100
    assert d.refund_amount == Decimal("50.00")


def test_refund_partial_inside_full_window():
    starts = datetime(2026, 3, 8, 13, 0)
    d = calculate_refund(default_policy("sunday_lunch"), starts_at=starts, paid_amount=Decimal("50.00"), now=starts - timedelta(hours=30))
    assert d.refund_percentage == 50
    assert d.refund_amount == Decimal("25.00")
    assert d.reason == "50% refund - cancelled with 30 hours notice"


def test_refund_nothing_when_too_late_or_unpaid():
    starts = datetime(2026, 3, 8, 13, 0)
    policy = default_policy("sunday_lunch")
    late = calculate_refund(policy, starts_at=starts, paid_amount=Decimal("50.00"), now=starts - timedelta(hours=10))
    assert late.refund_percentage == 0
    assert late.refund_amount == Decimal("0.00")

    unpaid = calculate_refund(policy, starts_at=starts, paid_amount=None, now=starts - timedelta(hours=72))
    assert unpaid.reason == "No payment found"
    assert unpaid.refund_amount == Decimal("0.00")


def test_policy_violations():
    regular = default_policy("regular")
    errs = policy_violations(regular, booking_type="regular", booking_date=FRIDAY, booking_time=time(19, 0), party_size=21, now=NOW)
    assert "Maximum party size is 20" in errs

    errs = policy_violations(
        default_policy("sunday_lunch"),
        booking_type="sunday_lunch",
        booking_date=FRIDAY,
        booking_time=time(13, 0),
        party_size=4,
        now=NOW,
    )
    assert "Sunday lunch bookings must be for a Sunday" in errs

    # Saturday 2pm is past the 1pm cut-off for the next day's lunch.
    errs = policy_violations(
        default_policy("sunday_lunch"),
        booking_type="sunday_lunch",
        booking_date=SUNDAY,
        booking_time=time(13, 0),
        party_size=4,
        now=datetime(2026, 3, 7, 14, 0),
    )
    assert any("1pm on Saturday" in e for e in errs)


# ─────────────────────────────────────────────────────────────────────────────
# Booking lifecycle
# ─────────────────────────────────────────────────────────────────────────────


def test_regular_booking_confirmed_and_texted(db, admin, customer, tables):
    b = _book(db, customer, admin)
    assert b.status == "confirmed"
    assert b.confirmed_at == NOW
    assert b.booking_reference.startswith("TB-2026-")

    msg = db.query(Message).filter(Message.related_entity_id == str(b.id)).one()
    assert msg.template_key == "table_booking.confirmed"
    assert msg.status == "queued"
    assert msg.recipient == "+447700900123"
    assert b.booking_reference in msg.body


def test_availability_uses_overlapping_slots(db, admin, customer, tables):
    _book(db, customer, admin, party_size=4)

    a = check_availability(db, booking_date=FRIDAY, booking_time=time(20, 0), party_size=4)
    assert a.total_capacity == 6
    assert a.booked_covers == 4
    assert not a.is_available

    with pytest.raises(ValueError, match="No availability"):
        _book(db, customer, admin, booking_time=time(20, 0), party_size=4)

    # Starts exactly when the first booking ends.
    later = _book(db, customer, admin, booking_time=time(21, 0), party_size=4)
    assert later.status == "confirmed"


def test_sunday_lunch_needs_items_and_payment(db, admin, customer, tables):
    with pytest.raises(ValueError, match="menu selection"):
        _book(db, customer, admin, booking_date=SUNDAY, booking_time=time(13, 0), booking_type="sunday_lunch")

    b = _book(db, customer, admin, booking_date=SUNDAY, booking_time=time(13, 0), booking_type="sunday_lunch", items=ROAST)
    assert b.status == "pending_payment"
    assert b.items_total == Decimal("30.00")
    assert db.query(Message).filter(Message.related_entity_id == str(b.id)).count() == 0

    record_payment(db, b, amount=Decimal("30.00"), user=admin, now=NOW)
    assert b.status == "confirmed"
    assert db.query(Message).filter(Message.template_key == "table_booking.confirmed").count() == 1


def test_bad_item_discards_booking(db, admin, customer, tables):
    with pytest.raises(ValueError, match="Menu item 1"):
        _book(
            db,
            customer,
            admin,
            booking_date=SUNDAY,
            booking_time=time(13, 0),
            booking_type="sunday_lunch",
            items=[{"custom_item_name": "Roast", "item_type": "dessert"}],
        )
    assert db.query(TableBooking).count() == 0


def test_menu_prices_accept_pound_signs_and_reject_words(db, admin, customer, tables):
    b = _book(
        db,
        customer,
        admin,
        booking_date=SUNDAY,
        booking_time=time(13, 0),
        booking_type="sunday_lunch",
        items=[{"custom_item_name": "Roast", "quantity": 2, "price_at_booking": "£14.50"}],
    )
    assert b.items_total == Decimal("29.00")

    with pytest.raises(ValueError, match="Menu item 1: price must be a number"):
        _book(
            db,
            customer,
            admin,
            booking_date=SUNDAY,
            booking_time=time(12, 0),
            booking_type="sunday_lunch",
            items=[{"custom_item_name": "Roast", "price_at_booking": "fourteen"}],
        )
    assert db.query(TableBooking).count() == 1


def test_policy_cancellation_fee_is_validated(db, admin):
    payload = {k: str(v) for k, v in DEFAULT_POLICIES["regular"].items()}
    p = update_booking_policy(db, "regular", {**payload, "cancellation_fee": "£1,200.00"}, user=admin)
    assert p.cancellation_fee == Decimal("1200.00")

    with pytest.raises(ValueError, match="Cancellation fee must be an amount"):
        update_booking_policy(db, "regular", {**payload, "cancellation_fee": "five"}, user=admin)
    with pytest.raises(ValueError, match="cannot be negative"):
        update_booking_policy(db, "regular", {**payload, "cancellation_fee": "-5"}, user=admin)
    assert p.cancellation_fee == Decimal("1200.00")


def test_cancel_applies_partial_refund(db, admin, customer, tables):
    b = _book(db, customer, admin, booking_date=SUNDAY, booking_time=time(13, 0), booking_type="sunday_lunch", items=ROAST)
    payment = record_payment(db, b, amount=Decimal("30.00"), user=admin, now=NOW)

    decision = cancel_booking(db, b, reason="Change of plans", user=admin, now=b.starts_at - timedelta(hours=30))
    assert decision.refund_percentage == 50
    assert decision.refund_amount == Decimal("15.00")
    assert b.status == "cancelled"
    assert payment.status == "partial_refund"
    assert payment.refund_amount == Decimal("15.00")

    msg = db.query(Message).filter(Message.template_key == "table_booking.cancelled").one()
    assert "£15.00" in msg.body

    with pytest.raises(ValueError, match="already cancelled"):
        cancel_booking(db, b, reason=None, user=admin, now=NOW)


def test_update_logs_modification(db, admin, customer, tables):
    b = _book(db, customer, admin)
    update_booking(db, b, booking_date=FRIDAY, booking_time=time(18, 30), party_size=3, allergies="Nuts", user=admin, now=NOW)
    db.flush()
    mod = db.query(TableBookingModification).filter(TableBookingModification.booking_id == b.id).one()
    assert '"18:30"' in mod.new_values_json
    assert '"19:00"' in mod.old_values_json


def test_assign_tables_checks_capacity(db, admin, customer, tables):
    t1, t2 = tables
    b = _book(db, customer, admin, party_size=5)
    with pytest.raises(ValueError, match="seat 4"):
        assign_tables(db, b, [t1.id], user=admin)
    assign_tables(db, b, [t1.id, t2.id], user=admin)
    assert sorted(t.table_number for t in b.tables) == ["1", "2"]


def test_delete_table_with_active_bookings_refused(db, admin, customer, tables):
    t1, _ = tables
    b = _book(db, customer, admin)
    assign_tables(db, b, [t1.id], user=admin)
    db.flush()
    with pytest.raises(ValueError, match="Cannot delete table with active bookings"):
        delete_table(db, t1, user=admin, today=NOW.date())

    cancel_booking(db, b, reason=None, user=admin, now=NOW)
    db.flush()
    delete_table(db, t1, user=admin, today=NOW.date())
    db.flush()
    assert db.get(VenueTable, t1.id) is None


def test_no_show_only_after_start(db, admin, customer, tables):
    b = _book(db, customer, admin)
    with pytest.raises(ValueError, match="before its start time"):
        mark_no_show(db, b, user=admin, now=NOW)
    mark_no_show(db, b, user=admin, now=b.starts_at + timedelta(minutes=20))
    assert b.status == "no_show"
    with pytest.raises(ValueError, match="Cannot transition"):
        mark_completed(db, b, user=admin, now=b.ends_at)


def test_delete_booking_rules(db, admin, customer, tables):
    b = _book(db, customer, admin)
    with pytest.raises(ValueError, match="Only cancelled or unpaid"):
        delete_booking(db, b, user=admin)
    cancel_booking(db, b, reason=None, user=admin, now=NOW)
    delete_booking(db, b, user=admin)
    db.flush()
    assert db.query(TableBooking).count() == 0


def test_table_capacity_limits(db, admin):
    with pytest.raises(ValueError, match="between 1 and 20"):
        create_table(db, table_number="9", capacity=21, user=admin)
    create_table(db, table_number="9", capacity=20, user=admin)
    with pytest.raises(ValueError, match="already exists"):
        create_table(db, table_number="9", capacity=2, user=admin)


# ─────────────────────────────────────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────────────────────────────────────


def test_create_booking_via_form(app, admin_client):
    r = admin_client.post("/admin/table-bookings/tables/new", data={"csrf_token": "t", "table_number": "5", "capacity": "6"})
    assert r.status_code == 302

    day = venue_today() + timedelta(days=3)
    r = admin_client.post(
        "/admin/table-bookings/new",
        data={
            "csrf_token": "t",
            "booking_date": day.isoformat(),
            "booking_time": "19:00",
            "party_size": "4",
            "booking_type": "regular",
            "first_name": "Alex",
            "mobile_number": "07700 900456",
        },
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"TB-" in r.data

    with session_scope(app) as s:
        b = s.query(TableBooking).one()
        assert b.customer.mobile_number == "+447700900456"
        assert b.status == "confirmed"
