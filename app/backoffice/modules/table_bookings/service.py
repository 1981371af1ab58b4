"""
Table booking service layer.
Handles tables, policies, availability, booking lifecycle and refunds.
"""
from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.messaging.service import queue_templated_sms
from app.backoffice.utils import money, parse_decimal

from .models import (
    BookingPolicy,
    TableBooking,
    TableBookingItem,
    TableBookingModification,
    TableBookingPayment,
    TableBookingTable,
    VenueTable,
)
from .policy import BOOKING_TYPES, DEFAULT_POLICIES, RefundDecision, calculate_refund, default_policy, policy_violations

if TYPE_CHECKING:
    from app.backoffice.models import User

logger = logging.getLogger(__name__)

VALID_STATUSES = {"pending_payment", "confirmed", "cancelled", "no_show", "completed"}
ACTIVE_STATUSES = ("pending_payment", "confirmed")

STATUS_TRANSITIONS = {
    "pending_payment": {"confirmed", "cancelled"},
    "confirmed": {"cancelled", "no_show", "completed"},
    "cancelled": set(),
    "no_show": set(),
    "completed": set(),
}

ITEM_TYPES = ("main", "side", "extra")
BOOKING_SOURCES = ("phone", "walk_in", "online", "staff")
DEFAULT_DURATION_MINUTES = 120
MAX_TABLE_CAPACITY = 20
REFERENCE_ATTEMPTS = 20


@dataclass(frozen=True)
class Availability:
    total_capacity: int
    booked_covers: int
    available_capacity: int
    is_available: bool


# ─────────────────────────────────────────────────────────────────────────────
# Tables
# ─────────────────────────────────────────────────────────────────────────────


def _validate_capacity(capacity: int | None) -> int:
    if capacity is None or capacity < 1 or capacity > MAX_TABLE_CAPACITY:
        raise ValueError(f"Capacity must be between 1 and {MAX_TABLE_CAPACITY}.")
    return capacity


def create_table(
    s: Session,
    *,
    table_number: str,
    capacity: int | None,
    notes: str | None = None,
    is_active: bool = True,
    user: User,
) -> VenueTable:
    table_number = (table_number or "").strip()
    if not table_number:
        raise ValueError("Table number is required.")
    if s.query(VenueTable).filter(VenueTable.table_number == table_number).first():
        raise ValueError(f"Table '{table_number}' already exists.")
    t = VenueTable(
        table_number=table_number,
        capacity=_validate_capacity(capacity),
        notes=(notes or "").strip() or None,
        is_active=is_active,
    )
    s.add(t)
    s.flush()
    record_event(
        s,
        actor=user,
        action="table.create",
        entity_type="VenueTable",
        entity_id=str(t.id),
        metadata={"table_number": t.table_number, "capacity": t.capacity},
    )
    return t


def update_table(
    s: Session,
    t: VenueTable,
    *,
    table_number: str,
    capacity: int | None,
    notes: str | None,
    is_active: bool,
    user: User,
) -> VenueTable:
    table_number = (table_number or "").strip()
    if not table_number:
        raise ValueError("Table number is required.")
    clash = s.query(VenueTable).filter(VenueTable.table_number == table_number, VenueTable.id != t.id).first()
    if clash:
        raise ValueError(f"Table '{table_number}' already exists.")
    before = {"table_number": t.table_number, "capacity": t.capacity, "is_active": t.is_active}
    t.table_number = table_number
    t.capacity = _validate_capacity(capacity)
    t.notes = (notes or "").strip() or None
    t.is_active = is_active
    t.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="table.update",
        entity_type="VenueTable",
        entity_id=str(t.id),
        metadata={"before": before, "after": {"table_number": t.table_number, "capacity": t.capacity, "is_active": t.is_active}},
    )
    return t


def table_has_active_bookings(s: Session, t: VenueTable, *, today: date) -> bool:
    hit = (
        s.query(TableBooking.id)
        .join(TableBookingTable, TableBookingTable.booking_id == TableBooking.id)
        .filter(
            TableBookingTable.table_id == t.id,
            TableBooking.status == "confirmed",
            TableBooking.booking_date >= today,
        )
        .first()
    )
    return hit is not None


def delete_table(s: Session, t: VenueTable, *, user: User, today: date) -> None:
    if table_has_active_bookings(s, t, today=today):
        raise ValueError("Cannot delete table with active bookings")
    record_event(
        s,
        actor=user,
        action="table.delete",
        entity_type="VenueTable",
        entity_id=str(t.id),
        metadata={"table_number": t.table_number},
    )
    s.delete(t)


# ─────────────────────────────────────────────────────────────────────────────
# Policies
# ─────────────────────────────────────────────────────────────────────────────


def get_policy(s: Session, booking_type: str) -> BookingPolicy:
    """Stored policy for the booking type, or the built-in default."""
    if booking_type not in BOOKING_TYPES:
        raise ValueError(f"Unknown booking type: {booking_type}")
    p = s.query(BookingPolicy).filter(BookingPolicy.booking_type == booking_type).one_or_none()
    return p or default_policy(booking_type)


def _money_input(raw: Any, error: str) -> Decimal:
    """Form strings ('£14.50', '1,200') or numbers to pennies; ValueError otherwise."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return money(0)
    value = parse_decimal(raw) if isinstance(raw, str) else Decimal(str(raw))
    if value is None or not value.is_finite():
        raise ValueError(error)
    return money(value)


POLICY_FIELDS = tuple(DEFAULT_POLICIES["regular"].keys())


def update_booking_policy(s: Session, booking_type: str, payload: dict[str, Any], *, user: User) -> BookingPolicy:
    if booking_type not in BOOKING_TYPES:
        raise ValueError(f"Unknown booking type: {booking_type}")
    values: dict[str, int] = {}
    for key in POLICY_FIELDS:
        raw = payload.get(key)
        if raw is None or str(raw).strip() == "":
            raise ValueError(f"{key.replace('_', ' ').capitalize()} is required.")
        try:
            values[key] = int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{key.replace('_', ' ').capitalize()} must be a whole number.") from None
        if values[key] < 0:
            raise ValueError(f"{key.replace('_', ' ').capitalize()} cannot be negative.")
    if values["partial_refund_percentage"] > 100:
        raise ValueError("Partial refund percentage cannot exceed 100.")
    if values["partial_refund_hours"] > values["full_refund_hours"]:
        raise ValueError("Partial refund hours cannot exceed full refund hours.")
    if values["max_party_size"] < 1:
        raise ValueError("Max party size must be at least 1.")
    fee = _money_input(payload.get("cancellation_fee"), "Cancellation fee must be an amount in pounds.")
    if fee < 0:
        raise ValueError("Cancellation fee cannot be negative.")

    p = s.query(BookingPolicy).filter(BookingPolicy.booking_type == booking_type).one_or_none()
    if p is None:
        p = BookingPolicy(booking_type=booking_type)
        s.add(p)
    before = {k: getattr(p, k) for k in POLICY_FIELDS}
    for k, v in values.items():
        setattr(p, k, v)
    p.modification_allowed = bool(payload.get("modification_allowed", True))
    p.cancellation_fee = fee
    p.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="booking_policy.update",
        entity_type="BookingPolicy",
        entity_id=booking_type,
        metadata={"before": before, "after": values},
    )
    return p


# ─────────────────────────────────────────────────────────────────────────────
# Availability + references
# ─────────────────────────────────────────────────────────────────────────────


def _overlaps(a_start: datetime, a_minutes: int, b_start: datetime, b_minutes: int) -> bool:
    return a_start < b_start + timedelta(minutes=b_minutes) and b_start < a_start + timedelta(minutes=a_minutes)


def check_availability(
    s: Session,
    *,
    booking_date: date,
    booking_time: time,
    party_size: int,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    exclude_booking_id: int | None = None,
) -> Availability:
    """
    Venue-wide cover check: capacity of active tables minus the party sizes
    of confirmed/pending bookings whose slot overlaps the requested one.
    """
    total_capacity = int(
        s.query(func.coalesce(func.sum(VenueTable.capacity), 0)).filter(VenueTable.is_active.is_(True)).scalar() or 0
    )
    q = s.query(TableBooking).filter(
        TableBooking.booking_date == booking_date,
        TableBooking.status.in_(ACTIVE_STATUSES),
    )
    if exclude_booking_id is not None:
        q = q.filter(TableBooking.id != exclude_booking_id)

    requested = datetime.combine(booking_date, booking_time)
    booked = sum(
        b.party_size
        for b in q.all()
        if _overlaps(b.starts_at, b.duration_minutes or DEFAULT_DURATION_MINUTES, requested, duration_minutes)
    )
    available = total_capacity - booked
    return Availability(
        total_capacity=total_capacity,
        booked_covers=booked,
        available_capacity=available,
        is_available=available >= party_size,
    )


def generate_booking_reference(s: Session, *, now: datetime, rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    for _ in range(REFERENCE_ATTEMPTS):
        ref = f"TB-{now.year}-{rng.randrange(10000):04d}"
        if not s.query(TableBooking.id).filter(TableBooking.booking_reference == ref).first():
            return ref
    raise ValueError("Could not generate a unique booking reference. Please retry.")


# ─────────────────────────────────────────────────────────────────────────────
# Bookings
# ─────────────────────────────────────────────────────────────────────────────


def _snapshot(b: TableBooking) -> dict[str, Any]:
    return {
        "booking_date": b.booking_date.isoformat(),
        "booking_time": b.booking_time.strftime("%H:%M"),
        "party_size": b.party_size,
        "duration_minutes": b.duration_minutes,
        "special_requirements": b.special_requirements,
        "dietary_requirements": b.dietary_requirements,
        "allergies": b.allergies,
        "status": b.status,
        "tables": sorted(t.table_number for t in b.tables),
    }


def _log_modification(
    s: Session,
    b: TableBooking,
    *,
    modification_type: str,
    old: dict[str, Any],
    new: dict[str, Any],
    user: User | None,
) -> None:
    changed_old = {k: v for k, v in old.items() if new.get(k) != v}
    changed_new = {k: new[k] for k in changed_old}
    if not changed_old:
        return
    s.add(
        TableBookingModification(
            booking_id=b.id,
            modified_by_user_id=user.id if user else None,
            modification_type=modification_type,
            old_values_json=json.dumps(changed_old, sort_keys=True),
            new_values_json=json.dumps(changed_new, sort_keys=True),
        )
    )


def _add_items(b: TableBooking, items: list[dict[str, Any]]) -> None:
    for idx, raw in enumerate(items, start=1):
        name = (raw.get("custom_item_name") or "").strip()
        if not name:
            raise ValueError(f"Menu item {idx}: name is required.")
        item_type = (raw.get("item_type") or "main").strip()
        if item_type not in ITEM_TYPES:
            raise ValueError(f"Menu item {idx}: invalid item type '{item_type}'.")
        try:
            quantity = int(raw.get("quantity") or 1)
        except (TypeError, ValueError):
            raise ValueError(f"Menu item {idx}: quantity must be a whole number.") from None
        if quantity < 1:
            raise ValueError(f"Menu item {idx}: quantity must be at least 1.")
        price = _money_input(raw.get("price_at_booking"), f"Menu item {idx}: price must be a number.")
        if price < 0:
            raise ValueError(f"Menu item {idx}: price cannot be negative.")
        b.items.append(
            TableBookingItem(
                custom_item_name=name,
                item_type=item_type,
                quantity=quantity,
                price_at_booking=price,
                guest_name=(raw.get("guest_name") or "").strip() or None,
                special_requests=(raw.get("special_requests") or "").strip() or None,
            )
        )


def create_booking(
    s: Session,
    *,
    customer: Customer,
    booking_date: date,
    booking_time: time,
    party_size: int,
    booking_type: str = "regular",
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    special_requirements: str | None = None,
    dietary_requirements: str | None = None,
    allergies: str | None = None,
    celebration_type: str | None = None,
    source: str = "phone",
    items: list[dict[str, Any]] | None = None,
    user: User | None,
    now: datetime,
) -> TableBooking:
    """
    Regular bookings are confirmed immediately. Sunday lunch bookings carry
    menu selections and wait in pending_payment until the deposit is taken.
    Booking and items are inserted together; a bad item discards the booking.
    """
    if booking_type not in BOOKING_TYPES:
        raise ValueError(f"Unknown booking type: {booking_type}")
    if source not in BOOKING_SOURCES:
        raise ValueError(f"Unknown booking source: {source}")
    if duration_minutes < 15 or duration_minutes > 480:
        raise ValueError("Duration must be between 15 and 480 minutes.")

    policy = get_policy(s, booking_type)
    errors = policy_violations(
        policy,
        booking_type=booking_type,
        booking_date=booking_date,
        booking_time=booking_time,
        party_size=party_size,
        now=now,
    )
    if errors:
        raise ValueError("; ".join(errors))
    if booking_type == "sunday_lunch" and not items:
        raise ValueError("Sunday lunch bookings need at least one menu selection.")

    availability = check_availability(
        s,
        booking_date=booking_date,
        booking_time=booking_time,
        party_size=party_size,
        duration_minutes=duration_minutes,
    )
    if not availability.is_available:
        raise ValueError(
            f"No availability for {party_size} at {booking_time.strftime('%H:%M')} "
            f"({availability.available_capacity} covers left)."
        )

    status = "pending_payment" if booking_type == "sunday_lunch" else "confirmed"
    with s.begin_nested():
        b = TableBooking(
            booking_reference=generate_booking_reference(s, now=now),
            customer_id=customer.id,
            booking_date=booking_date,
            booking_time=booking_time,
            party_size=party_size,
            booking_type=booking_type,
            status=status,
            duration_minutes=duration_minutes,
            special_requirements=(special_requirements or "").strip() or None,
            dietary_requirements=(dietary_requirements or "").strip() or None,
            allergies=(allergies or "").strip() or None,
            celebration_type=(celebration_type or "").strip() or None,
            source=source,
            confirmed_at=now if status == "confirmed" else None,
            created_by_user_id=user.id if user else None,
        )
        s.add(b)
        s.flush()
        _add_items(b, items or [])
        s.flush()

    record_event(
        s,
        actor=user,
        action="table_booking.create",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={
            "reference": b.booking_reference,
            "booking_type": booking_type,
            "party_size": party_size,
            "status": status,
        },
    )
    if status == "confirmed":
        _queue_confirmation(s, b, user=user)
    return b


def _queue_confirmation(s: Session, b: TableBooking, *, user: User | None) -> None:
    queue_templated_sms(
        s,
        "table_booking.confirmed",
        customer=b.customer or s.get(Customer, b.customer_id),
        context={
            "party_size": b.party_size,
            "booking_date": b.booking_date.strftime("%a %d %b"),
            "booking_time": b.booking_time.strftime("%H:%M"),
            "reference": b.booking_reference,
        },
        dedupe_context={"booking": b.booking_reference},
        related_entity_type="TableBooking",
        related_entity_id=str(b.id),
        user=user,
    )


def record_payment(
    s: Session,
    b: TableBooking,
    *,
    amount: Decimal,
    payment_method: str = "card",
    transaction_id: str | None = None,
    user: User | None,
    now: datetime,
) -> TableBookingPayment:
    """Record a completed deposit; a pending_payment booking becomes confirmed."""
    amount = money(amount)
    if amount <= 0:
        raise ValueError("Payment amount must be greater than zero.")
    if b.status not in ACTIVE_STATUSES:
        raise ValueError(f"Cannot take payment for a {b.status} booking.")
    p = TableBookingPayment(
        booking_id=b.id,
        amount=amount,
        payment_method=(payment_method or "card").strip(),
        status="completed",
        transaction_id=(transaction_id or "").strip() or None,
        paid_at=now,
        created_at=now,
    )
    b.payments.append(p)
    confirmed = False
    if b.status == "pending_payment":
        b.status = "confirmed"
        b.confirmed_at = now
        confirmed = True
    b.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="table_booking.payment",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={"amount": str(amount), "method": p.payment_method, "confirmed": confirmed},
    )
    if confirmed:
        _queue_confirmation(s, b, user=user)
    return p


def update_booking(
    s: Session,
    b: TableBooking,
    *,
    booking_date: date,
    booking_time: time,
    party_size: int,
    duration_minutes: int | None = None,
    special_requirements: str | None = None,
    dietary_requirements: str | None = None,
    allergies: str | None = None,
    user: User,
    now: datetime,
) -> TableBooking:
    if b.status not in ACTIVE_STATUSES:
        raise ValueError(f"Cannot modify a {b.status} booking.")
    policy = get_policy(s, b.booking_type)
    if policy.modification_allowed is False:
        raise ValueError("This booking type cannot be modified. Cancel and rebook instead.")

    duration = duration_minutes or b.duration_minutes or DEFAULT_DURATION_MINUTES
    slot_changed = (booking_date, booking_time, party_size, duration) != (
        b.booking_date,
        b.booking_time,
        b.party_size,
        b.duration_minutes,
    )
    if slot_changed:
        errors = policy_violations(
            policy,
            booking_type=b.booking_type,
            booking_date=booking_date,
            booking_time=booking_time,
            party_size=party_size,
            now=now,
        )
        if errors:
            raise ValueError("; ".join(errors))
        availability = check_availability(
            s,
            booking_date=booking_date,
            booking_time=booking_time,
            party_size=party_size,
            duration_minutes=duration,
            exclude_booking_id=b.id,
        )
        if not availability.is_available:
            raise ValueError(f"No availability for {party_size} at {booking_time.strftime('%H:%M')}.")

    old = _snapshot(b)
    b.booking_date = booking_date
    b.booking_time = booking_time
    b.party_size = party_size
    b.duration_minutes = duration
    b.special_requirements = (special_requirements or "").strip() or None
    b.dietary_requirements = (dietary_requirements or "").strip() or None
    b.allergies = (allergies or "").strip() or None
    b.updated_at = datetime.utcnow()
    new = _snapshot(b)
    _log_modification(s, b, modification_type="details", old=old, new=new, user=user)
    record_event(
        s,
        actor=user,
        action="table_booking.update",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={"reference": b.booking_reference, "before": old, "after": new},
    )
    return b


def assign_tables(s: Session, b: TableBooking, table_ids: list[int], *, user: User) -> TableBooking:
    if b.status not in ACTIVE_STATUSES:
        raise ValueError(f"Cannot assign tables to a {b.status} booking.")
    tables = s.query(VenueTable).filter(VenueTable.id.in_(table_ids)).all() if table_ids else []
    if len(tables) != len(set(table_ids)):
        raise ValueError("One or more tables no longer exist.")
    inactive = [t.table_number for t in tables if not t.is_active]
    if inactive:
        raise ValueError(f"Inactive tables cannot be assigned: {', '.join(inactive)}")
    if tables and sum(t.capacity for t in tables) < b.party_size:
        raise ValueError(f"Selected tables seat {sum(t.capacity for t in tables)}; party size is {b.party_size}.")

    old = _snapshot(b)
    b.tables = tables
    b.updated_at = datetime.utcnow()
    _log_modification(s, b, modification_type="tables", old=old, new=_snapshot(b), user=user)
    record_event(
        s,
        actor=user,
        action="table_booking.assign_tables",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={"tables": [t.table_number for t in tables]},
    )
    return b


def latest_completed_payment(b: TableBooking) -> TableBookingPayment | None:
    completed = [p for p in b.payments if p.status == "completed"]
    if not completed:
        return None
    return max(completed, key=lambda p: (p.created_at, p.id or 0))


def calculate_booking_refund(s: Session, b: TableBooking, *, now: datetime) -> RefundDecision:
    payment = latest_completed_payment(b)
    return calculate_refund(
        get_policy(s, b.booking_type),
        starts_at=b.starts_at,
        paid_amount=payment.amount if payment else None,
        now=now,
    )


def refund_message(decision: RefundDecision) -> str:
    if decision.refund_amount > 0:
        return f"A refund of £{decision.refund_amount:.2f} will be processed within 3-5 business days."
    return "No payment was taken for this booking." if decision.reason == "No payment found" else decision.reason + "."


def cancel_booking(
    s: Session,
    b: TableBooking,
    *,
    reason: str | None,
    user: User | None,
    now: datetime,
) -> RefundDecision:
    """Cancel, work out the refund from policy, and text the customer."""
    if b.status == "cancelled":
        raise ValueError("Booking is already cancelled")
    if "cancelled" not in STATUS_TRANSITIONS.get(b.status, set()):
        raise ValueError(f"Cannot cancel a {b.status} booking.")

    decision = calculate_booking_refund(s, b, now=now)
    payment = latest_completed_payment(b)
    if payment is not None and decision.refund_amount > 0:
        payment.refund_amount = decision.refund_amount
        payment.refund_reason = decision.reason[:255]
        payment.status = "refunded" if decision.refund_percentage == 100 else "partial_refund"
        payment.refunded_at = now

    old_status = b.status
    b.status = "cancelled"
    b.cancelled_at = now
    b.cancellation_reason = (reason or "").strip() or None
    b.updated_at = datetime.utcnow()
    _log_modification(
        s,
        b,
        modification_type="status",
        old={"status": old_status},
        new={"status": "cancelled"},
        user=user,
    )
    record_event(
        s,
        actor=user,
        action="table_booking.cancel",
        entity_type="TableBooking",
        entity_id=str(b.id),
        reason=b.cancellation_reason,
        metadata={
            "reference": b.booking_reference,
            "refund_percentage": decision.refund_percentage,
            "refund_amount": str(decision.refund_amount),
            "refund_reason": decision.reason,
        },
    )
    queue_templated_sms(
        s,
        "table_booking.cancelled",
        customer=b.customer or s.get(Customer, b.customer_id),
        context={
            "reference": b.booking_reference,
            "booking_date": b.booking_date.strftime("%a %d %b"),
            "refund_message": refund_message(decision),
        },
        dedupe_context={"booking": b.booking_reference, "event": "cancelled"},
        related_entity_type="TableBooking",
        related_entity_id=str(b.id),
        user=user,
    )
    return decision


def _transition(s: Session, b: TableBooking, new_status: str, *, user: User, now: datetime) -> TableBooking:
    if new_status not in STATUS_TRANSITIONS.get(b.status, set()):
        raise ValueError(f"Cannot transition from '{b.status}' to '{new_status}'")
    old_status = b.status
    b.status = new_status
    if new_status == "no_show":
        b.no_show_at = now
    elif new_status == "completed":
        b.completed_at = now
    b.updated_at = datetime.utcnow()
    _log_modification(s, b, modification_type="status", old={"status": old_status}, new={"status": new_status}, user=user)
    record_event(
        s,
        actor=user,
        action=f"table_booking.{new_status}",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={"reference": b.booking_reference, "from": old_status, "to": new_status},
    )
    return b


def mark_no_show(s: Session, b: TableBooking, *, user: User, now: datetime) -> TableBooking:
    if now < b.starts_at:
        raise ValueError("A booking cannot be marked as a no-show before its start time.")
    return _transition(s, b, "no_show", user=user, now=now)


def mark_completed(s: Session, b: TableBooking, *, user: User, now: datetime) -> TableBooking:
    return _transition(s, b, "completed", user=user, now=now)


def delete_booking(s: Session, b: TableBooking, *, user: User) -> None:
    if b.status not in ("cancelled", "pending_payment"):
        raise ValueError("Only cancelled or unpaid bookings can be deleted.")
    if any(p.status == "completed" for p in b.payments):
        raise ValueError("Bookings with completed payments cannot be deleted.")
    record_event(
        s,
        actor=user,
        action="table_booking.delete",
        entity_type="TableBooking",
        entity_id=str(b.id),
        metadata={"reference": b.booking_reference, "status": b.status},
    )
    s.delete(b)
