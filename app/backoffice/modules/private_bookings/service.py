"""
Private booking service layer.

A private booking starts as a draft enquiry holding the date until
`hold_expiry`. Recording the deposit confirms it; an unpaid hold lapses
and the booking is cancelled by `expire_overdue_holds`.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, BinaryIO

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.customers.service import ensure_customer_for_phone
from app.backoffice.modules.customers.utils import normalize_phone
from app.backoffice.modules.messaging.service import queue_templated_sms
from app.backoffice.storage import Storage, StorageError
from app.backoffice.utils import money, parse_date, parse_decimal, parse_int, parse_time

from .models import PrivateBooking, PrivateBookingDocument, PrivateBookingItem

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    "draft": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
VALID_STATUSES = set(STATUS_TRANSITIONS)

ITEM_TYPES = ("space", "catering", "vendor", "other")
DISCOUNT_TYPES = ("percent", "fixed")
DOCUMENT_TYPES = ("contract", "floor_plan", "menu", "other")

STANDARD_HOLD_DAYS = 14
SHORT_NOTICE_HOLD_DAYS = 2
DEPOSIT_CUTOFF_DAYS = 7
HOLD_EXTENSION_DAYS = (7, 14, 30)
DEFAULT_DEPOSIT = Decimal("250.00")
HOLD_EXPIRED_REASON = f"Hold period expired ({STANDARD_HOLD_DAYS} days)"


@dataclass(frozen=True)
class BookingTotals:
    items_subtotal: Decimal
    discount: Decimal
    total: Decimal
    deposit_paid: Decimal
    balance_outstanding: Decimal


def can_transition_to(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


# ─────────────────────────────────────────────────────────────────────────────
# Holds
# ─────────────────────────────────────────────────────────────────────────────


def _event_start(event_date: date) -> datetime:
    return datetime.combine(event_date, time.min)


def calculate_hold_expiry(now: datetime, event_date: date, requested: datetime | None = None) -> datetime:
    """
    Deposit deadline for a draft booking.

    Normally 14 days from now, never later than 7 days before the event.
    Enquiries made inside that 7 day window get 2 days, capped at the event.
    A requested expiry is clamped by the same caps.
    """
    event_start = _event_start(event_date)
    cutoff = event_start - timedelta(days=DEPOSIT_CUTOFF_DAYS)
    short_notice = now > cutoff
    cap = event_start if short_notice else cutoff

    if requested is not None:
        return min(requested, cap)
    if short_notice:
        return min(now + timedelta(days=SHORT_NOTICE_HOLD_DAYS), cap)
    return min(now + timedelta(days=STANDARD_HOLD_DAYS), cap)


def default_balance_due_date(event_date: date) -> date:
    return event_date - timedelta(days=DEPOSIT_CUTOFF_DAYS)


# ─────────────────────────────────────────────────────────────────────────────
# Totals
# ─────────────────────────────────────────────────────────────────────────────


def calculate_item_total(
    quantity: Decimal,
    unit_price: Decimal,
    discount_type: str | None = None,
    discount_value: Decimal | None = None,
) -> Decimal:
    subtotal = Decimal(quantity) * Decimal(unit_price)
    value = Decimal(discount_value or 0)
    if discount_type == "percent":
        subtotal -= subtotal * value / 100
    elif discount_type == "fixed":
        subtotal -= value
    return money(max(subtotal, Decimal("0")))


def item_total(item: PrivateBookingItem) -> Decimal:
    return calculate_item_total(item.quantity, item.unit_price, item.discount_type, item.discount_value)


def booking_totals(b: PrivateBooking) -> BookingTotals:
    """The deposit is a refundable security deposit and is not netted off the balance."""
    subtotal = sum((item_total(i) for i in b.items), Decimal("0"))
    discount = Decimal("0")
    if b.discount_type == "percent":
        discount = subtotal * Decimal(b.discount_amount or 0) / 100
    elif b.discount_type == "fixed":
        discount = Decimal(b.discount_amount or 0)
    discount = money(min(discount, subtotal))
    total = money(subtotal - discount)
    deposit_paid = money(b.deposit_amount) if b.deposit_paid_date else money(0)
    outstanding = money(0) if b.final_payment_date else total
    return BookingTotals(
        items_subtotal=money(subtotal),
        discount=discount,
        total=total,
        deposit_paid=deposit_paid,
        balance_outstanding=outstanding,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Bookings
# ─────────────────────────────────────────────────────────────────────────────


def _snapshot(b: PrivateBooking) -> dict[str, Any]:
    return {
        "status": b.status,
        "event_date": b.event_date.isoformat() if b.event_date else None,
        "start_time": b.start_time.strftime("%H:%M") if b.start_time else None,
        "end_time": b.end_time.strftime("%H:%M") if b.end_time else None,
        "guest_count": b.guest_count,
        "event_type": b.event_type,
        "deposit_amount": str(b.deposit_amount),
        "balance_due_date": b.balance_due_date.isoformat() if b.balance_due_date else None,
        "hold_expiry": b.hold_expiry.isoformat() if b.hold_expiry else None,
    }


def _clean_payload(payload: dict[str, Any]) -> dict[str, Any]:
    first_name = (payload.get("customer_first_name") or "").strip()
    if not first_name:
        raise ValueError("Customer first name is required.")
    event_date = payload.get("event_date")
    if isinstance(event_date, str):
        event_date = parse_date(event_date)
    if not event_date:
        raise ValueError("Event date is required (YYYY-MM-DD).")
    start_time = payload.get("start_time")
    if isinstance(start_time, str):
        start_time = parse_time(start_time)
    if not start_time:
        raise ValueError("Start time is required (HH:MM).")
    end_time = payload.get("end_time")
    if isinstance(end_time, str):
        end_time = parse_time(end_time)

    guest_count = payload.get("guest_count")
    if isinstance(guest_count, str):
        guest_count = parse_int(guest_count)
    if guest_count is not None and guest_count < 1:
        raise ValueError("Guest count must be at least 1.")

    deposit = payload.get("deposit_amount")
    if isinstance(deposit, str):
        deposit = parse_decimal(deposit)
    deposit = money(DEFAULT_DEPOSIT if deposit is None else deposit)
    if deposit < 0:
        raise ValueError("Deposit amount cannot be negative.")

    balance_due = payload.get("balance_due_date")
    if isinstance(balance_due, str):
        balance_due = parse_date(balance_due)

    hold_expiry = payload.get("hold_expiry")
    if isinstance(hold_expiry, str):
        d = parse_date(hold_expiry)
        hold_expiry = datetime.combine(d, time(23, 59)) if d else None

    email = (payload.get("contact_email") or "").strip().lower() or None
    if email and "@" not in email:
        raise ValueError("Contact email is invalid.")

    return {
        "customer_first_name": first_name,
        "customer_last_name": (payload.get("customer_last_name") or "").strip() or None,
        "contact_phone": (payload.get("contact_phone") or "").strip() or None,
        "contact_email": email,
        "event_date": event_date,
        "start_time": start_time,
        "end_time": end_time,
        "guest_count": guest_count,
        "event_type": (payload.get("event_type") or "").strip() or None,
        "deposit_amount": deposit,
        "balance_due_date": balance_due,
        "hold_expiry": hold_expiry,
        "customer_requests": (payload.get("customer_requests") or "").strip() or None,
        "internal_notes": (payload.get("internal_notes") or "").strip() or None,
    }


def _sms_context(b: PrivateBooking) -> dict[str, Any]:
    return {
        "event_date": b.event_date.strftime("%A %d %B %Y"),
        "hold_expiry": b.hold_expiry.strftime("%d %B %Y") if b.hold_expiry else "",
        "deposit_amount": f"{Decimal(b.deposit_amount):.2f}",
        "balance_due_date": b.balance_due_date.strftime("%d %B %Y") if b.balance_due_date else "",
    }


def _notify(s: Session, b: PrivateBooking, template_key: str, *, user: User | None, event: str) -> None:
    if b.customer is None:
        return
    queue_templated_sms(
        s,
        template_key,
        customer=b.customer,
        context=_sms_context(b),
        dedupe_context={"private_booking": b.id, "event": event},
        related_entity_type="PrivateBooking",
        related_entity_id=str(b.id),
        user=user,
    )


def create_booking(s: Session, payload: dict[str, Any], *, user: User | None, now: datetime) -> PrivateBooking:
    data = _clean_payload(payload)
    if data["event_date"] < now.date():
        raise ValueError("Event date cannot be in the past.")
    if not data["contact_phone"]:
        raise ValueError("A contact phone number is required.")
    if not normalize_phone(data["contact_phone"]):
        raise ValueError("Contact phone number is invalid.")

    customer = ensure_customer_for_phone(
        s,
        data["contact_phone"],
        first_name=data["customer_first_name"],
        last_name=data["customer_last_name"],
        email=data["contact_email"],
    )
    b = PrivateBooking(
        customer_id=customer.id,
        status="draft",
        created_by_user_id=user.id if user else None,
        **{k: v for k, v in data.items() if k not in ("hold_expiry", "balance_due_date", "contact_phone")},
    )
    b.contact_phone = customer.mobile_number
    b.balance_due_date = data["balance_due_date"] or default_balance_due_date(data["event_date"])
    b.hold_expiry = calculate_hold_expiry(now, data["event_date"], data["hold_expiry"])
    b.customer = customer
    s.add(b)
    s.flush()

    record_event(
        s,
        actor=user,
        action="private_booking.create",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata=_snapshot(b),
    )
    _notify(s, b, "private_booking.enquiry", user=user, event="enquiry")
    return b


def update_booking(
    s: Session,
    b: PrivateBooking,
    payload: dict[str, Any],
    *,
    user: User,
    now: datetime,
) -> PrivateBooking:
    """A draft moved to a new date gets a fresh hold and balance due date."""
    if b.status in ("completed", "cancelled"):
        raise ValueError(f"Cannot edit a {b.status} booking.")
    data = _clean_payload(payload)
    before = _snapshot(b)
    date_changed = data["event_date"] != b.event_date
    if date_changed and data["event_date"] < now.date():
        raise ValueError("Event date cannot be in the past.")

    for key in (
        "customer_first_name",
        "customer_last_name",
        "contact_email",
        "event_date",
        "start_time",
        "end_time",
        "guest_count",
        "event_type",
        "deposit_amount",
        "customer_requests",
        "internal_notes",
    ):
        setattr(b, key, data[key])
    if data["contact_phone"]:
        phone = normalize_phone(data["contact_phone"])
        if not phone:
            raise ValueError("Contact phone number is invalid.")
        b.contact_phone = phone

    if data["balance_due_date"]:
        b.balance_due_date = data["balance_due_date"]
    elif date_changed:
        b.balance_due_date = default_balance_due_date(b.event_date)
    if b.status == "draft" and (date_changed or data["hold_expiry"]):
        b.hold_expiry = calculate_hold_expiry(now, b.event_date, data["hold_expiry"])

    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.update",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"before": before, "after": _snapshot(b)},
    )
    return b


def extend_hold(s: Session, b: PrivateBooking, *, days: int, user: User, now: datetime) -> PrivateBooking:
    if b.status != "draft":
        raise ValueError("Only draft bookings can have their hold extended")
    if days not in HOLD_EXTENSION_DAYS:
        raise ValueError(f"Hold can be extended by {', '.join(str(d) for d in HOLD_EXTENSION_DAYS)} days only.")

    base = b.hold_expiry if b.hold_expiry and b.hold_expiry > now else now
    new_expiry = min(base + timedelta(days=days), _event_start(b.event_date) - timedelta(days=DEPOSIT_CUTOFF_DAYS))
    if new_expiry <= base:
        raise ValueError("Hold cannot be extended past 7 days before the event.")

    old = b.hold_expiry
    b.hold_expiry = new_expiry
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.extend_hold",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"days": days, "from": old.isoformat() if old else None, "to": new_expiry.isoformat()},
    )
    _notify(s, b, "private_booking.hold_extended", user=user, event=f"hold_extended:{new_expiry.isoformat()}")
    return b


def expire_booking(s: Session, b: PrivateBooking, *, user: User | None, now: datetime) -> PrivateBooking:
    if b.status != "draft":
        raise ValueError("Only draft bookings can be expired")
    b.status = "cancelled"
    b.cancelled_at = now
    b.cancellation_reason = HOLD_EXPIRED_REASON
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.expire",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        reason=HOLD_EXPIRED_REASON,
        metadata={"hold_expiry": b.hold_expiry.isoformat() if b.hold_expiry else None},
    )
    _notify(s, b, "private_booking.hold_expired", user=user, event="hold_expired")
    return b


def expire_overdue_holds(s: Session, *, now: datetime, user: User | None = None) -> list[int]:
    overdue = (
        s.query(PrivateBooking)
        .filter(
            PrivateBooking.status == "draft",
            PrivateBooking.hold_expiry.is_not(None),
            PrivateBooking.hold_expiry < now,
        )
        .order_by(PrivateBooking.hold_expiry.asc())
        .all()
    )
    expired = []
    for b in overdue:
        expire_booking(s, b, user=user, now=now)
        expired.append(b.id)
    if expired:
        logger.info("Expired %s private booking holds", len(expired))
    return expired


def record_deposit(
    s: Session,
    b: PrivateBooking,
    *,
    amount: Decimal,
    method: str,
    user: User,
    now: datetime,
) -> PrivateBooking:
    if b.status not in ("draft", "confirmed"):
        raise ValueError(f"Cannot record a deposit on a {b.status} booking.")
    if b.deposit_paid_date:
        raise ValueError("Deposit has already been recorded.")
    amount = money(amount)
    if amount <= 0:
        raise ValueError("Deposit amount must be greater than zero.")
    method = (method or "").strip()
    if not method:
        raise ValueError("Payment method is required.")

    b.deposit_amount = amount
    b.deposit_paid_date = now
    b.deposit_payment_method = method
    old_status = b.status
    b.status = "confirmed"
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.deposit",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"amount": str(amount), "method": method, "from": old_status, "to": b.status},
    )
    _notify(s, b, "private_booking.deposit_received", user=user, event="deposit")
    return b


def record_final_payment(s: Session, b: PrivateBooking, *, method: str, user: User, now: datetime) -> PrivateBooking:
    if b.status != "confirmed":
        raise ValueError("Final payment can only be recorded on a confirmed booking.")
    if b.final_payment_date:
        raise ValueError("Final payment has already been recorded.")
    method = (method or "").strip()
    if not method:
        raise ValueError("Payment method is required.")
    totals = booking_totals(b)
    b.final_payment_date = now
    b.final_payment_method = method
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.final_payment",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"amount": str(totals.total), "method": method},
    )
    return b


def cancel_booking(s: Session, b: PrivateBooking, *, reason: str | None, user: User, now: datetime) -> PrivateBooking:
    if not can_transition_to(b.status, "cancelled"):
        raise ValueError("Booking cannot be cancelled")
    old_status = b.status
    b.status = "cancelled"
    b.cancelled_at = now
    b.cancellation_reason = (reason or "").strip() or "Cancelled by staff"
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.cancel",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        reason=b.cancellation_reason,
        metadata={"from": old_status},
    )
    return b


def complete_booking(s: Session, b: PrivateBooking, *, user: User, now: datetime) -> PrivateBooking:
    if not can_transition_to(b.status, "completed"):
        raise ValueError(f"Cannot transition from '{b.status}' to 'completed'")
    if b.event_date > now.date():
        raise ValueError("A booking cannot be completed before the event date.")
    b.status = "completed"
    b.completed_at = now
    b.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="private_booking.complete", entity_type="PrivateBooking", entity_id=str(b.id))
    return b


def apply_booking_discount(
    s: Session,
    b: PrivateBooking,
    *,
    discount_type: str | None,
    amount: Decimal | None,
    reason: str | None,
    user: User,
) -> PrivateBooking:
    if b.status in ("completed", "cancelled"):
        raise ValueError(f"Cannot discount a {b.status} booking.")
    if discount_type and discount_type not in DISCOUNT_TYPES:
        raise ValueError(f"Invalid discount type: {discount_type}")
    amount = money(amount or 0)
    if amount < 0:
        raise ValueError("Discount cannot be negative.")
    if discount_type == "percent" and amount > 100:
        raise ValueError("Percentage discount cannot exceed 100.")
    if discount_type and amount > 0 and not (reason or "").strip():
        raise ValueError("A reason is required for discounts.")
    b.discount_type = discount_type or None
    b.discount_amount = amount if discount_type else Decimal("0")
    b.discount_reason = (reason or "").strip() or None
    b.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="private_booking.discount",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        reason=b.discount_reason,
        metadata={"discount_type": b.discount_type, "amount": str(b.discount_amount)},
    )
    return b


def delete_booking(s: Session, b: PrivateBooking, *, user: User, storage: Storage | None = None) -> None:
    if b.status not in ("draft", "cancelled"):
        raise ValueError("Only draft or cancelled bookings can be deleted.")
    keys = [d.storage_key for d in b.documents]
    record_event(
        s,
        actor=user,
        action="private_booking.delete",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"event_date": b.event_date.isoformat(), "customer": b.customer_name},
    )
    s.delete(b)
    s.flush()
    if storage is not None:
        for key in keys:
            try:
                storage.delete(key)
            except StorageError as e:
                logger.warning("Orphaned document %s after deleting booking %s: %s", key, b.id, e)


# ─────────────────────────────────────────────────────────────────────────────
# Items
# ─────────────────────────────────────────────────────────────────────────────


def _clean_item(payload: dict[str, Any]) -> dict[str, Any]:
    item_type = (payload.get("item_type") or "").strip()
    if item_type not in ITEM_TYPES:
        raise ValueError(f"Item type must be one of: {', '.join(ITEM_TYPES)}")
    description = (payload.get("description") or "").strip()
    if not description:
        raise ValueError("Item description is required.")
    quantity = payload.get("quantity")
    quantity = parse_decimal(quantity) if isinstance(quantity, str) else quantity
    quantity = Decimal("1") if quantity is None else Decimal(quantity)
    if quantity <= 0:
        raise ValueError("Quantity must be greater than zero.")
    unit_price = payload.get("unit_price")
    unit_price = parse_decimal(unit_price) if isinstance(unit_price, str) else unit_price
    if unit_price is None:
        raise ValueError("Unit price is required.")
    unit_price = money(unit_price)
    if unit_price < 0:
        raise ValueError("Unit price cannot be negative.")

    discount_type = (payload.get("discount_type") or "").strip() or None
    if discount_type and discount_type not in DISCOUNT_TYPES:
        raise ValueError(f"Invalid discount type: {discount_type}")
    discount_value = payload.get("discount_value")
    discount_value = parse_decimal(discount_value) if isinstance(discount_value, str) else discount_value
    discount_value = money(discount_value or 0)
    if discount_value < 0:
        raise ValueError("Discount cannot be negative.")
    if discount_type == "percent" and discount_value > 100:
        raise ValueError("Percentage discount cannot exceed 100.")
    return {
        "item_type": item_type,
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
        "discount_type": discount_type,
        "discount_value": discount_value if discount_type else Decimal("0"),
        "notes": (payload.get("notes") or "").strip() or None,
    }


def _ensure_items_editable(b: PrivateBooking) -> None:
    if b.status in ("completed", "cancelled"):
        raise ValueError(f"Items cannot be changed on a {b.status} booking.")


def add_item(s: Session, b: PrivateBooking, payload: dict[str, Any], *, user: User) -> PrivateBookingItem:
    _ensure_items_editable(b)
    data = _clean_item(payload)
    next_order = max((i.display_order for i in b.items), default=-1) + 1
    item = PrivateBookingItem(booking_id=b.id, display_order=next_order, **data)
    b.items.append(item)
    s.flush()
    record_event(
        s,
        actor=user,
        action="private_booking.item_add",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"item_id": item.id, "description": item.description, "line_total": str(item_total(item))},
    )
    return item


def update_item(s: Session, item: PrivateBookingItem, payload: dict[str, Any], *, user: User) -> PrivateBookingItem:
    _ensure_items_editable(item.booking)
    data = _clean_item(payload)
    before = {"description": item.description, "line_total": str(item_total(item))}
    for k, v in data.items():
        setattr(item, k, v)
    record_event(
        s,
        actor=user,
        action="private_booking.item_update",
        entity_type="PrivateBooking",
        entity_id=str(item.booking_id),
        metadata={"item_id": item.id, "before": before, "after": {"description": item.description, "line_total": str(item_total(item))}},
    )
    return item


def delete_item(s: Session, item: PrivateBookingItem, *, user: User) -> None:
    b = item.booking
    _ensure_items_editable(b)
    record_event(
        s,
        actor=user,
        action="private_booking.item_delete",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"item_id": item.id, "description": item.description},
    )
    b.items.remove(item)
    s.flush()


def reorder_items(s: Session, b: PrivateBooking, ordered_ids: list[int], *, user: User) -> None:
    """Every item id must be supplied once; a failed write restores the previous order."""
    if not ordered_ids:
        raise ValueError("No booking items supplied for reordering")
    _ensure_items_editable(b)
    by_id = {i.id: i for i in b.items}
    if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
        raise ValueError("Item list does not match this booking's items.")

    previous = {i.id: i.display_order for i in b.items}
    try:
        with s.begin_nested():
            for index, item_id in enumerate(ordered_ids):
                by_id[item_id].display_order = index
            s.flush()
    except SQLAlchemyError as e:
        logger.exception("Reordering items for private booking %s failed", b.id)
        for item_id, order in previous.items():
            by_id[item_id].display_order = order
        raise ValueError("Failed to update item order") from e

    record_event(
        s,
        actor=user,
        action="private_booking.item_reorder",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"order": ordered_ids},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────


def file_digest(data: bytes) -> tuple[str, int]:
    return hashlib.sha256(data).hexdigest(), len(data)


def upload_document(
    s: Session,
    b: PrivateBooking,
    *,
    filename: str,
    content_type: str | None,
    data: bytes,
    document_type: str,
    storage: Storage,
    user: User,
) -> PrivateBookingDocument:
    if document_type not in DOCUMENT_TYPES:
        raise ValueError(f"Document type must be one of: {', '.join(DOCUMENT_TYPES)}")
    if not data:
        raise ValueError("Uploaded file is empty.")
    safe_name = secure_filename(filename or "") or "document.bin"
    sha256, size_bytes = file_digest(data)
    storage_key = f"private-bookings/{b.id}/{sha256[:12]}-{safe_name}"
    if s.query(PrivateBookingDocument.id).filter(PrivateBookingDocument.storage_key == storage_key).first():
        raise ValueError("This file has already been uploaded to the booking.")

    storage.put_bytes(storage_key, data, content_type=content_type)
    doc = PrivateBookingDocument(
        booking_id=b.id,
        document_type=document_type,
        storage_key=storage_key,
        original_filename=safe_name,
        content_type=(content_type or "application/octet-stream").strip(),
        sha256=sha256,
        size_bytes=size_bytes,
        uploaded_by_user_id=user.id,
    )
    b.documents.append(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="private_booking.document_upload",
        entity_type="PrivateBooking",
        entity_id=str(b.id),
        metadata={"document_id": doc.id, "filename": safe_name, "sha256": sha256, "size_bytes": size_bytes},
    )
    return doc


def open_document(storage: Storage, doc: PrivateBookingDocument) -> BinaryIO:
    return storage.open(doc.storage_key)
