"""
Recurring invoice schedules.

Monthly, quarterly and yearly schedules keep the start date's day of month
and clamp to the last day of shorter months (31 Jan → 28/29 Feb → 31 Mar).
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User

from .calculations import parse_lines, parse_percentage
from .models import Invoice, RecurringInvoice, RecurringInvoiceLineItem
from .service import _as_date, _as_int, build_line_rows, create_invoice, require_vendor

logger = logging.getLogger(__name__)

FREQUENCIES = ("weekly", "monthly", "quarterly", "yearly")
_MONTH_STEPS = {"monthly": 1, "quarterly": 3, "yearly": 12}
MAX_SCHEDULE_LENGTH = 520


@dataclass
class GenerationResult:
    generated: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


def add_months(d: date, months: int, *, anchor_day: int | None = None) -> date:
    total = d.year * 12 + (d.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(anchor_day or d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_next_invoice_date(current: date, frequency: str, *, anchor_day: int | None = None) -> date:
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency in _MONTH_STEPS:
        return add_months(current, _MONTH_STEPS[frequency], anchor_day=anchor_day)
    raise ValueError(f"Unknown frequency: {frequency}")


def invoice_schedule(
    start: date,
    frequency: str,
    *,
    end: date | None = None,
    count: int | None = None,
) -> list[date]:
    """Invoice dates from `start`, stopping after `end` or `count` dates, whichever comes first."""
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency: {frequency}")
    if end is None and count is None:
        raise ValueError("Either an end date or a count is required.")
    limit = min(count if count is not None else MAX_SCHEDULE_LENGTH, MAX_SCHEDULE_LENGTH)
    dates: list[date] = []
    for n in range(limit):
        if frequency == "weekly":
            d = start + timedelta(days=7 * n)
        else:
            d = add_months(start, _MONTH_STEPS[frequency] * n, anchor_day=start.day)
        if end is not None and d > end:
            break
        dates.append(d)
    return dates


def _clean(payload: dict[str, Any], *, today: date) -> dict[str, Any]:
    frequency = (payload.get("frequency") or "").strip()
    if frequency not in FREQUENCIES:
        raise ValueError(f"Frequency must be one of: {', '.join(FREQUENCIES)}")
    start = _as_date(payload.get("start_date")) or today
    end = _as_date(payload.get("end_date"))
    if end is not None and end < start:
        raise ValueError("End date cannot be before the start date.")
    days_before_due = _as_int(payload.get("days_before_due"))
    days_before_due = 30 if days_before_due is None else days_before_due
    if days_before_due < 0 or days_before_due > 365:
        raise ValueError("Days before due must be between 0 and 365.")
    return {
        "frequency": frequency,
        "start_date": start,
        "end_date": end,
        "days_before_due": days_before_due,
        "reference": (payload.get("reference") or "").strip() or None,
        "invoice_discount_percentage": parse_percentage(payload.get("invoice_discount_percentage"), "Invoice discount"),
        "notes": (payload.get("notes") or "").strip() or None,
        "internal_notes": (payload.get("internal_notes") or "").strip() or None,
    }


def create_recurring_invoice(
    s: Session,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User,
    today: date,
) -> RecurringInvoice:
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")))
    data = _clean(payload, today=today)
    lines = parse_lines(line_rows)
    ri = RecurringInvoice(vendor_id=vendor.id, next_invoice_date=data["start_date"], is_active=True, **data)
    ri.line_items = build_line_rows(RecurringInvoiceLineItem, lines)
    s.add(ri)
    s.flush()
    record_event(
        s,
        actor=user,
        action="recurring_invoice.create",
        entity_type="RecurringInvoice",
        entity_id=str(ri.id),
        metadata={"vendor_id": vendor.id, "frequency": ri.frequency, "start_date": ri.start_date.isoformat()},
    )
    return ri


def update_recurring_invoice(
    s: Session,
    ri: RecurringInvoice,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User,
    today: date,
) -> RecurringInvoice:
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")) or ri.vendor_id)
    data = _clean(payload, today=today)
    lines = parse_lines(line_rows)
    schedule_changed = (data["frequency"], data["start_date"]) != (ri.frequency, ri.start_date)
    before = {"frequency": ri.frequency, "next_invoice_date": ri.next_invoice_date.isoformat()}

    ri.vendor_id = vendor.id
    for k, v in data.items():
        setattr(ri, k, v)
    if schedule_changed:
        # Restart from the first scheduled date on or after today.
        upcoming = [d for d in invoice_schedule(ri.start_date, ri.frequency, count=MAX_SCHEDULE_LENGTH) if d >= today]
        ri.next_invoice_date = upcoming[0] if upcoming else ri.start_date
    ri.line_items = build_line_rows(RecurringInvoiceLineItem, lines)
    ri.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="recurring_invoice.update",
        entity_type="RecurringInvoice",
        entity_id=str(ri.id),
        metadata={"before": before, "after": {"frequency": ri.frequency, "next_invoice_date": ri.next_invoice_date.isoformat()}},
    )
    return ri


def toggle_recurring_invoice(s: Session, ri: RecurringInvoice, *, user: User) -> RecurringInvoice:
    ri.is_active = not ri.is_active
    ri.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="recurring_invoice.activate" if ri.is_active else "recurring_invoice.deactivate",
        entity_type="RecurringInvoice",
        entity_id=str(ri.id),
    )
    return ri


def delete_recurring_invoice(s: Session, ri: RecurringInvoice, *, user: User) -> bool:
    """Deactivates instead when invoices were already generated. Returns True when deleted."""
    has_invoices = s.query(Invoice.id).filter(Invoice.recurring_invoice_id == ri.id).first() is not None
    if has_invoices:
        ri.is_active = False
        ri.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="recurring_invoice.deactivate", entity_type="RecurringInvoice", entity_id=str(ri.id), reason="has generated invoices")
        return False
    record_event(s, actor=user, action="recurring_invoice.delete", entity_type="RecurringInvoice", entity_id=str(ri.id))
    s.delete(ri)
    return True


def generate_invoice_from_recurring(s: Session, ri: RecurringInvoice, *, user: User | None, today: date) -> Invoice:
    if not ri.is_active:
        raise ValueError("Recurring invoice is not active")
    if ri.end_date is not None and ri.next_invoice_date > ri.end_date:
        raise ValueError("Recurring invoice has passed its end date")
    if not ri.line_items:
        raise ValueError("Recurring invoice has no line items")

    invoice_date = ri.next_invoice_date
    inv = create_invoice(
        s,
        {
            "vendor_id": ri.vendor_id,
            "invoice_date": invoice_date,
            "due_date": invoice_date + timedelta(days=ri.days_before_due),
            "reference": ri.reference,
            "invoice_discount_percentage": ri.invoice_discount_percentage,
            "notes": ri.notes,
            "internal_notes": ri.internal_notes,
        },
        [
            {
                "description": li.description,
                "quantity": li.quantity,
                "unit_price": li.unit_price,
                "discount_percentage": li.discount_percentage,
                "vat_rate": li.vat_rate,
                "catalog_item_id": li.catalog_item_id,
            }
            for li in ri.line_items
        ],
        user=user,
        today=today,
        recurring_invoice_id=ri.id,
    )
    ri.next_invoice_date = calculate_next_invoice_date(invoice_date, ri.frequency, anchor_day=ri.start_date.day)
    ri.last_invoice_id = inv.id
    ri.updated_at = datetime.utcnow()
    if ri.end_date is not None and ri.next_invoice_date > ri.end_date:
        ri.is_active = False
    s.flush()
    record_event(
        s,
        actor=user,
        action="recurring_invoice.generate",
        entity_type="RecurringInvoice",
        entity_id=str(ri.id),
        metadata={"invoice_id": inv.id, "invoice_number": inv.invoice_number, "next_invoice_date": ri.next_invoice_date.isoformat()},
    )
    return inv


def generate_due_recurring_invoices(s: Session, *, today: date, user: User | None = None) -> GenerationResult:
    """
    One invoice per due schedule per run; a schedule that fell behind catches
    up a period at a time on later runs. Each schedule runs in its own
    SAVEPOINT so one failure doesn't block the rest.
    """
    result = GenerationResult()
    due = (
        s.query(RecurringInvoice)
        .filter(RecurringInvoice.is_active.is_(True), RecurringInvoice.next_invoice_date <= today)
        .order_by(RecurringInvoice.next_invoice_date.asc(), RecurringInvoice.id.asc())
        .all()
    )
    for ri in due:
        if ri.end_date is not None and ri.next_invoice_date > ri.end_date:
            ri.is_active = False
            continue
        try:
            with s.begin_nested():
                inv = generate_invoice_from_recurring(s, ri, user=user, today=today)
            result.generated.append(inv.id)
        except ValueError as e:
            logger.warning("Recurring invoice %s not generated: %s", ri.id, e)
            result.failed[ri.id] = str(e)
        except SQLAlchemyError as e:
            logger.exception("Recurring invoice %s failed with a database error", ri.id)
            result.failed[ri.id] = f"Database error: {e.__class__.__name__}"
    return result
