"""
Quotes and quote → invoice conversion.

Conversion creates the invoice and its lines inside a SAVEPOINT, then
finalises with a compare-and-swap on the quote (still accepted, still
unconverted). Any failure rolls the savepoint back so no orphan invoice is
left behind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.utils import money

from .calculations import calculate_invoice_totals, parse_lines, parse_percentage
from .models import Invoice, InvoiceLineItem, Quote, QuoteLineItem
from .numbering import next_document_number
from .service import INVOICE_SERIES, _as_date, _as_int, apply_totals, build_line_rows, compare_and_swap, require_vendor
from .status import effective_quote_status, is_quote_status_transition_allowed

logger = logging.getLogger(__name__)

QUOTE_SERIES = "QTE"
DEFAULT_VALIDITY_DAYS = 30
CONVERTED_INVOICE_TERMS_DAYS = 30


@dataclass(frozen=True)
class QuoteSummary:
    total_pending: Decimal
    total_accepted: Decimal
    total_expired: Decimal
    draft_count: int


def _live(q: Quote) -> None:
    if q.deleted_at is not None:
        raise ValueError("Quote not found")


def _header_fields(payload: dict[str, Any], *, default_quote_date: date) -> dict[str, Any]:
    quote_date = _as_date(payload.get("quote_date")) or default_quote_date
    valid_until = _as_date(payload.get("valid_until")) or quote_date + timedelta(days=DEFAULT_VALIDITY_DAYS)
    if valid_until < quote_date:
        raise ValueError("Valid-until date cannot be before the quote date.")
    return {
        "quote_date": quote_date,
        "valid_until": valid_until,
        "reference": (payload.get("reference") or "").strip() or None,
        "notes": (payload.get("notes") or "").strip() or None,
        "internal_notes": (payload.get("internal_notes") or "").strip() or None,
        "quote_discount_percentage": parse_percentage(payload.get("quote_discount_percentage"), "Quote discount"),
    }


def create_quote(
    s: Session,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User,
    today: date,
) -> Quote:
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")))
    lines = parse_lines(line_rows)
    header = _header_fields(payload, default_quote_date=today)
    totals = calculate_invoice_totals(lines, header["quote_discount_percentage"])

    q = Quote(quote_number=next_document_number(s, QUOTE_SERIES), vendor_id=vendor.id, status="draft", **header)
    apply_totals(q, totals)
    q.line_items = build_line_rows(QuoteLineItem, lines)
    s.add(q)
    s.flush()
    record_event(
        s,
        actor=user,
        action="quote.create",
        entity_type="Quote",
        entity_id=str(q.id),
        metadata={"quote_number": q.quote_number, "total": str(q.total_amount)},
    )
    return q


def update_quote(
    s: Session,
    q: Quote,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User,
) -> Quote:
    """
    Draft only. Header and line items are replaced together; if the line
    write fails the SAVEPOINT rollback restores the previous header values.
    """
    _live(q)
    if q.status != "draft":
        raise ValueError("Only draft quotes can be edited")
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")) or q.vendor_id)
    lines = parse_lines(line_rows)
    header = _header_fields(payload, default_quote_date=q.quote_date)
    totals = calculate_invoice_totals(lines, header["quote_discount_percentage"])
    before = {"total": str(q.total_amount), "lines": len(q.line_items)}

    try:
        with s.begin_nested():
            compare_and_swap(
                s,
                Quote,
                q.id,
                {"status": "draft", "deleted_at": None},
                {"updated_at": datetime.utcnow()},
                "Quote changed before this update could be applied",
            )
            q.vendor_id = vendor.id
            for k, v in header.items():
                setattr(q, k, v)
            apply_totals(q, totals)
            q.line_items = build_line_rows(QuoteLineItem, lines)
            s.flush()
    except SQLAlchemyError as e:
        logger.exception("Updating quote %s failed", q.id)
        raise ValueError("Failed to update line items") from e

    record_event(
        s,
        actor=user,
        action="quote.update",
        entity_type="Quote",
        entity_id=str(q.id),
        metadata={"before": before, "after": {"total": str(q.total_amount), "lines": len(lines)}},
    )
    return q


def change_quote_status(s: Session, q: Quote, new_status: str, *, user: User | None) -> Quote:
    _live(q)
    if q.status == new_status:
        return q
    if q.converted_to_invoice_id is not None:
        raise ValueError("Converted quotes cannot have their status changed")
    if not is_quote_status_transition_allowed(q.status, new_status):
        raise ValueError(f"Invalid quote status transition from {q.status} to {new_status}")
    old_status = q.status
    compare_and_swap(
        s,
        Quote,
        q.id,
        {"status": old_status, "deleted_at": None, "converted_to_invoice_id": None},
        {"status": new_status, "updated_at": datetime.utcnow()},
        "Quote status changed before this update could be applied",
    )
    s.refresh(q)
    record_event(
        s,
        actor=user,
        action="quote.status",
        entity_type="Quote",
        entity_id=str(q.id),
        metadata={"quote_number": q.quote_number, "from": old_status, "to": new_status},
    )
    return q


def delete_quote(s: Session, q: Quote, *, user: User) -> None:
    _live(q)
    if q.status != "draft":
        raise ValueError("Only draft quotes can be deleted")
    compare_and_swap(
        s,
        Quote,
        q.id,
        {"status": "draft", "deleted_at": None},
        {"deleted_at": datetime.utcnow(), "deleted_by_user_id": user.id},
        "Quote is no longer deletable",
    )
    s.refresh(q)
    record_event(s, actor=user, action="quote.delete", entity_type="Quote", entity_id=str(q.id), metadata={"quote_number": q.quote_number})


def persist_expired_quotes(s: Session, *, today: date, user: User | None = None) -> int:
    result = s.execute(
        update(Quote)
        .where(Quote.status == "sent", Quote.valid_until < today, Quote.deleted_at.is_(None))
        .values(status="expired", updated_at=datetime.utcnow())
        .execution_options(synchronize_session="fetch")
    )
    count = int(result.rowcount or 0)
    if count:
        record_event(s, actor=user, action="quote.persist_expired", entity_type="Quote", metadata={"count": count})
    return count


def quote_summary(s: Session, *, today: date) -> QuoteSummary:
    live = s.query(Quote).filter(Quote.deleted_at.is_(None)).all()
    pending = accepted = expired = Decimal("0")
    drafts = 0
    for q in live:
        status = effective_quote_status(q.status, q.valid_until, today)
        if status == "sent":
            pending += Decimal(q.total_amount)
        elif status == "accepted" and q.converted_to_invoice_id is None:
            accepted += Decimal(q.total_amount)
        elif status == "expired":
            expired += Decimal(q.total_amount)
        elif status == "draft":
            drafts += 1
    return QuoteSummary(
        total_pending=money(pending),
        total_accepted=money(accepted),
        total_expired=money(expired),
        draft_count=drafts,
    )


def convert_quote_to_invoice(s: Session, q: Quote, *, user: User, today: date) -> Invoice:
    _live(q)
    if q.status != "accepted":
        raise ValueError("Only accepted quotes can be converted to invoices")
    if q.converted_to_invoice_id is not None:
        raise ValueError("This quote has already been converted to an invoice")
    if not q.line_items:
        raise ValueError("Quote has no line items and cannot be converted")

    try:
        with s.begin_nested():
            inv = Invoice(
                invoice_number=next_document_number(s, INVOICE_SERIES),
                vendor_id=q.vendor_id,
                invoice_date=today,
                due_date=today + timedelta(days=CONVERTED_INVOICE_TERMS_DAYS),
                reference=q.reference,
                status="draft",
                invoice_discount_percentage=q.quote_discount_percentage,
                subtotal_amount=q.subtotal_amount,
                discount_amount=q.discount_amount,
                vat_amount=q.vat_amount,
                total_amount=q.total_amount,
                notes=q.notes,
                internal_notes=q.internal_notes,
            )
            inv.line_items = [
                InvoiceLineItem(
                    catalog_item_id=li.catalog_item_id,
                    description=li.description,
                    quantity=li.quantity,
                    unit_price=li.unit_price,
                    discount_percentage=li.discount_percentage,
                    vat_rate=li.vat_rate,
                )
                for li in q.line_items
            ]
            s.add(inv)
            s.flush()
            compare_and_swap(
                s,
                Quote,
                q.id,
                {"status": "accepted", "converted_to_invoice_id": None, "deleted_at": None},
                {"converted_to_invoice_id": inv.id, "updated_at": datetime.utcnow()},
                "Quote conversion could not be finalized. Please retry.",
            )
    except SQLAlchemyError as e:
        logger.exception("Converting quote %s failed", q.id)
        raise ValueError("Failed to create invoice") from e

    s.refresh(q)
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"converted_from_quote": q.quote_number, "invoice_number": inv.invoice_number},
    )
    return inv
