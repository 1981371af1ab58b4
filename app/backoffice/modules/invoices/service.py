"""
Invoice service layer: vendors, line item catalog, invoices and payments.

Status changes and deletes are compare-and-swap updates guarded on the
status the caller last saw; a zero row count raises ConcurrentUpdateError.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from flask import current_app, has_app_context
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.messaging.service import queue_email
from app.backoffice.modules.messaging.templates import render_message
from app.backoffice.utils import money, parse_date, parse_decimal, parse_int

from .calculations import InvoiceTotals, LineInput, calculate_invoice_totals, parse_lines, parse_percentage
from .models import Invoice, InvoiceLineItem, InvoicePayment, InvoiceVendor, LineItemCatalogItem
from .numbering import next_document_number
from .status import OPEN_INVOICE_STATUSES, ConcurrentUpdateError, is_invoice_status_transition_allowed

logger = logging.getLogger(__name__)

INVOICE_SERIES = "INV"
PAYMENT_METHODS = ("bank_transfer", "cash", "cheque", "card", "other")


@dataclass(frozen=True)
class InvoiceSummary:
    total_outstanding: Decimal
    total_overdue: Decimal
    total_this_month: Decimal
    count_draft: int


# ─────────────────────────────────────────────────────────────────────────────
# Vendors
# ─────────────────────────────────────────────────────────────────────────────


def _clean_vendor(payload: dict[str, Any]) -> dict[str, Any]:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValueError("Vendor name is required.")
    email = (payload.get("email") or "").strip().lower() or None
    if email and "@" not in email:
        raise ValueError("Vendor email is invalid.")
    terms = payload.get("payment_terms")
    terms = parse_int(terms) if isinstance(terms, str) else terms
    terms = 30 if terms is None else terms
    if terms < 0 or terms > 365:
        raise ValueError("Payment terms must be between 0 and 365 days.")
    return {
        "name": name,
        "contact_name": (payload.get("contact_name") or "").strip() or None,
        "email": email,
        "phone": (payload.get("phone") or "").strip() or None,
        "address": (payload.get("address") or "").strip() or None,
        "vat_number": (payload.get("vat_number") or "").strip() or None,
        "payment_terms": terms,
        "notes": (payload.get("notes") or "").strip() or None,
    }


def create_vendor(s: Session, payload: dict[str, Any], *, user: User) -> InvoiceVendor:
    v = InvoiceVendor(**_clean_vendor(payload))
    s.add(v)
    s.flush()
    record_event(s, actor=user, action="invoice_vendor.create", entity_type="InvoiceVendor", entity_id=str(v.id), metadata={"name": v.name})
    return v


def update_vendor(s: Session, v: InvoiceVendor, payload: dict[str, Any], *, user: User) -> InvoiceVendor:
    data = _clean_vendor(payload)
    before = {k: getattr(v, k) for k in data}
    for k, val in data.items():
        setattr(v, k, val)
    v.is_active = bool(payload.get("is_active", v.is_active))
    v.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="invoice_vendor.update",
        entity_type="InvoiceVendor",
        entity_id=str(v.id),
        metadata={"before": before, "after": data},
    )
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Catalog
# ─────────────────────────────────────────────────────────────────────────────


def _clean_catalog(payload: dict[str, Any]) -> dict[str, Any]:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValueError("Catalog item name is required.")
    price = payload.get("default_price")
    price = parse_decimal(price) if isinstance(price, str) else price
    price = money(price or 0)
    if price < 0:
        raise ValueError("Default price cannot be negative.")
    vat = payload.get("default_vat_rate")
    vat = parse_decimal(vat) if isinstance(vat, str) else vat
    vat = Decimal("20") if vat is None else Decimal(vat)
    if vat < 0 or vat > 100:
        raise ValueError("VAT rate must be between 0 and 100.")
    return {
        "name": name,
        "description": (payload.get("description") or "").strip() or None,
        "default_price": price,
        "default_vat_rate": vat,
    }


def create_catalog_item(s: Session, payload: dict[str, Any], *, user: User) -> LineItemCatalogItem:
    item = LineItemCatalogItem(**_clean_catalog(payload))
    s.add(item)
    s.flush()
    record_event(s, actor=user, action="catalog_item.create", entity_type="LineItemCatalogItem", entity_id=str(item.id), metadata={"name": item.name})
    return item


def update_catalog_item(s: Session, item: LineItemCatalogItem, payload: dict[str, Any], *, user: User) -> LineItemCatalogItem:
    data = _clean_catalog(payload)
    for k, v in data.items():
        setattr(item, k, v)
    item.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="catalog_item.update", entity_type="LineItemCatalogItem", entity_id=str(item.id), metadata={"name": item.name})
    return item


def delete_catalog_item(s: Session, item: LineItemCatalogItem, *, user: User) -> LineItemCatalogItem:
    """Catalog items are referenced by historic lines, so delete only deactivates."""
    item.is_active = False
    item.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="catalog_item.delete", entity_type="LineItemCatalogItem", entity_id=str(item.id), metadata={"name": item.name})
    return item


# ─────────────────────────────────────────────────────────────────────────────
# Shared document helpers (also used by quotes and recurring invoices)
# ─────────────────────────────────────────────────────────────────────────────


def build_line_rows(line_cls: type, lines: Iterable[LineInput]) -> list[Any]:
    return [
        line_cls(
            description=l.description,
            quantity=l.quantity,
            unit_price=l.unit_price,
            discount_percentage=l.discount_percentage,
            vat_rate=l.vat_rate,
            catalog_item_id=l.catalog_item_id,
        )
        for l in lines
    ]


def apply_totals(doc: Any, totals: InvoiceTotals) -> None:
    doc.subtotal_amount = totals.subtotal
    doc.discount_amount = totals.discount
    doc.vat_amount = totals.vat
    doc.total_amount = totals.total


def require_vendor(s: Session, vendor_id: int | None) -> InvoiceVendor:
    if not vendor_id:
        raise ValueError("Vendor is required.")
    v = s.get(InvoiceVendor, vendor_id)
    if v is None:
        raise ValueError("Vendor not found.")
    if not v.is_active:
        raise ValueError(f"Vendor '{v.name}' is inactive.")
    return v


def _as_date(value: Any) -> date | None:
    return parse_date(value) if isinstance(value, str) else value


def _as_int(value: Any) -> int | None:
    return parse_int(value) if isinstance(value, str) else value


def compare_and_swap(s: Session, model: type, row_id: int, expected: dict[str, Any], values: dict[str, Any], message: str) -> None:
    """UPDATE … WHERE id = :id AND <expected>; zero rows means someone else got there first."""
    stmt = update(model).where(model.id == row_id)
    for col, val in expected.items():
        column = getattr(model, col)
        stmt = stmt.where(column.is_(None) if val is None else column == val)
    result = s.execute(stmt.values(**values))
    if result.rowcount != 1:
        logger.warning("Stale update on %s id=%s expected=%s", model.__name__, row_id, expected)
        raise ConcurrentUpdateError(message)


# ─────────────────────────────────────────────────────────────────────────────
# Invoices
# ─────────────────────────────────────────────────────────────────────────────


def _live(inv: Invoice) -> None:
    if inv.deleted_at is not None:
        raise ValueError("Invoice not found")


def create_invoice(
    s: Session,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User | None,
    today: date,
    recurring_invoice_id: int | None = None,
) -> Invoice:
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")))
    lines = parse_lines(line_rows)
    invoice_date = _as_date(payload.get("invoice_date")) or today
    due_date = _as_date(payload.get("due_date")) or invoice_date + timedelta(days=vendor.payment_terms or 0)
    if due_date < invoice_date:
        raise ValueError("Due date cannot be before the invoice date.")
    discount_pct = parse_percentage(payload.get("invoice_discount_percentage"), "Invoice discount")
    totals = calculate_invoice_totals(lines, discount_pct)

    inv = Invoice(
        invoice_number=next_document_number(s, INVOICE_SERIES),
        vendor_id=vendor.id,
        recurring_invoice_id=recurring_invoice_id,
        invoice_date=invoice_date,
        due_date=due_date,
        reference=(payload.get("reference") or "").strip() or None,
        status="draft",
        invoice_discount_percentage=discount_pct,
        notes=(payload.get("notes") or "").strip() or None,
        internal_notes=(payload.get("internal_notes") or "").strip() or None,
    )
    apply_totals(inv, totals)
    inv.line_items = build_line_rows(InvoiceLineItem, lines)
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"invoice_number": inv.invoice_number, "total": str(inv.total_amount), "vendor_id": vendor.id},
    )
    return inv


def update_invoice(
    s: Session,
    inv: Invoice,
    payload: dict[str, Any],
    line_rows: Iterable[dict[str, Any]],
    *,
    user: User,
) -> Invoice:
    _live(inv)
    if inv.status != "draft":
        raise ValueError("Only draft invoices can be edited")
    vendor = require_vendor(s, _as_int(payload.get("vendor_id")) or inv.vendor_id)
    lines = parse_lines(line_rows)
    invoice_date = _as_date(payload.get("invoice_date")) or inv.invoice_date
    due_date = _as_date(payload.get("due_date")) or inv.due_date
    if due_date < invoice_date:
        raise ValueError("Due date cannot be before the invoice date.")
    discount_pct = parse_percentage(payload.get("invoice_discount_percentage"), "Invoice discount")
    totals = calculate_invoice_totals(lines, discount_pct)
    before = {"total": str(inv.total_amount), "lines": len(inv.line_items)}

    with s.begin_nested():
        compare_and_swap(
            s,
            Invoice,
            inv.id,
            {"status": "draft", "deleted_at": None},
            {"updated_at": datetime.utcnow()},
            "Invoice changed before this update could be applied",
        )
        inv.vendor_id = vendor.id
        inv.invoice_date = invoice_date
        inv.due_date = due_date
        inv.reference = (payload.get("reference") or "").strip() or None
        inv.notes = (payload.get("notes") or "").strip() or None
        inv.internal_notes = (payload.get("internal_notes") or "").strip() or None
        inv.invoice_discount_percentage = discount_pct
        apply_totals(inv, totals)
        inv.line_items = build_line_rows(InvoiceLineItem, lines)
        s.flush()

    record_event(
        s,
        actor=user,
        action="invoice.update",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"before": before, "after": {"total": str(inv.total_amount), "lines": len(lines)}},
    )
    return inv


def change_invoice_status(s: Session, inv: Invoice, new_status: str, *, user: User | None, reason: str | None = None) -> Invoice:
    _live(inv)
    old_status = inv.status
    if not is_invoice_status_transition_allowed(old_status, new_status):
        raise ValueError(f"Invalid status transition from {old_status} to {new_status}")
    compare_and_swap(
        s,
        Invoice,
        inv.id,
        {"status": old_status, "deleted_at": None},
        {"status": new_status, "updated_at": datetime.utcnow()},
        "Invoice status changed before update completed",
    )
    s.refresh(inv)
    record_event(
        s,
        actor=user,
        action="invoice.status",
        entity_type="Invoice",
        entity_id=str(inv.id),
        reason=reason,
        metadata={"invoice_number": inv.invoice_number, "from": old_status, "to": new_status},
    )
    return inv


def send_invoice(s: Session, inv: Invoice, *, user: User) -> Invoice:
    """Mark a draft as sent and queue the invoice email to the vendor, when it has an address."""
    change_invoice_status(s, inv, "sent", user=user)
    vendor = inv.vendor
    if vendor is not None and vendor.email:
        venue_name = current_app.config.get("VENUE_NAME") if has_app_context() else None
        rendered = render_message(
            s,
            "invoice.sent",
            {
                "venue_name": venue_name or "The Venue",
                "vendor_name": vendor.contact_name or vendor.name,
                "invoice_number": inv.invoice_number,
                "total_amount": f"{Decimal(inv.total_amount):.2f}",
                "due_date": inv.due_date.strftime("%d %B %Y"),
            },
        )
        queue_email(
            s,
            to=vendor.email,
            subject=rendered.subject or f"Invoice {inv.invoice_number}",
            body=rendered.body,
            template_key="invoice.sent",
            related_entity_type="Invoice",
            related_entity_id=str(inv.id),
            user=user,
        )
    return inv


def record_payment(
    s: Session,
    inv: Invoice,
    *,
    amount: Decimal,
    payment_method: str,
    payment_date: date,
    reference: str | None = None,
    notes: str | None = None,
    user: User | None,
) -> InvoicePayment:
    _live(inv)
    if inv.status not in OPEN_INVOICE_STATUSES:
        raise ValueError(f"Payments cannot be recorded against a {inv.status} invoice.")
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}")
    amount = money(amount)
    if amount <= 0:
        raise ValueError("Payment amount must be greater than zero.")
    outstanding = money(inv.balance_due)
    if amount > outstanding:
        raise ValueError(f"Payment of £{amount:.2f} exceeds the outstanding balance of £{outstanding:.2f}.")

    old_status, old_paid = inv.status, money(inv.paid_amount)
    new_paid = money(old_paid + amount)
    new_status = "paid" if new_paid >= money(inv.total_amount) else "partially_paid"
    if new_status != old_status and not is_invoice_status_transition_allowed(old_status, new_status):
        raise ValueError(f"Invalid status transition from {old_status} to {new_status}")

    compare_and_swap(
        s,
        Invoice,
        inv.id,
        {"status": old_status, "paid_amount": old_paid, "deleted_at": None},
        {"status": new_status, "paid_amount": new_paid, "updated_at": datetime.utcnow()},
        "Invoice changed before the payment could be recorded",
    )
    p = InvoicePayment(
        invoice_id=inv.id,
        payment_date=payment_date,
        amount=amount,
        payment_method=payment_method,
        reference=(reference or "").strip() or None,
        notes=(notes or "").strip() or None,
        created_by_user_id=user.id if user else None,
    )
    s.add(p)
    s.flush()
    s.refresh(inv)
    record_event(
        s,
        actor=user,
        action="invoice.payment",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"amount": str(amount), "method": payment_method, "from": old_status, "to": new_status},
    )
    return p


def delete_invoice(s: Session, inv: Invoice, *, user: User) -> None:
    """Soft delete; only drafts."""
    _live(inv)
    if inv.status != "draft":
        raise ValueError("Only draft invoices can be deleted")
    compare_and_swap(
        s,
        Invoice,
        inv.id,
        {"status": "draft", "deleted_at": None},
        {"deleted_at": datetime.utcnow(), "deleted_by_user_id": user.id},
        "Invoice is no longer deletable",
    )
    s.refresh(inv)
    record_event(
        s,
        actor=user,
        action="invoice.delete",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"invoice_number": inv.invoice_number},
    )


def persist_overdue_invoices(s: Session, *, today: date, user: User | None = None) -> int:
    """Sent invoices whose due date has passed become overdue."""
    result = s.execute(
        update(Invoice)
        .where(Invoice.status == "sent", Invoice.due_date < today, Invoice.deleted_at.is_(None))
        .values(status="overdue", updated_at=datetime.utcnow())
        .execution_options(synchronize_session="fetch")
    )
    count = int(result.rowcount or 0)
    if count:
        record_event(
            s,
            actor=user,
            action="invoice.persist_overdue",
            entity_type="Invoice",
            metadata={"count": count, "as_of": today.isoformat()},
        )
        logger.info("Marked %s invoices overdue", count)
    return count


def invoice_summary(s: Session, *, today: date) -> InvoiceSummary:
    live = Invoice.deleted_at.is_(None)
    outstanding = (
        s.query(func.coalesce(func.sum(Invoice.total_amount - Invoice.paid_amount), 0))
        .filter(live, Invoice.status.in_(OPEN_INVOICE_STATUSES))
        .scalar()
    )
    overdue = (
        s.query(func.coalesce(func.sum(Invoice.total_amount - Invoice.paid_amount), 0))
        .filter(live, Invoice.status == "overdue")
        .scalar()
    )
    month_start = today.replace(day=1)
    this_month = (
        s.query(func.coalesce(func.sum(Invoice.total_amount), 0))
        .filter(
            live,
            Invoice.invoice_date >= month_start,
            Invoice.invoice_date <= today,
            Invoice.status.notin_(("draft", "void")),
        )
        .scalar()
    )
    drafts = s.query(func.count(Invoice.id)).filter(live, Invoice.status == "draft").scalar()
    return InvoiceSummary(
        total_outstanding=money(outstanding),
        total_overdue=money(overdue),
        total_this_month=money(this_month),
        count_draft=int(drafts or 0),
    )
