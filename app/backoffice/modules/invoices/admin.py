from __future__ import annotations

from typing import Any

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.utils import current_user, parse_date, parse_decimal, venue_today

from .calculations import calculate_invoice_totals
from .models import Invoice, InvoiceVendor, LineItemCatalogItem, Quote, RecurringInvoice
from .quotes import (
    change_quote_status,
    convert_quote_to_invoice,
    create_quote,
    delete_quote,
    quote_summary,
    update_quote,
)
from .recurring import (
    FREQUENCIES,
    create_recurring_invoice,
    delete_recurring_invoice,
    generate_invoice_from_recurring,
    invoice_schedule,
    toggle_recurring_invoice,
    update_recurring_invoice,
)
from .service import (
    PAYMENT_METHODS,
    change_invoice_status,
    create_catalog_item,
    create_invoice,
    create_vendor,
    delete_catalog_item,
    delete_invoice,
    invoice_summary,
    record_payment,
    send_invoice,
    update_catalog_item,
    update_invoice,
    update_vendor,
)
from .status import INVOICE_STATUS_TRANSITIONS, INVOICE_STATUSES, QUOTE_STATUS_TRANSITIONS, QUOTE_STATUSES, effective_quote_status

bp = Blueprint("invoices", __name__)

INVOICE_FIELDS = ("vendor_id", "invoice_date", "due_date", "reference", "invoice_discount_percentage", "notes", "internal_notes")
QUOTE_FIELDS = ("vendor_id", "quote_date", "valid_until", "reference", "quote_discount_percentage", "notes", "internal_notes")
RECURRING_FIELDS = (
    "vendor_id",
    "frequency",
    "start_date",
    "end_date",
    "days_before_due",
    "reference",
    "invoice_discount_percentage",
    "notes",
    "internal_notes",
)
VENDOR_FIELDS = ("name", "contact_name", "email", "phone", "address", "vat_number", "payment_terms", "notes")
CATALOG_FIELDS = ("name", "description", "default_price", "default_vat_rate")
LINE_FIELDS = ("description", "quantity", "unit_price", "discount_percentage", "vat_rate", "catalog_item_id")


def _form_payload(fields: tuple[str, ...]) -> dict[str, Any]:
    return {k: request.form.get(k) for k in fields}


def _form_lines() -> list[dict[str, Any]]:
    """Line items arrive as parallel `line_<field>` lists; rows with no description are blank form rows."""
    columns = {f: request.form.getlist(f"line_{f}") for f in LINE_FIELDS}
    rows = []
    for i, description in enumerate(columns["description"]):
        if not (description or "").strip():
            continue
        rows.append({f: (columns[f][i] if i < len(columns[f]) else None) for f in LINE_FIELDS})
    return rows


def _form_context() -> dict[str, Any]:
    s = db_session()
    return {
        "vendors": s.query(InvoiceVendor).filter(InvoiceVendor.is_active.is_(True)).order_by(InvoiceVendor.name.asc()).all(),
        "catalog": s.query(LineItemCatalogItem)
        .filter(LineItemCatalogItem.is_active.is_(True))
        .order_by(LineItemCatalogItem.name.asc())
        .all(),
    }


def _get_or_404(model: type, row_id: int):
    row = db_session().get(model, row_id)
    if row is None or getattr(row, "deleted_at", None) is not None:
        abort(404)
    return row


# ─────────────────────────────────────────────────────────────────────────────
# Invoices
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/invoices")
@require_permission("invoices.view")
def invoices_list():
    s = db_session()
    status = (request.args.get("status") or "").strip()
    vendor_id = request.args.get("vendor_id", type=int)
    q = s.query(Invoice).filter(Invoice.deleted_at.is_(None))
    if status in INVOICE_STATUSES:
        q = q.filter(Invoice.status == status)
    if vendor_id:
        q = q.filter(Invoice.vendor_id == vendor_id)
    invoices = q.order_by(Invoice.invoice_date.desc(), Invoice.id.desc()).limit(500).all()
    return render_template(
        "admin/invoices/list.html",
        invoices=invoices,
        summary=invoice_summary(s, today=venue_today()),
        status=status,
        statuses=INVOICE_STATUSES,
        vendor_id=vendor_id,
        **_form_context(),
    )


@bp.get("/invoices/new")
@require_permission("invoices.create")
def invoices_new_get():
    return render_template("admin/invoices/edit.html", invoice=None, **_form_context())


@bp.post("/invoices/new")
@require_permission("invoices.create")
def invoices_new_post():
    s = db_session()
    try:
        inv = create_invoice(s, _form_payload(INVOICE_FIELDS), _form_lines(), user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.invoices_new_get"))
    flash(f"Invoice {inv.invoice_number} created.", "success")
    return redirect(url_for("invoices.invoices_detail", invoice_id=inv.id))


@bp.get("/invoices/<int:invoice_id>")
@require_permission("invoices.view")
def invoices_detail(invoice_id: int):
    inv = _get_or_404(Invoice, invoice_id)
    return render_template(
        "admin/invoices/detail.html",
        invoice=inv,
        totals=calculate_invoice_totals(inv.line_items, inv.invoice_discount_percentage),
        next_statuses=sorted(INVOICE_STATUS_TRANSITIONS.get(inv.status, set())),
        payment_methods=PAYMENT_METHODS,
        today=venue_today(),
    )


@bp.get("/invoices/<int:invoice_id>/edit")
@require_permission("invoices.edit")
def invoices_edit_get(invoice_id: int):
    inv = _get_or_404(Invoice, invoice_id)
    if inv.status != "draft":
        flash("Only draft invoices can be edited", "danger")
        return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))
    return render_template("admin/invoices/edit.html", invoice=inv, **_form_context())


@bp.post("/invoices/<int:invoice_id>/edit")
@require_permission("invoices.edit")
def invoices_edit_post(invoice_id: int):
    s = db_session()
    inv = _get_or_404(Invoice, invoice_id)
    try:
        update_invoice(s, inv, _form_payload(INVOICE_FIELDS), _form_lines(), user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.invoices_edit_get", invoice_id=invoice_id))
    flash("Invoice updated.", "success")
    return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/status")
@require_permission("invoices.edit")
def invoices_status(invoice_id: int):
    s = db_session()
    inv = _get_or_404(Invoice, invoice_id)
    new_status = (request.form.get("status") or "").strip()
    try:
        change_invoice_status(s, inv, new_status, user=current_user(), reason=(request.form.get("reason") or "").strip() or None)
        s.commit()
        flash(f"Invoice marked {new_status.replace('_', ' ')}.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/send")
@require_permission("invoices.edit")
def invoices_send(invoice_id: int):
    s = db_session()
    inv = _get_or_404(Invoice, invoice_id)
    try:
        send_invoice(s, inv, user=current_user())
        s.commit()
        flash("Invoice sent.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/payments")
@require_permission("invoices.edit")
def invoices_payment(invoice_id: int):
    s = db_session()
    inv = _get_or_404(Invoice, invoice_id)
    amount = parse_decimal(request.form.get("amount"))
    if amount is None:
        flash("Payment amount is required.", "danger")
        return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))
    try:
        record_payment(
            s,
            inv,
            amount=amount,
            payment_method=(request.form.get("payment_method") or "").strip(),
            payment_date=parse_date(request.form.get("payment_date")) or venue_today(),
            reference=request.form.get("reference"),
            notes=request.form.get("notes"),
            user=current_user(),
        )
        s.commit()
        flash("Payment recorded.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/delete")
@require_permission("invoices.delete")
def invoices_delete(invoice_id: int):
    s = db_session()
    inv = _get_or_404(Invoice, invoice_id)
    try:
        delete_invoice(s, inv, user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.invoices_detail", invoice_id=invoice_id))
    flash("Invoice deleted.", "success")
    return redirect(url_for("invoices.invoices_list"))


# ─────────────────────────────────────────────────────────────────────────────
# Quotes
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/quotes")
@require_permission("invoices.view")
def quotes_list():
    s = db_session()
    today = venue_today()
    status = (request.args.get("status") or "").strip()
    quotes = s.query(Quote).filter(Quote.deleted_at.is_(None)).order_by(Quote.quote_date.desc(), Quote.id.desc()).limit(500).all()
    if status in QUOTE_STATUSES:
        quotes = [q for q in quotes if effective_quote_status(q.status, q.valid_until, today) == status]
    return render_template(
        "admin/quotes/list.html",
        quotes=quotes,
        summary=quote_summary(s, today=today),
        status=status,
        statuses=QUOTE_STATUSES,
        effective_status={q.id: effective_quote_status(q.status, q.valid_until, today) for q in quotes},
    )


@bp.get("/quotes/new")
@require_permission("invoices.create")
def quotes_new_get():
    return render_template("admin/quotes/edit.html", quote=None, **_form_context())


@bp.post("/quotes/new")
@require_permission("invoices.create")
def quotes_new_post():
    s = db_session()
    try:
        q = create_quote(s, _form_payload(QUOTE_FIELDS), _form_lines(), user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.quotes_new_get"))
    flash(f"Quote {q.quote_number} created.", "success")
    return redirect(url_for("invoices.quotes_detail", quote_id=q.id))


@bp.get("/quotes/<int:quote_id>")
@require_permission("invoices.view")
def quotes_detail(quote_id: int):
    q = _get_or_404(Quote, quote_id)
    return render_template(
        "admin/quotes/detail.html",
        quote=q,
        effective_status=effective_quote_status(q.status, q.valid_until, venue_today()),
        totals=calculate_invoice_totals(q.line_items, q.quote_discount_percentage),
        next_statuses=sorted(QUOTE_STATUS_TRANSITIONS.get(q.status, set())),
    )


@bp.get("/quotes/<int:quote_id>/edit")
@require_permission("invoices.edit")
def quotes_edit_get(quote_id: int):
    q = _get_or_404(Quote, quote_id)
    if q.status != "draft":
        flash("Only draft quotes can be edited", "danger")
        return redirect(url_for("invoices.quotes_detail", quote_id=quote_id))
    return render_template("admin/quotes/edit.html", quote=q, **_form_context())


@bp.post("/quotes/<int:quote_id>/edit")
@require_permission("invoices.edit")
def quotes_edit_post(quote_id: int):
    s = db_session()
    q = _get_or_404(Quote, quote_id)
    try:
        update_quote(s, q, _form_payload(QUOTE_FIELDS), _form_lines(), user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.quotes_edit_get", quote_id=quote_id))
    flash("Quote updated.", "success")
    return redirect(url_for("invoices.quotes_detail", quote_id=quote_id))


@bp.post("/quotes/<int:quote_id>/status")
@require_permission("invoices.edit")
def quotes_status(quote_id: int):
    s = db_session()
    q = _get_or_404(Quote, quote_id)
    new_status = (request.form.get("status") or "").strip()
    try:
        change_quote_status(s, q, new_status, user=current_user())
        s.commit()
        flash(f"Quote marked {new_status}.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.quotes_detail", quote_id=quote_id))


@bp.post("/quotes/<int:quote_id>/convert")
@require_permission("invoices.create")
def quotes_convert(quote_id: int):
    s = db_session()
    q = _get_or_404(Quote, quote_id)
    try:
        inv = convert_quote_to_invoice(s, q, user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.quotes_detail", quote_id=quote_id))
    flash(f"Quote converted to invoice {inv.invoice_number}.", "success")
    return redirect(url_for("invoices.invoices_detail", invoice_id=inv.id))


@bp.post("/quotes/<int:quote_id>/delete")
@require_permission("invoices.delete")
def quotes_delete(quote_id: int):
    s = db_session()
    q = _get_or_404(Quote, quote_id)
    try:
        delete_quote(s, q, user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.quotes_detail", quote_id=quote_id))
    flash("Quote deleted.", "success")
    return redirect(url_for("invoices.quotes_list"))


# ─────────────────────────────────────────────────────────────────────────────
# Vendors and catalog
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/invoices/vendors")
@require_permission("invoices.view")
def vendors_list():
    s = db_session()
    vendors = s.query(InvoiceVendor).order_by(InvoiceVendor.is_active.desc(), InvoiceVendor.name.asc()).all()
    return render_template("admin/invoices/vendors.html", vendors=vendors)


@bp.post("/invoices/vendors/new")
@require_permission("invoices.create")
def vendors_new_post():
    s = db_session()
    try:
        v = create_vendor(s, _form_payload(VENDOR_FIELDS), user=current_user())
        s.commit()
        flash(f"Vendor {v.name} added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.vendors_list"))


@bp.post("/invoices/vendors/<int:vendor_id>/edit")
@require_permission("invoices.edit")
def vendors_edit_post(vendor_id: int):
    s = db_session()
    v = _get_or_404(InvoiceVendor, vendor_id)
    payload = _form_payload(VENDOR_FIELDS)
    payload["is_active"] = request.form.get("is_active") == "on"
    try:
        update_vendor(s, v, payload, user=current_user())
        s.commit()
        flash("Vendor updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.vendors_list"))


@bp.get("/invoices/catalog")
@require_permission("invoices.view")
def catalog_list():
    s = db_session()
    items = s.query(LineItemCatalogItem).order_by(LineItemCatalogItem.is_active.desc(), LineItemCatalogItem.name.asc()).all()
    return render_template("admin/invoices/catalog.html", items=items)


@bp.post("/invoices/catalog/new")
@require_permission("invoices.create")
def catalog_new_post():
    s = db_session()
    try:
        create_catalog_item(s, _form_payload(CATALOG_FIELDS), user=current_user())
        s.commit()
        flash("Catalog item added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.catalog_list"))


@bp.post("/invoices/catalog/<int:item_id>/edit")
@require_permission("invoices.edit")
def catalog_edit_post(item_id: int):
    s = db_session()
    item = _get_or_404(LineItemCatalogItem, item_id)
    try:
        update_catalog_item(s, item, _form_payload(CATALOG_FIELDS), user=current_user())
        s.commit()
        flash("Catalog item updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("invoices.catalog_list"))


@bp.post("/invoices/catalog/<int:item_id>/delete")
@require_permission("invoices.delete")
def catalog_delete_post(item_id: int):
    s = db_session()
    item = _get_or_404(LineItemCatalogItem, item_id)
    delete_catalog_item(s, item, user=current_user())
    s.commit()
    flash("Catalog item deactivated.", "success")
    return redirect(url_for("invoices.catalog_list"))


# ─────────────────────────────────────────────────────────────────────────────
# Recurring
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/invoices/recurring")
@require_permission("invoices.view")
def recurring_list():
    s = db_session()
    rows = s.query(RecurringInvoice).order_by(RecurringInvoice.is_active.desc(), RecurringInvoice.next_invoice_date.asc()).all()
    return render_template("admin/invoices/recurring_list.html", recurring=rows)


@bp.get("/invoices/recurring/new")
@require_permission("invoices.create")
def recurring_new_get():
    return render_template("admin/invoices/recurring_edit.html", recurring=None, frequencies=FREQUENCIES, **_form_context())


@bp.post("/invoices/recurring/new")
@require_permission("invoices.create")
def recurring_new_post():
    s = db_session()
    try:
        ri = create_recurring_invoice(s, _form_payload(RECURRING_FIELDS), _form_lines(), user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.recurring_new_get"))
    flash("Recurring invoice created.", "success")
    return redirect(url_for("invoices.recurring_detail", recurring_id=ri.id))


@bp.get("/invoices/recurring/<int:recurring_id>")
@require_permission("invoices.view")
def recurring_detail(recurring_id: int):
    ri = _get_or_404(RecurringInvoice, recurring_id)
    upcoming = invoice_schedule(ri.next_invoice_date, ri.frequency, end=ri.end_date, count=6) if ri.is_active else []
    generated = (
        db_session()
        .query(Invoice)
        .filter(Invoice.recurring_invoice_id == ri.id, Invoice.deleted_at.is_(None))
        .order_by(Invoice.invoice_date.desc())
        .all()
    )
    return render_template(
        "admin/invoices/recurring_detail.html",
        recurring=ri,
        upcoming=upcoming,
        generated=generated,
        totals=calculate_invoice_totals(ri.line_items, ri.invoice_discount_percentage),
    )


@bp.get("/invoices/recurring/<int:recurring_id>/edit")
@require_permission("invoices.edit")
def recurring_edit_get(recurring_id: int):
    ri = _get_or_404(RecurringInvoice, recurring_id)
    return render_template("admin/invoices/recurring_edit.html", recurring=ri, frequencies=FREQUENCIES, **_form_context())


@bp.post("/invoices/recurring/<int:recurring_id>/edit")
@require_permission("invoices.edit")
def recurring_edit_post(recurring_id: int):
    s = db_session()
    ri = _get_or_404(RecurringInvoice, recurring_id)
    try:
        update_recurring_invoice(s, ri, _form_payload(RECURRING_FIELDS), _form_lines(), user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.recurring_edit_get", recurring_id=recurring_id))
    flash("Recurring invoice updated.", "success")
    return redirect(url_for("invoices.recurring_detail", recurring_id=recurring_id))


@bp.post("/invoices/recurring/<int:recurring_id>/toggle")
@require_permission("invoices.edit")
def recurring_toggle(recurring_id: int):
    s = db_session()
    ri = _get_or_404(RecurringInvoice, recurring_id)
    toggle_recurring_invoice(s, ri, user=current_user())
    s.commit()
    flash("Recurring invoice activated." if ri.is_active else "Recurring invoice paused.", "success")
    return redirect(url_for("invoices.recurring_detail", recurring_id=recurring_id))


@bp.post("/invoices/recurring/<int:recurring_id>/generate")
@require_permission("invoices.create")
def recurring_generate(recurring_id: int):
    s = db_session()
    ri = _get_or_404(RecurringInvoice, recurring_id)
    try:
        inv = generate_invoice_from_recurring(s, ri, user=current_user(), today=venue_today())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("invoices.recurring_detail", recurring_id=recurring_id))
    flash(f"Invoice {inv.invoice_number} generated.", "success")
    return redirect(url_for("invoices.invoices_detail", invoice_id=inv.id))


@bp.post("/invoices/recurring/<int:recurring_id>/delete")
@require_permission("invoices.delete")
def recurring_delete(recurring_id: int):
    s = db_session()
    ri = _get_or_404(RecurringInvoice, recurring_id)
    deleted = delete_recurring_invoice(s, ri, user=current_user())
    s.commit()
    if deleted:
        flash("Recurring invoice deleted.", "success")
        return redirect(url_for("invoices.recurring_list"))
    flash("Recurring invoice has generated invoices, so it was deactivated instead.", "warning")
    return redirect(url_for("invoices.recurring_detail", recurring_id=recurring_id))
