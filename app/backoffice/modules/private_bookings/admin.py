from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, send_file, url_for

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.storage import StorageError, storage_from_config
from app.backoffice.utils import current_user, parse_decimal, parse_int, venue_now, venue_today

from .models import PrivateBooking, PrivateBookingDocument, PrivateBookingItem
from .service import (
    DISCOUNT_TYPES,
    DOCUMENT_TYPES,
    HOLD_EXTENSION_DAYS,
    ITEM_TYPES,
    VALID_STATUSES,
    add_item,
    apply_booking_discount,
    booking_totals,
    cancel_booking,
    complete_booking,
    create_booking,
    delete_booking,
    delete_item,
    expire_booking,
    extend_hold,
    item_total,
    open_document,
    record_deposit,
    record_final_payment,
    reorder_items,
    update_booking,
    update_item,
    upload_document,
)

bp = Blueprint("private_bookings", __name__)

BOOKING_FIELDS = (
    "customer_first_name",
    "customer_last_name",
    "contact_phone",
    "contact_email",
    "event_date",
    "start_time",
    "end_time",
    "guest_count",
    "event_type",
    "deposit_amount",
    "balance_due_date",
    "hold_expiry",
    "customer_requests",
    "internal_notes",
)
ITEM_FIELDS = ("item_type", "description", "quantity", "unit_price", "discount_type", "discount_value", "notes")


def _get_booking_or_404(booking_id: int) -> PrivateBooking:
    b = db_session().get(PrivateBooking, booking_id)
    if not b:
        abort(404)
    return b


def _get_item_or_404(booking_id: int, item_id: int) -> PrivateBookingItem:
    item = db_session().get(PrivateBookingItem, item_id)
    if not item or item.booking_id != booking_id:
        abort(404)
    return item


def _detail(booking_id: int):
    return redirect(url_for("private_bookings.bookings_detail", booking_id=booking_id))


@bp.get("/private-bookings")
@require_permission("private_bookings.view")
def bookings_list():
    s = db_session()
    status = (request.args.get("status") or "").strip()
    show_past = request.args.get("past") == "1"
    q = s.query(PrivateBooking)
    if status in VALID_STATUSES:
        q = q.filter(PrivateBooking.status == status)
    if not show_past:
        q = q.filter(PrivateBooking.event_date >= venue_today())
    bookings = q.order_by(PrivateBooking.event_date.asc(), PrivateBooking.start_time.asc()).all()
    return render_template(
        "admin/private_bookings/list.html",
        bookings=bookings,
        status=status,
        statuses=sorted(VALID_STATUSES),
        show_past=show_past,
    )


@bp.get("/private-bookings/new")
@require_permission("private_bookings.create")
def bookings_new_get():
    return render_template("admin/private_bookings/edit.html", booking=None)


@bp.post("/private-bookings/new")
@require_permission("private_bookings.create")
def bookings_new_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in BOOKING_FIELDS}
    try:
        b = create_booking(s, payload, user=current_user(), now=venue_now())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("private_bookings.bookings_new_get"))
    flash("Private booking created.", "success")
    return _detail(b.id)


@bp.get("/private-bookings/<int:booking_id>")
@require_permission("private_bookings.view")
def bookings_detail(booking_id: int):
    b = _get_booking_or_404(booking_id)
    return render_template(
        "admin/private_bookings/detail.html",
        booking=b,
        totals=booking_totals(b),
        item_totals={i.id: item_total(i) for i in b.items},
        item_types=ITEM_TYPES,
        discount_types=DISCOUNT_TYPES,
        document_types=DOCUMENT_TYPES,
        hold_extension_days=HOLD_EXTENSION_DAYS,
    )


@bp.get("/private-bookings/<int:booking_id>/edit")
@require_permission("private_bookings.edit")
def bookings_edit_get(booking_id: int):
    return render_template("admin/private_bookings/edit.html", booking=_get_booking_or_404(booking_id))


@bp.post("/private-bookings/<int:booking_id>/edit")
@require_permission("private_bookings.edit")
def bookings_edit_post(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    payload = {k: request.form.get(k) for k in BOOKING_FIELDS}
    try:
        update_booking(s, b, payload, user=current_user(), now=venue_now())
        s.commit()
        flash("Booking updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("private_bookings.bookings_edit_get", booking_id=booking_id))
    return _detail(booking_id)


def _run(booking_id: int, action, success: str):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        action(s, b)
        s.commit()
        flash(success, "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Storage failure on private booking %s: %s", booking_id, e)
        flash("File storage is unavailable. Try again shortly.", "danger")
    return _detail(booking_id)


@bp.post("/private-bookings/<int:booking_id>/extend-hold")
@require_permission("private_bookings.edit")
def bookings_extend_hold(booking_id: int):
    days = parse_int(request.form.get("days")) or 0
    return _run(
        booking_id,
        lambda s, b: extend_hold(s, b, days=days, user=current_user(), now=venue_now()),
        f"Hold extended by {days} days.",
    )


@bp.post("/private-bookings/<int:booking_id>/expire")
@require_permission("private_bookings.edit")
def bookings_expire(booking_id: int):
    return _run(
        booking_id,
        lambda s, b: expire_booking(s, b, user=current_user(), now=venue_now()),
        "Booking hold expired.",
    )


@bp.post("/private-bookings/<int:booking_id>/deposit")
@require_permission("private_bookings.edit")
def bookings_deposit(booking_id: int):
    amount = parse_decimal(request.form.get("amount"))
    method = request.form.get("method") or ""

    def _action(s, b):
        record_deposit(
            s,
            b,
            amount=amount if amount is not None else b.deposit_amount,
            method=method,
            user=current_user(),
            now=venue_now(),
        )

    return _run(booking_id, _action, "Deposit recorded; booking confirmed.")


@bp.post("/private-bookings/<int:booking_id>/final-payment")
@require_permission("private_bookings.edit")
def bookings_final_payment(booking_id: int):
    method = request.form.get("method") or ""
    return _run(
        booking_id,
        lambda s, b: record_final_payment(s, b, method=method, user=current_user(), now=venue_now()),
        "Final payment recorded.",
    )


@bp.post("/private-bookings/<int:booking_id>/cancel")
@require_permission("private_bookings.edit")
def bookings_cancel(booking_id: int):
    reason = request.form.get("reason")
    return _run(
        booking_id,
        lambda s, b: cancel_booking(s, b, reason=reason, user=current_user(), now=venue_now()),
        "Booking cancelled.",
    )


@bp.post("/private-bookings/<int:booking_id>/complete")
@require_permission("private_bookings.edit")
def bookings_complete(booking_id: int):
    return _run(
        booking_id,
        lambda s, b: complete_booking(s, b, user=current_user(), now=venue_now()),
        "Booking completed.",
    )


@bp.post("/private-bookings/<int:booking_id>/discount")
@require_permission("private_bookings.edit")
def bookings_discount(booking_id: int):
    discount_type = (request.form.get("discount_type") or "").strip() or None
    amount = parse_decimal(request.form.get("discount_amount"))
    reason = request.form.get("discount_reason")
    return _run(
        booking_id,
        lambda s, b: apply_booking_discount(
            s, b, discount_type=discount_type, amount=amount, reason=reason, user=current_user()
        ),
        "Discount saved.",
    )


@bp.post("/private-bookings/<int:booking_id>/delete")
@require_permission("private_bookings.delete")
def bookings_delete(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        delete_booking(s, b, user=current_user(), storage=storage_from_config(current_app.config))
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return _detail(booking_id)
    flash("Booking deleted.", "success")
    return redirect(url_for("private_bookings.bookings_list"))


# ─────────────────────────────────────────────────────────────────────────────
# Items
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/private-bookings/<int:booking_id>/items")
@require_permission("private_bookings.edit")
def items_add(booking_id: int):
    payload = {k: request.form.get(k) for k in ITEM_FIELDS}
    return _run(booking_id, lambda s, b: add_item(s, b, payload, user=current_user()), "Item added.")


@bp.post("/private-bookings/<int:booking_id>/items/<int:item_id>/edit")
@require_permission("private_bookings.edit")
def items_edit(booking_id: int, item_id: int):
    s = db_session()
    item = _get_item_or_404(booking_id, item_id)
    try:
        update_item(s, item, {k: request.form.get(k) for k in ITEM_FIELDS}, user=current_user())
        s.commit()
        flash("Item updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return _detail(booking_id)


@bp.post("/private-bookings/<int:booking_id>/items/<int:item_id>/delete")
@require_permission("private_bookings.edit")
def items_delete(booking_id: int, item_id: int):
    s = db_session()
    item = _get_item_or_404(booking_id, item_id)
    try:
        delete_item(s, item, user=current_user())
        s.commit()
        flash("Item removed.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return _detail(booking_id)


@bp.post("/private-bookings/<int:booking_id>/items/reorder")
@require_permission("private_bookings.edit")
def items_reorder(booking_id: int):
    ordered_ids = [int(x) for x in request.form.getlist("item_id") if x.strip().isdigit()]
    return _run(
        booking_id,
        lambda s, b: reorder_items(s, b, ordered_ids, user=current_user()),
        "Item order saved.",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/private-bookings/<int:booking_id>/documents")
@require_permission("private_bookings.edit")
def documents_upload(booking_id: int):
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a file to upload.", "danger")
        return _detail(booking_id)
    data = f.read()
    return _run(
        booking_id,
        lambda s, b: upload_document(
            s,
            b,
            filename=f.filename,
            content_type=f.mimetype,
            data=data,
            document_type=request.form.get("document_type") or "other",
            storage=storage_from_config(current_app.config),
            user=current_user(),
        ),
        "Document uploaded.",
    )


@bp.get("/private-bookings/documents/<int:document_id>/download")
@require_permission("private_bookings.view")
def documents_download(document_id: int):
    s = db_session()
    doc = s.get(PrivateBookingDocument, document_id)
    if not doc:
        abort(404)
    storage = storage_from_config(current_app.config)
    url = storage.download_url(doc.storage_key, filename=doc.original_filename)
    try:
        fobj = None if url else open_document(storage, doc)
    except StorageError as e:
        current_app.logger.error("Document %s unavailable: %s", doc.id, e)
        flash("That file could not be found in storage.", "danger")
        return _detail(doc.booking_id)
    record_event(
        s,
        actor=current_user(),
        action="private_booking.document_download",
        entity_type="PrivateBookingDocument",
        entity_id=str(doc.id),
        metadata={"booking_id": doc.booking_id, "filename": doc.original_filename},
    )
    s.commit()
    if url:
        return redirect(url)
    return send_file(
        fobj,
        mimetype=doc.content_type,
        as_attachment=True,
        download_name=doc.original_filename,
        max_age=0,
    )
