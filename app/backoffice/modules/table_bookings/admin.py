from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.modules.customers.service import ensure_customer_for_phone
from app.backoffice.rbac import require_permission
from app.backoffice.utils import current_user, parse_date, parse_decimal, parse_int, parse_time, venue_now, venue_today

from .models import TableBooking, VenueTable
from .policy import BOOKING_TYPES
from .service import (
    POLICY_FIELDS,
    VALID_STATUSES,
    assign_tables,
    calculate_booking_refund,
    cancel_booking,
    check_availability,
    create_booking,
    create_table,
    delete_booking,
    delete_table,
    get_policy,
    mark_completed,
    mark_no_show,
    record_payment,
    update_booking,
    update_booking_policy,
    update_table,
)

bp = Blueprint("table_bookings", __name__)


def _get_booking_or_404(booking_id: int) -> TableBooking:
    b = db_session().get(TableBooking, booking_id)
    if not b:
        abort(404)
    return b


def _items_from_form() -> list[dict]:
    names = request.form.getlist("item_name")
    types = request.form.getlist("item_type")
    quantities = request.form.getlist("item_quantity")
    prices = request.form.getlist("item_price")
    guests = request.form.getlist("item_guest")
    items = []
    for i, name in enumerate(names):
        if not (name or "").strip():
            continue
        items.append(
            {
                "custom_item_name": name,
                "item_type": types[i] if i < len(types) else "main",
                "quantity": quantities[i] if i < len(quantities) else 1,
                "price_at_booking": prices[i] if i < len(prices) else 0,
                "guest_name": guests[i] if i < len(guests) else None,
            }
        )
    return items


# ─────────────────────────────────────────────────────────────────────────────
# Bookings
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/table-bookings")
@require_permission("table_bookings.view")
def bookings_list():
    s = db_session()
    day = parse_date(request.args.get("date")) or venue_today()
    status = (request.args.get("status") or "").strip()
    q = s.query(TableBooking).filter(TableBooking.booking_date == day)
    if status in VALID_STATUSES:
        q = q.filter(TableBooking.status == status)
    bookings = q.order_by(TableBooking.booking_time.asc(), TableBooking.id.asc()).all()
    covers = sum(b.party_size for b in bookings if b.status in ("confirmed", "pending_payment"))
    return render_template(
        "admin/table_bookings/list.html",
        bookings=bookings,
        day=day,
        status=status,
        statuses=sorted(VALID_STATUSES),
        covers=covers,
    )


@bp.get("/table-bookings/new")
@require_permission("table_bookings.create")
def bookings_new_get():
    return render_template("admin/table_bookings/new.html", booking_types=BOOKING_TYPES)


@bp.post("/table-bookings/new")
@require_permission("table_bookings.create")
def bookings_new_post():
    s = db_session()
    u = current_user()
    try:
        booking_date = parse_date(request.form.get("booking_date"))
        booking_time = parse_time(request.form.get("booking_time"))
        party_size = parse_int(request.form.get("party_size"))
        if not booking_date or not booking_time or party_size is None:
            raise ValueError("Date, time and party size are required.")
        customer = ensure_customer_for_phone(
            s,
            request.form.get("mobile_number") or "",
            first_name=request.form.get("first_name"),
            last_name=request.form.get("last_name"),
            email=request.form.get("email"),
        )
        b = create_booking(
            s,
            customer=customer,
            booking_date=booking_date,
            booking_time=booking_time,
            party_size=party_size,
            booking_type=request.form.get("booking_type") or "regular",
            duration_minutes=parse_int(request.form.get("duration_minutes")) or 120,
            special_requirements=request.form.get("special_requirements"),
            dietary_requirements=request.form.get("dietary_requirements"),
            allergies=request.form.get("allergies"),
            celebration_type=request.form.get("celebration_type"),
            source=request.form.get("source") or "phone",
            items=_items_from_form(),
            user=u,
            now=venue_now(),
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("table_bookings.bookings_new_get"))
    flash(f"Booking {b.booking_reference} created.", "success")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=b.id))


@bp.get("/table-bookings/availability")
@require_permission("table_bookings.view")
def bookings_availability():
    s = db_session()
    booking_date = parse_date(request.args.get("date"))
    booking_time = parse_time(request.args.get("time"))
    party_size = parse_int(request.args.get("party_size")) or 1
    if not booking_date or not booking_time:
        return {"error": "date and time are required"}, 400
    a = check_availability(
        s,
        booking_date=booking_date,
        booking_time=booking_time,
        party_size=party_size,
        duration_minutes=parse_int(request.args.get("duration_minutes")) or 120,
    )
    return {
        "total_capacity": a.total_capacity,
        "booked_covers": a.booked_covers,
        "available_capacity": a.available_capacity,
        "is_available": a.is_available,
    }


@bp.get("/table-bookings/<int:booking_id>")
@require_permission("table_bookings.view")
def bookings_detail(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    tables = s.query(VenueTable).filter(VenueTable.is_active.is_(True)).order_by(VenueTable.table_number.asc()).all()
    refund_preview = None
    if b.status in ("confirmed", "pending_payment"):
        refund_preview = calculate_booking_refund(s, b, now=venue_now())
    return render_template(
        "admin/table_bookings/detail.html",
        booking=b,
        tables=tables,
        refund_preview=refund_preview,
    )


@bp.post("/table-bookings/<int:booking_id>/edit")
@require_permission("table_bookings.edit")
def bookings_edit(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        booking_date = parse_date(request.form.get("booking_date"))
        booking_time = parse_time(request.form.get("booking_time"))
        party_size = parse_int(request.form.get("party_size"))
        if not booking_date or not booking_time or party_size is None:
            raise ValueError("Date, time and party size are required.")
        update_booking(
            s,
            b,
            booking_date=booking_date,
            booking_time=booking_time,
            party_size=party_size,
            duration_minutes=parse_int(request.form.get("duration_minutes")),
            special_requirements=request.form.get("special_requirements"),
            dietary_requirements=request.form.get("dietary_requirements"),
            allergies=request.form.get("allergies"),
            user=current_user(),
            now=venue_now(),
        )
        s.commit()
        flash("Booking updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))


@bp.post("/table-bookings/<int:booking_id>/tables")
@require_permission("table_bookings.edit")
def bookings_assign_tables(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        table_ids = [int(x) for x in request.form.getlist("table_id") if x.strip()]
        assign_tables(s, b, table_ids, user=current_user())
        s.commit()
        flash("Tables assigned.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))


@bp.post("/table-bookings/<int:booking_id>/payment")
@require_permission("table_bookings.edit")
def bookings_payment(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        amount = parse_decimal(request.form.get("amount"))
        if amount is None:
            raise ValueError("Payment amount is required.")
        record_payment(
            s,
            b,
            amount=amount,
            payment_method=request.form.get("payment_method") or "card",
            transaction_id=request.form.get("transaction_id"),
            user=current_user(),
            now=venue_now(),
        )
        s.commit()
        flash("Payment recorded.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))


@bp.post("/table-bookings/<int:booking_id>/cancel")
@require_permission("table_bookings.edit")
def bookings_cancel(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    try:
        decision = cancel_booking(s, b, reason=request.form.get("reason"), user=current_user(), now=venue_now())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))
    flash(f"Booking cancelled. {decision.reason} (£{decision.refund_amount:.2f}).", "success")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))


@bp.post("/table-bookings/<int:booking_id>/status")
@require_permission("table_bookings.edit")
def bookings_status(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    action = (request.form.get("action") or "").strip()
    try:
        if action == "no_show":
            mark_no_show(s, b, user=current_user(), now=venue_now())
        elif action == "completed":
            mark_completed(s, b, user=current_user(), now=venue_now())
        else:
            raise ValueError(f"Unknown action: {action}")
        s.commit()
        flash("Booking status updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))


@bp.post("/table-bookings/<int:booking_id>/delete")
@require_permission("table_bookings.delete")
def bookings_delete(booking_id: int):
    s = db_session()
    b = _get_booking_or_404(booking_id)
    day = b.booking_date
    try:
        delete_booking(s, b, user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("table_bookings.bookings_detail", booking_id=booking_id))
    flash("Booking deleted.", "success")
    return redirect(url_for("table_bookings.bookings_list", date=day.isoformat()))


# ─────────────────────────────────────────────────────────────────────────────
# Tables + policies
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/table-bookings/tables")
@require_permission("table_bookings.manage")
def tables_list():
    s = db_session()
    tables = s.query(VenueTable).order_by(VenueTable.table_number.asc()).all()
    policies = {t: get_policy(s, t) for t in BOOKING_TYPES}
    return render_template(
        "admin/table_bookings/tables.html",
        tables=tables,
        policies=policies,
        policy_fields=POLICY_FIELDS,
    )


@bp.post("/table-bookings/tables/new")
@require_permission("table_bookings.manage")
def tables_new():
    s = db_session()
    try:
        create_table(
            s,
            table_number=request.form.get("table_number") or "",
            capacity=parse_int(request.form.get("capacity")),
            notes=request.form.get("notes"),
            user=current_user(),
        )
        s.commit()
        flash("Table added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.tables_list"))


@bp.post("/table-bookings/tables/<int:table_id>/edit")
@require_permission("table_bookings.manage")
def tables_edit(table_id: int):
    s = db_session()
    t = s.get(VenueTable, table_id)
    if not t:
        abort(404)
    try:
        update_table(
            s,
            t,
            table_number=request.form.get("table_number") or "",
            capacity=parse_int(request.form.get("capacity")),
            notes=request.form.get("notes"),
            is_active=request.form.get("is_active", "1") == "1",
            user=current_user(),
        )
        s.commit()
        flash("Table updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.tables_list"))


@bp.post("/table-bookings/tables/<int:table_id>/delete")
@require_permission("table_bookings.manage")
def tables_delete(table_id: int):
    s = db_session()
    t = s.get(VenueTable, table_id)
    if not t:
        abort(404)
    try:
        delete_table(s, t, user=current_user(), today=venue_today())
        s.commit()
        flash("Table deleted.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.tables_list"))


@bp.post("/table-bookings/policies/<booking_type>")
@require_permission("settings.manage")
def policies_save(booking_type: str):
    s = db_session()
    payload = {k: request.form.get(k) for k in POLICY_FIELDS}
    payload["modification_allowed"] = request.form.get("modification_allowed", "1") == "1"
    payload["cancellation_fee"] = request.form.get("cancellation_fee")
    try:
        update_booking_policy(s, booking_type, payload, user=current_user())
        s.commit()
        flash("Booking policy saved.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("table_bookings.tables_list"))
