from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.utils import current_user

from .models import Customer
from .service import create_customer, search_customers, set_sms_opt_in, update_customer

bp = Blueprint("customers", __name__)

PER_PAGE = 50


def _payload_from_form() -> dict:
    return {
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "mobile_number": request.form.get("mobile_number"),
        "email": request.form.get("email"),
        "notes": request.form.get("notes"),
        "sms_opt_in": request.form.get("sms_opt_in", "1") == "1",
    }


@bp.get("/customers")
@require_permission("customers.view")
def customers_list():
    s = db_session()
    q = (request.args.get("q") or "").strip()
    page = max(request.args.get("page", 1, type=int), 1)
    customers, total = search_customers(s, q, limit=PER_PAGE, offset=(page - 1) * PER_PAGE)
    total_pages = max((total + PER_PAGE - 1) // PER_PAGE, 1)
    return render_template(
        "admin/customers/list.html",
        customers=customers,
        q=q,
        page=page,
        total=total,
        total_pages=total_pages,
    )


@bp.get("/customers/new")
@require_permission("customers.create")
def customers_new_get():
    return render_template("admin/customers/edit.html", customer=None)


@bp.post("/customers/new")
@require_permission("customers.create")
def customers_new_post():
    s = db_session()
    try:
        c = create_customer(s, _payload_from_form(), user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("customers.customers_new_get"))
    flash(f"Customer {c.full_name} created.", "success")
    return redirect(url_for("customers.customers_detail", customer_id=c.id))


@bp.get("/customers/<int:customer_id>")
@require_permission("customers.view")
def customers_detail(customer_id: int):
    from app.backoffice.modules.private_bookings.models import PrivateBooking
    from app.backoffice.modules.table_bookings.models import TableBooking

    s = db_session()
    c = s.get(Customer, customer_id)
    if not c:
        abort(404)
    table_bookings = (
        s.query(TableBooking)
        .filter(TableBooking.customer_id == c.id)
        .order_by(TableBooking.booking_date.desc())
        .limit(20)
        .all()
    )
    private_bookings = (
        s.query(PrivateBooking)
        .filter(PrivateBooking.customer_id == c.id)
        .order_by(PrivateBooking.event_date.desc())
        .limit(20)
        .all()
    )
    return render_template(
        "admin/customers/detail.html",
        customer=c,
        table_bookings=table_bookings,
        private_bookings=private_bookings,
    )


@bp.post("/customers/<int:customer_id>/edit")
@require_permission("customers.edit")
def customers_edit_post(customer_id: int):
    s = db_session()
    c = s.get(Customer, customer_id)
    if not c:
        abort(404)
    try:
        update_customer(s, c, _payload_from_form(), user=current_user(), reason=request.form.get("reason"))
        s.commit()
        flash("Customer updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("customers.customers_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/sms")
@require_permission("customers.edit")
def customers_sms_toggle(customer_id: int):
    s = db_session()
    c = s.get(Customer, customer_id)
    if not c:
        abort(404)
    opt_in = request.form.get("sms_opt_in") == "1"
    set_sms_opt_in(s, c, opt_in=opt_in, user=current_user())
    s.commit()
    flash("SMS preference updated.", "success")
    return redirect(url_for("customers.customers_detail", customer_id=customer_id))
