"""
Customer service layer.

Bookings, loyalty and messaging all resolve people through
`ensure_customer_for_phone`: look up by normalized mobile number first and
only create a customer when none exists.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.customers.utils import normalize_phone, phone_variants

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
SMS_FAILURE_DEACTIVATION_THRESHOLD = 3


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def get_customer_by_id(s: Session, customer_id: int) -> Customer | None:
    return s.get(Customer, customer_id)


def find_customer_by_phone(s: Session, phone: str | None) -> Customer | None:
    e164 = normalize_phone(phone)
    if not e164:
        return None
    return (
        s.query(Customer)
        .filter(Customer.mobile_number.in_(phone_variants(e164)))
        .order_by(Customer.id.asc())
        .first()
    )


def ensure_customer_for_phone(
    s: Session,
    phone: str | None,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
) -> Customer:
    """
    Lookup-first resolution of a customer by mobile number.
    A SAVEPOINT guards the insert so a concurrent create falls back to the lookup.
    """
    e164 = normalize_phone(phone)
    if not e164:
        raise ValueError("A mobile number is required to link a customer.")

    existing = find_customer_by_phone(s, e164)
    if existing:
        if email and not existing.email:
            existing.email = email.strip().lower()
        return existing

    try:
        with s.begin_nested():
            c = Customer(
                first_name=(first_name or "").strip() or "Guest",
                last_name=(last_name or "").strip() or None,
                mobile_number=e164,
                email=(email or "").strip().lower() or None,
            )
            s.add(c)
            s.flush()
        return c
    except IntegrityError:
        c = find_customer_by_phone(s, e164)
        if c:
            return c
        raise


def validate_customer_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not (payload.get("first_name") or "").strip():
        errs.append(ValidationError("first_name", "First name is required."))
    phone = (payload.get("mobile_number") or "").strip()
    if phone:
        try:
            normalize_phone(phone)
        except ValueError as e:
            errs.append(ValidationError("mobile_number", str(e)))
    email = (payload.get("email") or "").strip()
    if email and not EMAIL_RE.match(email):
        errs.append(ValidationError("email", "Invalid email format."))
    return errs


def _raise_on_errors(errs: list[ValidationError]) -> None:
    if errs:
        raise ValueError(" ".join(e.message for e in errs))


def create_customer(s: Session, payload: dict[str, Any], *, user: User) -> Customer:
    _raise_on_errors(validate_customer_payload(payload))
    mobile = normalize_phone(payload.get("mobile_number"))
    if mobile and find_customer_by_phone(s, mobile):
        raise ValueError("A customer with this mobile number already exists.")

    c = Customer(
        first_name=(payload.get("first_name") or "").strip(),
        last_name=(payload.get("last_name") or "").strip() or None,
        mobile_number=mobile,
        email=(payload.get("email") or "").strip().lower() or None,
        sms_opt_in=bool(payload.get("sms_opt_in", True)),
        notes=(payload.get("notes") or "").strip() or None,
    )
    s.add(c)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"name": c.full_name, "mobile_number": c.mobile_number},
    )
    return c


def update_customer(s: Session, c: Customer, payload: dict[str, Any], *, user: User, reason: str | None = None) -> Customer:
    _raise_on_errors(validate_customer_payload(payload))
    mobile = normalize_phone(payload.get("mobile_number"))
    if mobile and mobile != c.mobile_number:
        other = find_customer_by_phone(s, mobile)
        if other and other.id != c.id:
            raise ValueError("Another customer already uses this mobile number.")

    before = {
        "first_name": c.first_name,
        "last_name": c.last_name,
        "mobile_number": c.mobile_number,
        "email": c.email,
    }
    c.first_name = (payload.get("first_name") or "").strip()
    c.last_name = (payload.get("last_name") or "").strip() or None
    c.mobile_number = mobile
    c.email = (payload.get("email") or "").strip().lower() or None
    c.notes = (payload.get("notes") or "").strip() or None
    c.updated_at = datetime.utcnow()
    after = {
        "first_name": c.first_name,
        "last_name": c.last_name,
        "mobile_number": c.mobile_number,
        "email": c.email,
    }
    fields_changed = [k for k in before if before[k] != after[k]]
    record_event(
        s,
        actor=user,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        reason=reason,
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return c


def set_sms_opt_in(s: Session, c: Customer, *, opt_in: bool, user: User | None) -> Customer:
    if c.sms_opt_in == opt_in:
        return c
    c.sms_opt_in = opt_in
    if opt_in:
        # Re-subscribing clears a failure-driven deactivation.
        c.sms_delivery_failures = 0
        c.sms_deactivated_at = None
        c.sms_deactivation_reason = None
    c.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="customer.sms_opt_in" if opt_in else "customer.sms_opt_out",
        entity_type="Customer",
        entity_id=str(c.id),
    )
    return c


def record_sms_failure(s: Session, c: Customer, *, reason: str) -> None:
    c.sms_delivery_failures = (c.sms_delivery_failures or 0) + 1
    if c.sms_delivery_failures >= SMS_FAILURE_DEACTIVATION_THRESHOLD and c.sms_deactivated_at is None:
        c.sms_deactivated_at = datetime.utcnow()
        c.sms_deactivation_reason = reason[:255]
        record_event(
            s,
            actor=None,
            action="customer.sms_deactivated",
            entity_type="Customer",
            entity_id=str(c.id),
            reason=reason[:512],
            metadata={"failures": c.sms_delivery_failures},
        )


def search_customers(s: Session, q: str | None, *, limit: int = 50, offset: int = 0) -> tuple[list[Customer], int]:
    query = s.query(Customer)
    q = (q or "").strip()
    if q:
        like = f"%{q}%"
        conds = [
            Customer.first_name.ilike(like),
            Customer.last_name.ilike(like),
            Customer.email.ilike(like),
            Customer.mobile_number.ilike(like),
        ]
        try:
            e164 = normalize_phone(q)
        except ValueError:
            e164 = None
        if e164:
            conds.append(Customer.mobile_number == e164)
        query = query.filter(or_(*conds))
    total = query.count()
    rows = (
        query.order_by(Customer.last_name.asc(), Customer.first_name.asc(), Customer.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total
