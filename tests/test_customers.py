"""Tests for customer records and phone normalization."""
import pytest

from app.backoffice.db import session_scope
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.customers.service import (
    create_customer,
    ensure_customer_for_phone,
    find_customer_by_phone,
    record_sms_failure,
    search_customers,
    set_sms_opt_in,
    update_customer,
)
from app.backoffice.modules.customers.utils import mask_phone, normalize_phone


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("07700 900123", "+447700900123"),
        ("+44 (0)7700 900123", "+447700900123"),
        ("0044 7700 900123", "+447700900123"),
        ("447700900123", "+447700900123"),
        ("+1 415 555 0100", "+14155550100"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_phone_rejects_garbage():
    with pytest.raises(ValueError, match="Invalid phone number"):
        normalize_phone("call me")


def test_mask_phone():
    assert mask_phone("+447700900123") == "+447******123"
    assert mask_phone(None) == ""


def test_create_rejects_duplicate_mobile(db, admin, customer):
    with pytest.raises(ValueError, match="already exists"):
        create_customer(db, {"first_name": "Alex", "mobile_number": "07700900123"}, user=admin)
    with pytest.raises(ValueError, match="First name is required. Invalid email format."):
        create_customer(db, {"first_name": "", "email": "nope"}, user=admin)


def test_find_matches_legacy_formats(db, admin):
    legacy = Customer(first_name="Old", mobile_number="07700900777")
    db.add(legacy)
    db.flush()
    assert find_customer_by_phone(db, "+44 7700 900777").id == legacy.id


def test_ensure_customer_for_phone(db, customer):
    assert ensure_customer_for_phone(db, "07700 900123", email="other@example.com").id == customer.id
    assert customer.email == "sam@example.com"

    created = ensure_customer_for_phone(db, "07700 900456", first_name=" ", email="New@Example.com")
    assert created.first_name == "Guest"
    assert created.email == "new@example.com"
    with pytest.raises(ValueError, match="mobile number is required"):
        ensure_customer_for_phone(db, "")


def test_update_customer(db, admin, customer):
    other = create_customer(db, {"first_name": "Jo", "mobile_number": "07700 900999"}, user=admin)
    with pytest.raises(ValueError, match="Another customer"):
        update_customer(db, other, {"first_name": "Jo", "mobile_number": "07700 900123"}, user=admin)
    update_customer(db, customer, {"first_name": "Samantha", "mobile_number": "07700 900123"}, user=admin)
    assert customer.full_name.startswith("Samantha")


def test_opt_in_clears_failure_deactivation(db, admin, customer):
    for _ in range(3):
        record_sms_failure(db, customer, reason="Unreachable")
    assert not customer.can_receive_sms

    set_sms_opt_in(db, customer, opt_in=False, user=admin)
    set_sms_opt_in(db, customer, opt_in=True, user=admin)
    assert customer.sms_delivery_failures == 0
    assert customer.can_receive_sms


def test_search(db, admin, customer):
    create_customer(db, {"first_name": "Priya", "last_name": "Shah"}, user=admin)
    rows, total = search_customers(db, "shah")
    assert total == 1
    assert rows[0].first_name == "Priya"
    rows, total = search_customers(db, "07700 900123")
    assert [c.id for c in rows] == [customer.id]


def test_http_create_customer(app, admin_client):
    resp = admin_client.post(
        "/admin/customers/new",
        data={"csrf_token": "t", "first_name": "Alex", "mobile_number": "07700 900321"},
    )
    assert resp.status_code == 302
    with session_scope(app) as s:
        c = s.query(Customer).filter(Customer.first_name == "Alex").one()
        assert c.mobile_number == "+447700900321"
