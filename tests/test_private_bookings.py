"""Tests for private bookings: holds, deposits, items and documents."""
from datetime import date, datetime
from decimal import Decimal

import pytest

from app.backoffice.db import session_scope
from app.backoffice.modules.messaging.models import Message
from app.backoffice.modules.private_bookings.models import PrivateBooking
from app.backoffice.modules.private_bookings.service import (
    HOLD_EXPIRED_REASON,
    add_item,
    apply_booking_discount,
    booking_totals,
    calculate_hold_expiry,
    calculate_item_total,
    cancel_booking,
    complete_booking,
    create_booking,
    delete_booking,
    delete_item,
    expire_overdue_holds,
    extend_hold,
    record_deposit,
    record_final_payment,
    reorder_items,
    update_booking,
    upload_document,
)
from app.backoffice.storage import LocalStorage, StorageError

NOW = datetime(2026, 3, 2, 10, 0)


def _payload(**kw):
    data = {
        "customer_first_name": "Sam",
        "customer_last_name": "Taylor",
        "contact_phone": "07700 900123",
        "event_date": "2026-05-01",
        "start_time": "18:00",
        "end_time": "23:00",
        "guest_count": "40",
        "event_type": "Birthday",
    }
    data.update(kw)
    return data


@pytest.mark.parametrize(
    "event_date,expected",
    [
        (date(2026, 5, 1), datetime(2026, 3, 16, 10, 0)),
        (date(2026, 3, 20), datetime(2026, 3, 13, 0, 0)),
        (date(2026, 3, 5), datetime(2026, 3, 4, 10, 0)),
        (date(2026, 3, 3), datetime(2026, 3, 3, 0, 0)),
    ],
)
def test_hold_expiry(event_date, expected):
    assert calculate_hold_expiry(NOW, event_date) == expected


def test_requested_hold_expiry_is_capped():
    requested = datetime(2026, 4, 30, 23, 59)
    assert calculate_hold_expiry(NOW, date(2026, 5, 1), requested) == datetime(2026, 4, 24, 0, 0)


def test_create_links_customer_and_queues_enquiry(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    assert b.status == "draft"
    assert b.customer_id == customer.id
    assert b.contact_phone == "+447700900123"
    assert b.deposit_amount == Decimal("250.00")
    assert b.balance_due_date == date(2026, 4, 24)
    assert b.hold_expiry == datetime(2026, 3, 16, 10, 0)

    msg = db.query(Message).filter(Message.related_entity_id == str(b.id)).one()
    assert msg.template_key == "private_booking.enquiry"
    assert "£250.00" in msg.body


def test_create_validation(db, admin):
    with pytest.raises(ValueError, match="first name"):
        create_booking(db, _payload(customer_first_name=""), user=admin, now=NOW)
    with pytest.raises(ValueError, match="in the past"):
        create_booking(db, _payload(event_date="2026-03-01"), user=admin, now=NOW)
    with pytest.raises(ValueError, match="contact phone"):
        create_booking(db, _payload(contact_phone=""), user=admin, now=NOW)
    with pytest.raises(ValueError, match="Guest count"):
        create_booking(db, _payload(guest_count="0"), user=admin, now=NOW)


def test_create_makes_new_customer_for_unknown_phone(db, admin):
    b = create_booking(db, _payload(contact_phone="07700 900456", customer_first_name="Priya"), user=admin, now=NOW)
    assert b.customer is not None
    assert b.customer.first_name == "Priya"
    assert b.customer.mobile_number == "+447700900456"


def test_extend_hold(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    extend_hold(db, b, days=7, user=admin, now=NOW)
    assert b.hold_expiry == datetime(2026, 3, 23, 10, 0)
    assert db.query(Message).filter(Message.template_key == "private_booking.hold_extended").count() == 1

    with pytest.raises(ValueError, match="extended by 7, 14, 30"):
        extend_hold(db, b, days=5, user=admin, now=NOW)


def test_extend_hold_stops_at_deposit_cutoff(db, admin, customer):
    b = create_booking(db, _payload(event_date="2026-03-20"), user=admin, now=NOW)
    assert b.hold_expiry == datetime(2026, 3, 13, 0, 0)
    with pytest.raises(ValueError, match="7 days before the event"):
        extend_hold(db, b, days=7, user=admin, now=NOW)


def test_expire_overdue_holds(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    confirmed = create_booking(db, _payload(event_date="2026-05-02"), user=admin, now=NOW)
    record_deposit(db, confirmed, amount=Decimal("250"), method="card", user=admin, now=NOW)
    db.flush()

    assert expire_overdue_holds(db, now=datetime(2026, 3, 10)) == []
    expired = expire_overdue_holds(db, now=datetime(2026, 3, 17))
    assert expired == [b.id]
    assert b.status == "cancelled"
    assert b.cancellation_reason == HOLD_EXPIRED_REASON
    assert confirmed.status == "confirmed"
    assert db.query(Message).filter(Message.template_key == "private_booking.hold_expired").count() == 1


def test_deposit_confirms_once(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    with pytest.raises(ValueError, match="Payment method"):
        record_deposit(db, b, amount=Decimal("250"), method="", user=admin, now=NOW)
    record_deposit(db, b, amount=Decimal("300"), method="bank transfer", user=admin, now=NOW)
    assert b.status == "confirmed"
    assert b.deposit_amount == Decimal("300.00")
    with pytest.raises(ValueError, match="already been recorded"):
        record_deposit(db, b, amount=Decimal("300"), method="card", user=admin, now=NOW)
    with pytest.raises(ValueError, match="Only draft"):
        extend_hold(db, b, days=7, user=admin, now=NOW)


def test_item_total_discounts():
    assert calculate_item_total(Decimal("30"), Decimal("12.50"), "percent", Decimal("10")) == Decimal("337.50")
    assert calculate_item_total(Decimal("1"), Decimal("50"), "fixed", Decimal("80")) == Decimal("0.00")
    assert calculate_item_total(Decimal("2"), Decimal("9.99")) == Decimal("19.98")


def test_totals_keep_deposit_separate(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    add_item(db, b, {"item_type": "space", "description": "Function room", "unit_price": "200"}, user=admin)
    add_item(
        db,
        b,
        {
            "item_type": "catering",
            "description": "Buffet",
            "quantity": "30",
            "unit_price": "12.50",
            "discount_type": "percent",
            "discount_value": "10",
        },
        user=admin,
    )
    with pytest.raises(ValueError, match="reason is required"):
        apply_booking_discount(db, b, discount_type="fixed", amount=Decimal("37.50"), reason="", user=admin)
    apply_booking_discount(db, b, discount_type="fixed", amount=Decimal("37.50"), reason="Regulars", user=admin)
    record_deposit(db, b, amount=Decimal("250"), method="card", user=admin, now=NOW)

    totals = booking_totals(b)
    assert totals.items_subtotal == Decimal("537.50")
    assert totals.discount == Decimal("37.50")
    assert totals.total == Decimal("500.00")
    assert totals.deposit_paid == Decimal("250.00")
    assert totals.balance_outstanding == Decimal("500.00")

    record_final_payment(db, b, method="card", user=admin, now=NOW)
    assert booking_totals(b).balance_outstanding == Decimal("0.00")


def test_items_reorder_and_delete(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    first = add_item(db, b, {"item_type": "space", "description": "Room", "unit_price": "100"}, user=admin)
    second = add_item(db, b, {"item_type": "vendor", "description": "DJ", "unit_price": "250"}, user=admin)
    assert (first.display_order, second.display_order) == (0, 1)

    with pytest.raises(ValueError, match="does not match"):
        reorder_items(db, b, [first.id], user=admin)
    reorder_items(db, b, [second.id, first.id], user=admin)
    assert (first.display_order, second.display_order) == (1, 0)

    delete_item(db, first, user=admin)
    assert [i.description for i in b.items] == ["DJ"]

    with pytest.raises(ValueError, match="Item type"):
        add_item(db, b, {"item_type": "drinks", "description": "Bar", "unit_price": "1"}, user=admin)


def test_cancel_and_complete(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    cancel_booking(db, b, reason="", user=admin, now=NOW)
    assert b.status == "cancelled"
    assert b.cancellation_reason == "Cancelled by staff"
    with pytest.raises(ValueError, match="cannot be cancelled"):
        cancel_booking(db, b, reason=None, user=admin, now=NOW)
    with pytest.raises(ValueError, match="Cannot edit"):
        update_booking(db, b, _payload(), user=admin, now=NOW)

    c = create_booking(db, _payload(event_date="2026-03-04"), user=admin, now=NOW)
    with pytest.raises(ValueError, match="'draft' to 'completed'"):
        complete_booking(db, c, user=admin, now=NOW)
    record_deposit(db, c, amount=Decimal("250"), method="card", user=admin, now=NOW)
    with pytest.raises(ValueError, match="before the event date"):
        complete_booking(db, c, user=admin, now=NOW)
    complete_booking(db, c, user=admin, now=datetime(2026, 3, 5, 9, 0))
    assert c.status == "completed"


def test_update_moves_hold_with_event_date(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    update_booking(db, b, _payload(event_date="2026-03-20"), user=admin, now=NOW)
    assert b.event_date == date(2026, 3, 20)
    assert b.balance_due_date == date(2026, 3, 13)
    assert b.hold_expiry == datetime(2026, 3, 13, 0, 0)


def test_documents_upload_and_delete(db, admin, customer, tmp_path):
    storage = LocalStorage(tmp_path)
    b = create_booking(db, _payload(), user=admin, now=NOW)
    doc = upload_document(
        db,
        b,
        filename="../floor plan.pdf",
        content_type="application/pdf",
        data=b"%PDF-1.4",
        document_type="floor_plan",
        storage=storage,
        user=admin,
    )
    assert doc.original_filename == "floor_plan.pdf"
    assert storage.exists(doc.storage_key)
    with pytest.raises(ValueError, match="already been uploaded"):
        upload_document(
            db,
            b,
            filename="floor plan.pdf",
            content_type="application/pdf",
            data=b"%PDF-1.4",
            document_type="floor_plan",
            storage=storage,
            user=admin,
        )

    key = doc.storage_key
    booking_id = b.id
    delete_booking(db, b, user=admin, storage=storage)
    assert db.get(PrivateBooking, booking_id) is None
    assert not storage.exists(key)


def test_local_storage_keys_stay_under_root(tmp_path):
    storage = LocalStorage(tmp_path / "docs")
    with pytest.raises(StorageError, match="escapes root"):
        storage.put_bytes("../outside.txt", b"x")
    with pytest.raises(StorageError, match="missing"):
        storage.open("private-bookings/1/gone.pdf")
    assert storage.download_url("private-bookings/1/gone.pdf", filename="gone.pdf") is None


def test_confirmed_booking_cannot_be_deleted(db, admin, customer):
    b = create_booking(db, _payload(), user=admin, now=NOW)
    record_deposit(db, b, amount=Decimal("250"), method="card", user=admin, now=NOW)
    with pytest.raises(ValueError, match="Only draft or cancelled"):
        delete_booking(db, b, user=admin)


def test_http_create_private_booking(app, admin_client):
    resp = admin_client.post(
        "/admin/private-bookings/new",
        data={**_payload(event_date="2027-05-01"), "csrf_token": "t"},
    )
    assert resp.status_code == 302
    with session_scope(app) as s:
        b = s.query(PrivateBooking).one()
        assert b.customer_first_name == "Sam"
        assert b.status == "draft"
