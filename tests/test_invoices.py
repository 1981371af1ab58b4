"""Tests for invoices and quotes: totals, numbering, status rules and payments."""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from app.backoffice.db import session_scope
from app.backoffice.modules.invoices.calculations import LineInput, calculate_invoice_totals, parse_lines
from app.backoffice.modules.invoices.models import Invoice, InvoiceSeries, Quote, QuoteLineItem
from app.backoffice.modules.invoices.numbering import format_document_number, next_document_number, to_base36
from app.backoffice.modules.invoices.quotes import (
    change_quote_status,
    convert_quote_to_invoice,
    create_quote,
    delete_quote,
    persist_expired_quotes,
    quote_summary,
    update_quote,
)
from app.backoffice.modules.invoices.service import (
    change_invoice_status,
    create_invoice,
    create_vendor,
    delete_invoice,
    invoice_summary,
    persist_overdue_invoices,
    record_payment,
    send_invoice,
    update_invoice,
)
from app.backoffice.modules.invoices.status import ConcurrentUpdateError, effective_quote_status
from app.backoffice.modules.messaging.models import Message

TODAY = date(2026, 3, 2)
LINES = [
    {"description": "Lager keg", "quantity": "2", "unit_price": "10.00"},
    {"description": "Glass hire", "quantity": "1", "unit_price": "50.00", "discount_percentage": "10", "vat_rate": "0"},
]


@pytest.fixture()
def vendor(db, admin):
    return create_vendor(
        db,
        {"name": "Brewery Ltd", "contact_name": "Jo", "email": "Accounts@Brewery.example", "payment_terms": "14"},
        user=admin,
    )


def _invoice(db, vendor, admin, **kw):
    payload = {"vendor_id": vendor.id, "invoice_discount_percentage": "10"}
    payload.update(kw)
    return create_invoice(db, payload, LINES, user=admin, today=TODAY)


def test_totals_spread_invoice_discount():
    totals = calculate_invoice_totals(parse_lines(LINES), "10")
    assert totals.subtotal == Decimal("70.00")
    assert totals.line_discount == Decimal("5.00")
    assert totals.invoice_discount == Decimal("6.50")
    assert totals.discount == Decimal("11.50")
    assert totals.vat == Decimal("3.60")
    assert totals.total == Decimal("62.10")
    assert [l.net for l in totals.lines] == [Decimal("18.00"), Decimal("40.50")]


def test_totals_round_once():
    lines = [LineInput(description=f"Item {i}", quantity=Decimal("1"), unit_price=Decimal("0.01")) for i in range(3)]
    totals = calculate_invoice_totals(lines)
    assert totals.vat == Decimal("0.01")
    assert totals.total == Decimal("0.04")


def test_line_validation():
    with pytest.raises(ValueError, match="At least one line item"):
        parse_lines([])
    with pytest.raises(ValueError, match="Line 2: quantity"):
        parse_lines([LINES[0], {"description": "Bad", "quantity": "0", "unit_price": "1"}])
    with pytest.raises(ValueError, match="between 0 and 100"):
        calculate_invoice_totals(parse_lines(LINES), "120")


def test_base36_numbering(db):
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"
    assert format_document_number("INV", 1) == "INV-003UX"
    assert next_document_number(db, "INV") == "INV-003UX"
    assert next_document_number(db, "INV") == "INV-003UY"
    assert next_document_number(db, "QTE") == "QTE-003UX"


def test_create_invoice(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    assert inv.invoice_number == "INV-003UX"
    assert inv.status == "draft"
    assert inv.due_date == date(2026, 3, 16)
    assert inv.total_amount == Decimal("62.10")
    assert inv.discount_amount == Decimal("11.50")
    assert len(inv.line_items) == 2

    with pytest.raises(ValueError, match="Due date cannot be before"):
        _invoice(db, vendor, admin, due_date="2026-03-01")
    with pytest.raises(ValueError, match="Vendor is required"):
        create_invoice(db, {}, LINES, user=admin, today=TODAY)


def test_update_only_drafts(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    update_invoice(db, inv, {"vendor_id": vendor.id}, LINES[:1], user=admin)
    assert inv.total_amount == Decimal("24.00")
    assert len(inv.line_items) == 1

    send_invoice(db, inv, user=admin)
    with pytest.raises(ValueError, match="Only draft invoices"):
        update_invoice(db, inv, {"vendor_id": vendor.id}, LINES, user=admin)


def test_send_queues_email(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    send_invoice(db, inv, user=admin)
    assert inv.status == "sent"
    msg = db.query(Message).filter(Message.template_key == "invoice.sent").one()
    assert msg.channel == "email"
    assert msg.recipient == "accounts@brewery.example"
    assert inv.invoice_number in msg.subject
    assert "62.10" in msg.body


def test_status_transitions(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    with pytest.raises(ValueError, match="from draft to paid"):
        change_invoice_status(db, inv, "paid", user=admin)
    change_invoice_status(db, inv, "void", user=admin, reason="Raised in error")
    assert inv.status == "void"
    with pytest.raises(ValueError, match="from void to sent"):
        change_invoice_status(db, inv, "sent", user=admin)


def test_stale_status_change_is_rejected(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    send_invoice(db, inv, user=admin)
    db.execute(
        update(Invoice)
        .where(Invoice.id == inv.id)
        .values(status="void")
        .execution_options(synchronize_session=False)
    )
    assert inv.status == "sent"
    with pytest.raises(ConcurrentUpdateError):
        change_invoice_status(db, inv, "written_off", user=admin)


def test_record_payments(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    with pytest.raises(ValueError, match="against a draft invoice"):
        record_payment(db, inv, amount=Decimal("10"), payment_method="card", payment_date=TODAY, user=admin)
    send_invoice(db, inv, user=admin)

    record_payment(db, inv, amount=Decimal("20"), payment_method="bank_transfer", payment_date=TODAY, user=admin)
    assert inv.status == "partially_paid"
    assert inv.paid_amount == Decimal("20.00")
    assert inv.balance_due == Decimal("42.10")

    with pytest.raises(ValueError, match="exceeds the outstanding balance of £42.10"):
        record_payment(db, inv, amount=Decimal("50"), payment_method="card", payment_date=TODAY, user=admin)
    with pytest.raises(ValueError, match="Payment method must be"):
        record_payment(db, inv, amount=Decimal("1"), payment_method="bitcoin", payment_date=TODAY, user=admin)

    record_payment(db, inv, amount=Decimal("42.10"), payment_method="card", payment_date=TODAY, user=admin)
    assert inv.status == "paid"
    assert len(inv.payments) == 2


def test_persist_overdue(db, admin, vendor):
    inv = _invoice(db, vendor, admin)
    send_invoice(db, inv, user=admin)
    assert persist_overdue_invoices(db, today=date(2026, 3, 16)) == 0
    assert persist_overdue_invoices(db, today=date(2026, 3, 17)) == 1
    assert inv.status == "overdue"

    summary = invoice_summary(db, today=date(2026, 3, 17))
    assert summary.total_overdue == Decimal("62.10")
    assert summary.total_outstanding == Decimal("62.10")
    assert summary.count_draft == 0


def test_delete_only_drafts(db, admin, vendor):
    draft = _invoice(db, vendor, admin)
    delete_invoice(db, draft, user=admin)
    assert draft.deleted_at is not None
    with pytest.raises(ValueError, match="Invoice not found"):
        send_invoice(db, draft, user=admin)

    sent = _invoice(db, vendor, admin)
    send_invoice(db, sent, user=admin)
    with pytest.raises(ValueError, match="Only draft invoices can be deleted"):
        delete_invoice(db, sent, user=admin)


def _quote(db, vendor, admin, **kw):
    payload = {"vendor_id": vendor.id}
    payload.update(kw)
    return create_quote(db, payload, LINES, user=admin, today=TODAY)


def test_quote_defaults_and_numbering(db, admin, vendor):
    q = _quote(db, vendor, admin)
    assert q.quote_number == "QTE-003UX"
    assert q.valid_until == date(2026, 4, 1)
    assert q.total_amount == Decimal("69.00")


def test_quote_conversion(db, admin, vendor):
    q = _quote(db, vendor, admin, quote_discount_percentage="10")
    with pytest.raises(ValueError, match="Only accepted quotes"):
        convert_quote_to_invoice(db, q, user=admin, today=TODAY)

    change_quote_status(db, q, "sent", user=admin)
    change_quote_status(db, q, "accepted", user=admin)
    inv = convert_quote_to_invoice(db, q, user=admin, today=TODAY)

    assert q.converted_to_invoice_id == inv.id
    assert inv.status == "draft"
    assert inv.due_date == date(2026, 4, 1)
    assert inv.total_amount == q.total_amount == Decimal("62.10")
    assert [li.description for li in inv.line_items] == ["Lager keg", "Glass hire"]

    with pytest.raises(ValueError, match="already been converted"):
        convert_quote_to_invoice(db, q, user=admin, today=TODAY)
    with pytest.raises(ValueError, match="Converted quotes"):
        change_quote_status(db, q, "rejected", user=admin)


def test_failed_conversion_leaves_no_invoice(db, admin, vendor):
    first = _invoice(db, vendor, admin)
    assert first.invoice_number == "INV-003UX"

    q = _quote(db, vendor, admin)
    change_quote_status(db, q, "sent", user=admin)
    change_quote_status(db, q, "accepted", user=admin)
    # Another user rejects the quote between our read and the conversion.
    db.execute(
        update(Quote)
        .where(Quote.id == q.id)
        .values(status="rejected")
        .execution_options(synchronize_session=False)
    )
    with pytest.raises(ConcurrentUpdateError, match="could not be finalized"):
        convert_quote_to_invoice(db, q, user=admin, today=TODAY)

    assert db.query(Invoice).count() == 1
    assert db.execute(select(InvoiceSeries.current_sequence).where(InvoiceSeries.series_code == "INV")).scalar_one() == 1
    assert db.execute(select(Quote.converted_to_invoice_id).where(Quote.id == q.id)).scalar_one() is None
    assert _invoice(db, vendor, admin).invoice_number == "INV-003UY"


def test_update_quote_replaces_lines(db, admin, vendor):
    q = _quote(db, vendor, admin)
    update_quote(
        db,
        q,
        {"vendor_id": vendor.id, "reference": "Wedding buffet"},
        [{"description": "Buffet", "quantity": "3", "unit_price": "12.00"}],
        user=admin,
    )
    assert q.reference == "Wedding buffet"
    assert q.total_amount == Decimal("43.20")
    assert [li.description for li in q.line_items] == ["Buffet"]
    assert db.query(QuoteLineItem).filter(QuoteLineItem.quote_id == q.id).count() == 1

    change_quote_status(db, q, "sent", user=admin)
    with pytest.raises(ValueError, match="Only draft quotes can be edited"):
        update_quote(db, q, {"vendor_id": vendor.id}, LINES, user=admin)


def test_stale_quote_update_changes_nothing(db, admin, vendor):
    q = _quote(db, vendor, admin)
    db.execute(
        update(Quote)
        .where(Quote.id == q.id)
        .values(status="sent")
        .execution_options(synchronize_session=False)
    )
    with pytest.raises(ConcurrentUpdateError):
        update_quote(
            db,
            q,
            {"vendor_id": vendor.id, "reference": "Late edit"},
            [{"description": "Buffet", "quantity": "3", "unit_price": "12.00"}],
            user=admin,
        )

    db.refresh(q)
    assert q.status == "sent"
    assert q.reference is None
    assert q.total_amount == Decimal("69.00")
    assert [li.description for li in q.line_items] == ["Lager keg", "Glass hire"]


def test_quote_status_rules(db, admin, vendor):
    q = _quote(db, vendor, admin)
    with pytest.raises(ValueError, match="from draft to accepted"):
        change_quote_status(db, q, "accepted", user=admin)
    change_quote_status(db, q, "sent", user=admin)
    with pytest.raises(ValueError, match="Only draft quotes can be deleted"):
        delete_quote(db, q, user=admin)

    draft = _quote(db, vendor, admin)
    delete_quote(db, draft, user=admin)
    assert draft.deleted_at is not None


def test_quote_expiry(db, admin, vendor):
    q = _quote(db, vendor, admin, valid_until="2026-03-10")
    change_quote_status(db, q, "sent", user=admin)
    assert effective_quote_status(q.status, q.valid_until, date(2026, 3, 11)) == "expired"
    assert quote_summary(db, today=date(2026, 3, 11)).total_expired == Decimal("69.00")

    assert persist_expired_quotes(db, today=date(2026, 3, 10)) == 0
    assert persist_expired_quotes(db, today=date(2026, 3, 11)) == 1
    assert q.status == "expired"


def test_http_create_invoice(app, admin_client):
    with session_scope(app) as s:
        vendor_id = create_vendor(s, {"name": "Linen Co"}, user=None).id
    resp = admin_client.post(
        "/admin/invoices/new",
        data={
            "csrf_token": "t",
            "vendor_id": str(vendor_id),
            "invoice_date": "2026-03-02",
            "line_description": ["Napkins", ""],
            "line_quantity": ["100", ""],
            "line_unit_price": ["0.50", ""],
            "line_vat_rate": ["20", ""],
        },
    )
    assert resp.status_code == 302
    with session_scope(app) as s:
        inv = s.query(Invoice).one()
        assert inv.total_amount == Decimal("60.00")
        assert inv.due_date == date(2026, 4, 1)
        assert s.query(Quote).count() == 0
