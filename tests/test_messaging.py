"""Tests for the message queue: suppression, dispatch, send limits and templates."""
from datetime import datetime, timedelta

import pytest

from app.backoffice.modules.customers.service import set_sms_opt_in
from app.backoffice.modules.messaging.clients import TwilioError
from app.backoffice.modules.messaging.models import Message
from app.backoffice.modules.messaging.safety import SendLimits, build_dedupe_key
from app.backoffice.modules.messaging.service import (
    cancel_message,
    dispatch_due_messages,
    preview_template,
    queue_email,
    queue_sms,
    queue_templated_sms,
    template_catalog,
    upsert_template,
)
from app.backoffice.modules.messaging.templates import render_message

NOW = datetime(2026, 3, 2, 12, 0)


class FakeSms:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_sms(self, to, body):
        if self.fail:
            raise TwilioError("HTTP 400 from Twilio: unreachable")
        self.sent.append((to, body))
        return f"SM{len(self.sent)}"


class FakeEmail:
    def __init__(self):
        self.sent = []

    def send_email(self, to, subject, body):
        self.sent.append((to, subject, body))
        return f"<{len(self.sent)}@test>"


def _welcome(db, customer, **kw):
    return queue_templated_sms(
        db,
        "loyalty.welcome",
        customer=customer,
        context={"points": 50},
        dedupe_context=kw.pop("dedupe_context", {"member_id": 1}),
        now=kw.pop("now", NOW),
        **kw,
    )


def test_dedupe_key_is_order_independent():
    a = build_dedupe_key("t", "+447700900123", {"a": 1, "b": 2})
    b = build_dedupe_key("t", "+447700900123", {"b": 2, "a": 1})
    assert a == b
    assert a.startswith("sms:")
    day1 = build_dedupe_key("t", "+447700900123", now=NOW)
    day2 = build_dedupe_key("t", "+447700900123", now=NOW + timedelta(days=1))
    assert day1 != day2


def test_templated_sms_renders_context(db, customer):
    msg = _welcome(db, customer)
    assert msg.status == "queued"
    assert msg.recipient == "+447700900123"
    assert msg.body.startswith("Welcome to ")
    assert "Sam" in msg.body
    assert "50 welcome points" in msg.body


def test_duplicate_is_suppressed(db, customer):
    first = _welcome(db, customer)
    second = _welcome(db, customer, now=NOW + timedelta(hours=2))
    assert first.status == "queued"
    assert second.status == "suppressed"
    assert second.status_reason == "duplicate"

    other = _welcome(db, customer, dedupe_context={"member_id": 2})
    assert other.status == "queued"

    much_later = _welcome(db, customer, now=NOW + timedelta(days=15))
    assert much_later.status == "queued"


def test_opted_out_customer_is_suppressed(db, admin, customer):
    set_sms_opt_in(db, customer, opt_in=False, user=admin)
    msg = _welcome(db, customer)
    assert msg.status == "suppressed"
    assert msg.status_reason == "customer_opted_out"


def test_queue_validation(db):
    with pytest.raises(ValueError, match="mobile number is required"):
        queue_sms(db, to="", body="Hello")
    with pytest.raises(ValueError, match="body is required"):
        queue_sms(db, to="07700 900123", body="  ")
    with pytest.raises(ValueError, match="at most 1600"):
        queue_sms(db, to="07700 900123", body="x" * 1601)
    with pytest.raises(ValueError, match="valid email"):
        queue_email(db, to="nobody", subject="Hi", body="Hello")


def test_dispatch_sends_due_messages(db, customer):
    sms = FakeSms()
    email = FakeEmail()
    _welcome(db, customer)
    queue_sms(db, to="07700 900999", body="Later", scheduled_for=NOW + timedelta(hours=1), now=NOW)
    queue_email(db, to="accounts@example.com", subject="Invoice", body="Attached")

    result = dispatch_due_messages(db, sms_client=sms, email_client=email, now=NOW)
    assert (result.sent, result.failed, result.deferred) == (2, 0, 0)
    assert sms.sent[0][0] == "+447700900123"
    assert email.sent == [("accounts@example.com", "Invoice", "Attached")]

    sent = db.query(Message).filter(Message.status == "sent").all()
    assert {m.provider_message_id for m in sent} == {"SM1", "<1@test>"}
    assert all(m.sent_at == NOW for m in sent)
    assert db.query(Message).filter(Message.status == "queued").count() == 1


def test_dispatch_without_clients_leaves_rows_queued(db, customer):
    _welcome(db, customer)
    queue_email(db, to="accounts@example.com", subject="Invoice", body="Attached")
    result = dispatch_due_messages(db, sms_client=None, email_client=None, now=NOW)
    assert result.sent == 0
    assert result.skipped_channels == {"sms", "email"}
    assert db.query(Message).filter(Message.status == "queued").count() == 2


def test_repeated_failures_deactivate_sms(db, customer):
    for i in range(3):
        _welcome(db, customer, dedupe_context={"member_id": i})
    result = dispatch_due_messages(db, sms_client=FakeSms(fail=True), email_client=None, now=NOW)
    assert result.failed == 3
    failed = db.query(Message).filter(Message.status == "failed").first()
    assert "unreachable" in failed.error_message
    assert customer.sms_delivery_failures == 3
    assert customer.sms_deactivated_at is not None
    assert not customer.can_receive_sms

    assert _welcome(db, customer, dedupe_context={"member_id": 99}).status == "suppressed"


def test_recipient_limit_defers(db, customer):
    for i in range(3):
        _welcome(db, customer, dedupe_context={"member_id": i})
    limits = SendLimits(global_hourly=100, recipient_hourly=2, recipient_daily=10)
    result = dispatch_due_messages(db, sms_client=FakeSms(), email_client=None, limits=limits, now=NOW)
    assert (result.sent, result.deferred) == (2, 1)
    held = db.query(Message).filter(Message.status == "queued").one()
    assert held.status_reason == "deferred:recipient_hourly"

    later = dispatch_due_messages(db, sms_client=FakeSms(), email_client=None, limits=limits, now=NOW + timedelta(hours=2))
    assert later.sent == 1


def test_global_limit_stops_run(db):
    for n in range(3):
        queue_sms(db, to=f"07700 90010{n}", body="Quiz tonight", now=NOW)
    limits = SendLimits(global_hourly=1)
    result = dispatch_due_messages(db, sms_client=FakeSms(), email_client=None, limits=limits, now=NOW)
    assert (result.sent, result.deferred) == (1, 1)
    assert db.query(Message).filter(Message.status == "queued").count() == 2


def test_cancel_message(db, admin, customer):
    msg = _welcome(db, customer)
    cancel_message(db, msg, user=admin)
    assert msg.status == "cancelled"
    with pytest.raises(ValueError, match="Only queued"):
        cancel_message(db, msg, user=admin)


def test_stored_template_overrides_default(db, admin, customer):
    upsert_template(db, "loyalty.welcome", name="Welcome", body="Hi {{ first_name }}, +{{ points }}pts", user=admin)
    assert _welcome(db, customer).body == "Hi Sam, +50pts"
    catalog = {row["key"]: row for row in template_catalog(db)}
    assert catalog["loyalty.welcome"]["customized"]
    assert not catalog["table_booking.confirmed"]["customized"]


def test_template_errors(db, admin):
    with pytest.raises(ValueError, match="Template is invalid"):
        upsert_template(db, "custom.bad", name="Bad", body="Hi {{ first_name", user=admin)
    with pytest.raises(ValueError, match="could not be rendered"):
        render_message(db, "loyalty.welcome", {"first_name": "Sam"})
    with pytest.raises(ValueError, match="Unknown message template"):
        render_message(db, "nope", {})
    with pytest.raises(ValueError, match="could not be rendered"):
        preview_template("{{ ''.__class__.__mro__ }}", {})


def test_sandbox_preview(app):
    with app.app_context():
        assert preview_template("{{ venue_name }} says hi {{ name }}", {"name": "Sam"}).endswith("says hi Sam")
