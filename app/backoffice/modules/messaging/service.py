"""
Messaging service layer.

Everything that wants to contact a customer queues a Message row in the
same transaction as its own change; `dispatch_due_messages` (run from the
daily jobs script or the admin queue page) hands queued rows to Twilio/SMTP.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from flask import current_app, has_app_context
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.customers.service import record_sms_failure
from app.backoffice.modules.customers.utils import normalize_phone

from .clients import MessagingError
from .models import Message, MessageTemplate
from .safety import SendLimits, build_dedupe_key, check_send_limits, is_duplicate
from .templates import DEFAULT_TEMPLATES, check_syntax, render_message, render_string

logger = logging.getLogger(__name__)

VALID_CHANNELS = {"sms", "email"}
VALID_STATUSES = {"queued", "sent", "failed", "suppressed", "cancelled"}
SMS_MAX_LENGTH = 1600
DISPATCH_BATCH_SIZE = 100


class SmsSender(Protocol):
    def send_sms(self, to: str, body: str) -> str: ...


class EmailSender(Protocol):
    def send_email(self, to: str, subject: str, body: str) -> str: ...


def _venue_name() -> str:
    if has_app_context():
        return current_app.config.get("VENUE_NAME") or "The Venue"
    return "The Venue"


def queue_sms(
    s: Session,
    *,
    to: str | None,
    body: str,
    customer: Customer | None = None,
    template_key: str | None = None,
    dedupe_context: dict[str, Any] | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    scheduled_for: datetime | None = None,
    user: User | None = None,
    now: datetime | None = None,
) -> Message:
    """
    Queue one SMS. Opted-out customers and repeats of the same
    (template, recipient, context) within the idempotency window are stored
    as `suppressed` so the queue page shows why nothing went out.
    """
    now = now or datetime.utcnow()
    recipient = normalize_phone(to or (customer.mobile_number if customer else None))
    if not recipient:
        raise ValueError("A mobile number is required to send an SMS.")
    body = (body or "").strip()
    if not body:
        raise ValueError("Message body is required.")
    if len(body) > SMS_MAX_LENGTH:
        raise ValueError(f"SMS body must be at most {SMS_MAX_LENGTH} characters.")

    dedupe_key = None
    if template_key:
        dedupe_key = build_dedupe_key(template_key, recipient, dedupe_context, now=now)

    status, reason = "queued", None
    if customer is not None and not customer.can_receive_sms:
        status, reason = "suppressed", "customer_opted_out"
    elif dedupe_key and is_duplicate(s, dedupe_key, now=now):
        status, reason = "suppressed", "duplicate"

    msg = Message(
        channel="sms",
        customer_id=customer.id if customer else None,
        recipient=recipient,
        body=body,
        template_key=template_key,
        dedupe_key=dedupe_key,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        status=status,
        status_reason=reason,
        scheduled_for=scheduled_for,
        created_at=now,
        created_by_user_id=user.id if user else None,
    )
    s.add(msg)
    s.flush()
    if status == "suppressed":
        logger.info("SMS suppressed (%s) message_id=%s template=%s", reason, msg.id, template_key)
    return msg


def queue_templated_sms(
    s: Session,
    template_key: str,
    *,
    customer: Customer,
    context: dict[str, Any],
    dedupe_context: dict[str, Any] | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    user: User | None = None,
    now: datetime | None = None,
) -> Message | None:
    """Render + queue. Returns None when the customer has no mobile number."""
    if not customer.mobile_number:
        return None
    ctx = {"venue_name": _venue_name(), "first_name": customer.first_name, **context}
    rendered = render_message(s, template_key, ctx)
    return queue_sms(
        s,
        to=customer.mobile_number,
        body=rendered.body,
        customer=customer,
        template_key=template_key,
        dedupe_context=dedupe_context,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        user=user,
        now=now,
    )


def queue_email(
    s: Session,
    *,
    to: str,
    subject: str,
    body: str,
    customer: Customer | None = None,
    template_key: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    user: User | None = None,
) -> Message:
    to = (to or "").strip().lower()
    if "@" not in to:
        raise ValueError("A valid email address is required.")
    if not (subject or "").strip():
        raise ValueError("Email subject is required.")
    msg = Message(
        channel="email",
        customer_id=customer.id if customer else None,
        recipient=to,
        subject=subject.strip(),
        body=(body or "").strip(),
        template_key=template_key,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        status="queued",
        created_by_user_id=user.id if user else None,
    )
    s.add(msg)
    s.flush()
    return msg


def cancel_message(s: Session, msg: Message, *, user: User) -> Message:
    if msg.status != "queued":
        raise ValueError(f"Only queued messages can be cancelled (status is {msg.status}).")
    msg.status = "cancelled"
    record_event(s, actor=user, action="message.cancel", entity_type="Message", entity_id=str(msg.id))
    return msg


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    deferred: int = 0
    skipped_channels: set[str] = field(default_factory=set)


def dispatch_due_messages(
    s: Session,
    *,
    sms_client: SmsSender | None,
    email_client: EmailSender | None,
    limits: SendLimits | None = None,
    now: datetime | None = None,
    batch_size: int = DISPATCH_BATCH_SIZE,
) -> DispatchResult:
    """
    Send queued messages whose schedule has passed. Rows over a send limit
    stay queued for the next run; once the global hourly limit is hit the
    run stops.
    """
    now = now or datetime.utcnow()
    limits = limits or SendLimits()
    result = DispatchResult()

    due = (
        s.query(Message)
        .filter(
            Message.status == "queued",
            or_(Message.scheduled_for.is_(None), Message.scheduled_for <= now),
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(batch_size)
        .all()
    )

    for msg in due:
        if msg.channel == "sms":
            if sms_client is None:
                result.skipped_channels.add("sms")
                continue
            exceeded = check_send_limits(s, msg.recipient, limits=limits, now=now)
            if exceeded:
                result.deferred += 1
                msg.status_reason = f"deferred:{exceeded}"
                if exceeded == "global_hourly":
                    logger.warning("Global SMS hourly limit reached; stopping dispatch")
                    break
                continue
            msg.attempts = (msg.attempts or 0) + 1
            try:
                msg.provider_message_id = sms_client.send_sms(msg.recipient, msg.body)
            except MessagingError as e:
                _mark_failed(s, msg, str(e))
                result.failed += 1
                continue
        elif msg.channel == "email":
            if email_client is None:
                result.skipped_channels.add("email")
                continue
            msg.attempts = (msg.attempts or 0) + 1
            try:
                msg.provider_message_id = email_client.send_email(msg.recipient, msg.subject or "", msg.body)
            except MessagingError as e:
                _mark_failed(s, msg, str(e))
                result.failed += 1
                continue
        else:
            _mark_failed(s, msg, f"Unknown channel: {msg.channel}")
            result.failed += 1
            continue

        msg.status = "sent"
        msg.status_reason = None
        msg.sent_at = now
        result.sent += 1
        # Flush so the next limit check counts this send.
        s.flush()

    if result.skipped_channels:
        logger.warning("Messaging not configured for: %s", ", ".join(sorted(result.skipped_channels)))
    logger.info("Dispatch complete sent=%s failed=%s deferred=%s", result.sent, result.failed, result.deferred)
    return result


def _mark_failed(s: Session, msg: Message, error: str) -> None:
    logger.error("Message %s failed: %s", msg.id, error)
    msg.status = "failed"
    msg.error_message = error[:2000]
    if msg.channel == "sms" and msg.customer is not None:
        record_sms_failure(s, msg.customer, reason=error)


def upsert_template(
    s: Session,
    key: str,
    *,
    name: str,
    body: str,
    channel: str = "sms",
    subject: str | None = None,
    is_active: bool = True,
    user: User,
) -> MessageTemplate:
    key = (key or "").strip()
    if not key:
        raise ValueError("Template key is required.")
    if channel not in VALID_CHANNELS:
        raise ValueError(f"Invalid channel: {channel}")
    if not (body or "").strip():
        raise ValueError("Template body is required.")
    check_syntax(body)
    if subject:
        check_syntax(subject)

    tpl = s.query(MessageTemplate).filter(MessageTemplate.key == key).one_or_none()
    created = tpl is None
    if tpl is None:
        tpl = MessageTemplate(key=key)
        s.add(tpl)
    tpl.name = (name or "").strip() or key
    tpl.channel = channel
    tpl.subject = (subject or "").strip() or None
    tpl.body = body.strip()
    tpl.is_active = is_active
    tpl.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="message_template.create" if created else "message_template.update",
        entity_type="MessageTemplate",
        entity_id=key,
    )
    return tpl


def template_catalog(s: Session) -> list[dict[str, Any]]:
    """Built-in templates merged with stored overrides, for the settings page."""
    stored = {t.key: t for t in s.query(MessageTemplate).all()}
    rows = []
    for key in sorted(set(DEFAULT_TEMPLATES) | set(stored)):
        t = stored.get(key)
        d = DEFAULT_TEMPLATES.get(key)
        rows.append(
            {
                "key": key,
                "name": t.name if t else d.name,  # type: ignore[union-attr]
                "channel": t.channel if t else d.channel,  # type: ignore[union-attr]
                "subject": t.subject if t else d.subject,  # type: ignore[union-attr]
                "body": t.body if t else d.body,  # type: ignore[union-attr]
                "customized": t is not None,
                "is_active": t.is_active if t else True,
            }
        )
    return rows


def preview_template(body: str, context: dict[str, Any]) -> str:
    return render_string(body, {"venue_name": _venue_name(), **context})
