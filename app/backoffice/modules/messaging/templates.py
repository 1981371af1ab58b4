from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jinja2 import StrictUndefined, TemplateError, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.orm import Session

from .models import MessageTemplate

_env = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined, trim_blocks=True)


@dataclass(frozen=True)
class DefaultTemplate:
    name: str
    channel: str
    body: str
    subject: str | None = None


# Fallbacks used until a manager edits the stored copy.
DEFAULT_TEMPLATES: dict[str, DefaultTemplate] = {
    "table_booking.confirmed": DefaultTemplate(
        name="Table booking confirmed",
        channel="sms",
        body=(
            "Hi {{ first_name }}, your table for {{ party_size }} at {{ venue_name }} on "
            "{{ booking_date }} at {{ booking_time }} is confirmed. Ref {{ reference }}."
        ),
    ),
    "table_booking.cancelled": DefaultTemplate(
        name="Table booking cancelled",
        channel="sms",
        body=(
            "Hi {{ first_name }}, your booking {{ reference }} for {{ booking_date }} has been cancelled. "
            "{{ refund_message }}"
        ),
    ),
    "private_booking.enquiry": DefaultTemplate(
        name="Private booking enquiry received",
        channel="sms",
        body=(
            "Hi {{ first_name }}, thanks for your enquiry for {{ event_date }}. We're holding the date "
            "until {{ hold_expiry }}. A £{{ deposit_amount }} deposit secures it."
        ),
    ),
    "private_booking.deposit_received": DefaultTemplate(
        name="Private booking deposit received",
        channel="sms",
        body=(
            "Hi {{ first_name }}, we've received your £{{ deposit_amount }} deposit. Your event on "
            "{{ event_date }} is confirmed. Balance due by {{ balance_due_date }}."
        ),
    ),
    "private_booking.hold_expired": DefaultTemplate(
        name="Private booking hold expired",
        channel="sms",
        body="Hi {{ first_name }}, the hold on {{ event_date }} has now expired. Get in touch if you'd still like the date.",
    ),
    "private_booking.hold_extended": DefaultTemplate(
        name="Private booking hold extended",
        channel="sms",
        body=(
            "Hi {{ first_name }}, we've extended your hold on {{ event_date }}. "
            "Your deposit is now due by {{ hold_expiry }}."
        ),
    ),
    "loyalty.welcome": DefaultTemplate(
        name="Loyalty welcome",
        channel="sms",
        body="Welcome to {{ venue_name }} VIP, {{ first_name }}! You've earned {{ points }} welcome points.",
    ),
    "loyalty.redemption_code": DefaultTemplate(
        name="Loyalty redemption code",
        channel="sms",
        body="Your code for {{ reward_name }} is {{ code }}. Show it at the bar before {{ expires_at }}.",
    ),
    "invoice.sent": DefaultTemplate(
        name="Invoice sent",
        channel="email",
        subject="Invoice {{ invoice_number }} from {{ venue_name }}",
        body=(
            "Hello {{ vendor_name }},\n\nPlease find invoice {{ invoice_number }} for £{{ total_amount }}, "
            "due on {{ due_date }}.\n\nThank you,\n{{ venue_name }}"
        ),
    ),
}


@dataclass(frozen=True)
class RenderedMessage:
    channel: str
    subject: str | None
    body: str


def render_string(source: str, context: dict[str, Any]) -> str:
    try:
        return _env.from_string(source).render(**context).strip()
    except TemplateError as e:
        raise ValueError(f"Template could not be rendered: {e}") from e


def render_message(s: Session, template_key: str, context: dict[str, Any]) -> RenderedMessage:
    """Render a stored template, falling back to the built-in copy."""
    tpl = (
        s.query(MessageTemplate)
        .filter(MessageTemplate.key == template_key, MessageTemplate.is_active.is_(True))
        .one_or_none()
    )
    if tpl is not None:
        channel, subject, body = tpl.channel, tpl.subject, tpl.body
    elif template_key in DEFAULT_TEMPLATES:
        d = DEFAULT_TEMPLATES[template_key]
        channel, subject, body = d.channel, d.subject, d.body
    else:
        raise ValueError(f"Unknown message template: {template_key}")
    return RenderedMessage(
        channel=channel,
        subject=render_string(subject, context) if subject else None,
        body=render_string(body, context),
    )


def check_syntax(source: str) -> None:
    try:
        _env.parse(source)
    except TemplateSyntaxError as e:
        raise ValueError(f"Template is invalid: {e}") from e
