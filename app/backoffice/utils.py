from __future__ import annotations

from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from zoneinfo import ZoneInfo

from flask import current_app, g, has_app_context

from app.backoffice.models import User

DEFAULT_TIMEZONE = "Europe/London"
PENNY = Decimal("0.01")


def venue_timezone() -> ZoneInfo:
    name = DEFAULT_TIMEZONE
    if has_app_context():
        name = current_app.config.get("VENUE_TIMEZONE") or DEFAULT_TIMEZONE
    return ZoneInfo(name)


def venue_now() -> datetime:
    """Current wall-clock time at the venue, naive (matches the DB columns)."""
    return datetime.now(venue_timezone()).replace(tzinfo=None)


def venue_today() -> date:
    return venue_now().date()


def money(value: Decimal | int | float | str | None) -> Decimal:
    """Round to pennies, half-up."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(PENNY, rounding=ROUND_HALF_UP)


def parse_date(raw: str | None) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def parse_time(raw: str | None) -> time | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(raw, fmt).time()
        except ValueError:
            continue
    return None


def parse_decimal(raw: str | None) -> Decimal | None:
    raw = (raw or "").strip().replace(",", "").lstrip("£")
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def parse_int(raw: str | None) -> int | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u
