"""
Booking policy rules: advance-booking windows, party size limits, the
Sunday lunch cut-off and the cancellation refund ladder.

Pure functions; the service layer loads the BookingPolicy row and the
latest completed payment and passes them in.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.backoffice.utils import money

from .models import BookingPolicy

BOOKING_TYPES = ("regular", "sunday_lunch")

DEFAULT_POLICIES: dict[str, dict[str, int]] = {
    "regular": {
        "full_refund_hours": 2,
        "partial_refund_hours": 0,
        "partial_refund_percentage": 0,
        "min_advance_hours": 2,
        "max_party_size": 20,
        "max_advance_days": 56,
    },
    "sunday_lunch": {
        "full_refund_hours": 48,
        "partial_refund_hours": 24,
        "partial_refund_percentage": 50,
        "min_advance_hours": 20,
        "max_party_size": 20,
        "max_advance_days": 56,
    },
}

SUNDAY_LUNCH_CUTOFF = time(13, 0)


@dataclass(frozen=True)
class RefundDecision:
    refund_percentage: int
    refund_amount: Decimal
    reason: str


def default_policy(booking_type: str) -> BookingPolicy:
    if booking_type not in DEFAULT_POLICIES:
        raise ValueError(f"Unknown booking type: {booking_type}")
    return BookingPolicy(booking_type=booking_type, **DEFAULT_POLICIES[booking_type])


def sunday_lunch_cutoff(booking_date: date) -> datetime:
    """1pm on the Saturday before the Sunday being booked."""
    return datetime.combine(booking_date - timedelta(days=1), SUNDAY_LUNCH_CUTOFF)


def policy_violations(
    policy: BookingPolicy,
    *,
    booking_type: str,
    booking_date: date,
    booking_time: time,
    party_size: int,
    now: datetime,
) -> list[str]:
    """Returns human-readable reasons the booking breaks policy (empty when valid)."""
    errors: list[str] = []
    starts_at = datetime.combine(booking_date, booking_time)
    hours_until = (starts_at - now).total_seconds() / 3600
    days_until = (booking_date - now.date()).days

    if party_size < 1:
        errors.append("Party size must be at least 1")
    if hours_until < policy.min_advance_hours:
        errors.append(f"Bookings must be made at least {policy.min_advance_hours} hours in advance")
    if days_until > policy.max_advance_days:
        errors.append(f"Bookings cannot be made more than {policy.max_advance_days} days in advance")
    if party_size > policy.max_party_size:
        errors.append(f"Maximum party size is {policy.max_party_size}")

    if booking_type == "sunday_lunch":
        if booking_date.weekday() != 6:
            errors.append("Sunday lunch bookings must be for a Sunday")
        elif now > sunday_lunch_cutoff(booking_date):
            errors.append("Sunday lunch bookings must be made before 1pm on Saturday")
    return errors


def calculate_refund(
    policy: BookingPolicy,
    *,
    starts_at: datetime,
    paid_amount: Decimal | None,
    now: datetime,
) -> RefundDecision:
    """
    Refund ladder for a cancellation made at `now`:

    - at least full_refund_hours before the booking: 100%
    - at least partial_refund_hours before: partial_refund_percentage
    - otherwise nothing

    `paid_amount` is the latest completed payment; None means no payment.
    """
    if paid_amount is None:
        return RefundDecision(0, money(0), "No payment found")

    hours_until = Decimal(str((starts_at - now).total_seconds())) / Decimal(3600)
    if hours_until >= policy.full_refund_hours:
        return RefundDecision(100, money(paid_amount), "Full refund - cancelled with sufficient notice")
    if hours_until >= policy.partial_refund_hours:
        pct = int(policy.partial_refund_percentage)
        amount = money(Decimal(paid_amount) * pct / 100)
        rounded_hours = hours_until.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return RefundDecision(pct, amount, f"{pct}% refund - cancelled with {rounded_hours} hours notice")
    return RefundDecision(0, money(0), "No refund - insufficient cancellation notice")
