from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.backoffice.modules.invoices.quotes import QuoteSummary, quote_summary
from app.backoffice.modules.invoices.service import InvoiceSummary, invoice_summary
from app.backoffice.modules.loyalty.service import loyalty_stats
from app.backoffice.modules.messaging.models import Message
from app.backoffice.modules.private_bookings.models import PrivateBooking
from app.backoffice.modules.table_bookings.models import TableBooking

UPCOMING_PRIVATE_DAYS = 30
REPORT_MAX_DAYS = 366


@dataclass(frozen=True)
class DashboardSnapshot:
    today: date
    bookings_today: list[TableBooking]
    covers_today: int
    pending_payment_count: int
    upcoming_private: list[PrivateBooking]
    expiring_holds: list[PrivateBooking]
    invoices: InvoiceSummary
    quotes: QuoteSummary
    loyalty: dict[str, Any]
    messages_queued: int
    messages_failed_7d: int


def dashboard_snapshot(s: Session, *, today: date) -> DashboardSnapshot:
    bookings_today = (
        s.query(TableBooking)
        .filter(TableBooking.booking_date == today, TableBooking.status.in_(("pending_payment", "confirmed", "completed")))
        .order_by(TableBooking.booking_time.asc())
        .all()
    )
    pending_payment = s.query(func.count(TableBooking.id)).filter(TableBooking.status == "pending_payment").scalar()

    horizon = today + timedelta(days=UPCOMING_PRIVATE_DAYS)
    upcoming_private = (
        s.query(PrivateBooking)
        .filter(
            PrivateBooking.event_date >= today,
            PrivateBooking.event_date <= horizon,
            PrivateBooking.status.in_(("draft", "confirmed")),
        )
        .order_by(PrivateBooking.event_date.asc())
        .all()
    )
    soon = datetime.combine(today + timedelta(days=3), datetime.min.time())
    expiring = [b for b in upcoming_private if b.status == "draft" and b.hold_expiry is not None and b.hold_expiry <= soon]

    week_ago = datetime.combine(today - timedelta(days=7), datetime.min.time())
    queued = s.query(func.count(Message.id)).filter(Message.status == "queued").scalar()
    failed = s.query(func.count(Message.id)).filter(Message.status == "failed", Message.created_at >= week_ago).scalar()

    return DashboardSnapshot(
        today=today,
        bookings_today=bookings_today,
        covers_today=sum(b.party_size for b in bookings_today),
        pending_payment_count=int(pending_payment or 0),
        upcoming_private=upcoming_private,
        expiring_holds=expiring,
        invoices=invoice_summary(s, today=today),
        quotes=quote_summary(s, today=today),
        loyalty=loyalty_stats(s),
        messages_queued=int(queued or 0),
        messages_failed_7d=int(failed or 0),
    )


@dataclass
class TableBookingReport:
    start: date
    end: date
    total_bookings: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    covers_by_day: dict[date, int] = field(default_factory=dict)
    covers_by_type: dict[str, int] = field(default_factory=dict)
    no_show_rate: Decimal = Decimal("0")
    cancellation_rate: Decimal = Decimal("0")

    @property
    def total_covers(self) -> int:
        return sum(self.covers_by_day.values())


def _rate(part: int, whole: int) -> Decimal:
    if not whole:
        return Decimal("0")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("0.1"))


def table_booking_report(s: Session, *, start: date, end: date) -> TableBookingReport:
    """
    Covers count bookings that were (or will be) seated: pending payment,
    confirmed and completed. Rates are percentages of all bookings in range.
    """
    if end < start:
        raise ValueError("End date must be on or after the start date.")
    if (end - start).days + 1 > REPORT_MAX_DAYS:
        raise ValueError(f"Reports cover at most {REPORT_MAX_DAYS} days.")

    rows = s.query(TableBooking).filter(TableBooking.booking_date >= start, TableBooking.booking_date <= end).all()
    by_status: Counter[str] = Counter(b.status for b in rows)
    covers_by_day: dict[date, int] = defaultdict(int)
    covers_by_type: dict[str, int] = defaultdict(int)
    for b in rows:
        if b.status in ("pending_payment", "confirmed", "completed"):
            covers_by_day[b.booking_date] += b.party_size
            covers_by_type[b.booking_type] += b.party_size

    return TableBookingReport(
        start=start,
        end=end,
        total_bookings=len(rows),
        by_status=dict(sorted(by_status.items())),
        covers_by_day=dict(sorted(covers_by_day.items())),
        covers_by_type=dict(sorted(covers_by_type.items())),
        no_show_rate=_rate(by_status.get("no_show", 0), len(rows)),
        cancellation_rate=_rate(by_status.get("cancelled", 0), len(rows)),
    )
