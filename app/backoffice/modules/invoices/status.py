from __future__ import annotations

from datetime import date

INVOICE_STATUS_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"sent", "void"},
    "sent": {"partially_paid", "paid", "overdue", "void", "written_off"},
    "partially_paid": {"paid", "overdue", "void", "written_off"},
    "overdue": {"partially_paid", "paid", "void", "written_off"},
    "paid": set(),
    "void": set(),
    "written_off": set(),
}

QUOTE_STATUS_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"sent"},
    "sent": {"accepted", "rejected", "expired"},
    "accepted": set(),
    "rejected": set(),
    "expired": set(),
}

INVOICE_STATUSES = tuple(INVOICE_STATUS_TRANSITIONS)
QUOTE_STATUSES = tuple(QUOTE_STATUS_TRANSITIONS)

# Invoices still owed money.
OPEN_INVOICE_STATUSES = ("sent", "partially_paid", "overdue")


class ConcurrentUpdateError(ValueError):
    """A compare-and-swap update matched no rows; the record changed underneath us."""


def is_invoice_status_transition_allowed(current: str, new: str) -> bool:
    return new in INVOICE_STATUS_TRANSITIONS.get(current, set())


def is_quote_status_transition_allowed(current: str, new: str) -> bool:
    return new in QUOTE_STATUS_TRANSITIONS.get(current, set())


def effective_quote_status(status: str, valid_until: date | None, today: date) -> str:
    """A sent quote past its valid-until date reads as expired even before it is persisted."""
    if status == "sent" and valid_until is not None and valid_until < today:
        return "expired"
    return status
