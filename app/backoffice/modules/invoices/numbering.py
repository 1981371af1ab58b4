"""
Document numbers.

Numbers are not sequential to the reader: the series counter is offset by
5000 and written in base 36, e.g. INV-003VK.
"""
from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.orm import Session

from .models import InvoiceSeries

SEQUENCE_OFFSET = 5000
ENCODED_WIDTH = 5
_DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(n: int) -> str:
    if n < 0:
        raise ValueError("Cannot encode a negative number")
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_DIGITS[rem])
    return "".join(reversed(out))


def format_document_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{to_base36(sequence + SEQUENCE_OFFSET).rjust(ENCODED_WIDTH, '0')}"


def next_sequence(s: Session, series_code: str) -> int:
    """Atomically increment the series counter and return the new value."""
    if s.get(InvoiceSeries, series_code) is None:
        s.add(InvoiceSeries(series_code=series_code, current_sequence=0))
        s.flush()
    s.execute(
        update(InvoiceSeries)
        .where(InvoiceSeries.series_code == series_code)
        .values(current_sequence=InvoiceSeries.current_sequence + 1)
    )
    row = s.get(InvoiceSeries, series_code, populate_existing=True)
    return int(row.current_sequence)  # type: ignore[union-attr]


def next_document_number(s: Session, series_code: str) -> str:
    return format_document_number(series_code, next_sequence(s, series_code))
