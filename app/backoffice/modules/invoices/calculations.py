"""
Invoice and quote totals.

Per line: subtotal = quantity x unit price, less the line discount. The
invoice-level discount is then spread over every line in proportion to its
discounted value, and VAT is charged on what remains. Document totals are
summed unrounded and rounded half-up to pennies once.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from app.backoffice.utils import money, parse_decimal

HUNDRED = Decimal("100")
DEFAULT_VAT_RATE = Decimal("20")


@dataclass(frozen=True)
class LineInput:
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percentage: Decimal = Decimal("0")
    vat_rate: Decimal = DEFAULT_VAT_RATE
    catalog_item_id: int | None = None


@dataclass(frozen=True)
class LineTotals:
    subtotal: Decimal
    line_discount: Decimal
    invoice_discount: Decimal
    net: Decimal
    vat: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    line_discount: Decimal
    invoice_discount: Decimal
    vat: Decimal
    total: Decimal
    lines: tuple[LineTotals, ...]

    @property
    def discount(self) -> Decimal:
        return self.line_discount + self.invoice_discount


def parse_percentage(value: Any, label: str) -> Decimal:
    d = parse_decimal(value) if isinstance(value, str) else value
    d = Decimal("0") if d is None else Decimal(d)
    if d < 0 or d > HUNDRED:
        raise ValueError(f"{label} must be between 0 and 100.")
    return d


def parse_line(raw: dict[str, Any], index: int) -> LineInput:
    description = (raw.get("description") or "").strip()
    if not description:
        raise ValueError(f"Line {index}: description is required.")

    quantity = raw.get("quantity")
    quantity = parse_decimal(quantity) if isinstance(quantity, str) else quantity
    if quantity is None or Decimal(quantity) <= 0:
        raise ValueError(f"Line {index}: quantity must be greater than zero.")

    unit_price = raw.get("unit_price")
    unit_price = parse_decimal(unit_price) if isinstance(unit_price, str) else unit_price
    if unit_price is None or Decimal(unit_price) < 0:
        raise ValueError(f"Line {index}: unit price cannot be negative.")

    vat_raw = raw.get("vat_rate")
    vat_rate = DEFAULT_VAT_RATE if vat_raw in (None, "") else parse_percentage(vat_raw, f"Line {index}: VAT rate")

    catalog_item_id = raw.get("catalog_item_id")
    if isinstance(catalog_item_id, str):
        catalog_item_id = int(catalog_item_id) if catalog_item_id.strip().isdigit() else None

    return LineInput(
        description=description,
        quantity=Decimal(quantity),
        unit_price=money(unit_price),
        discount_percentage=parse_percentage(raw.get("discount_percentage"), f"Line {index}: discount"),
        vat_rate=vat_rate,
        catalog_item_id=catalog_item_id,
    )


def parse_lines(rows: Iterable[dict[str, Any]]) -> list[LineInput]:
    lines = [parse_line(r, i) for i, r in enumerate(rows, start=1)]
    if not lines:
        raise ValueError("At least one line item is required")
    return lines


def calculate_invoice_totals(lines: Iterable[Any], invoice_discount_percentage: Decimal | int | str = 0) -> InvoiceTotals:
    """
    `lines` can be LineInput values or line item rows; anything with quantity,
    unit_price, discount_percentage and vat_rate attributes.
    """
    invoice_pct = parse_percentage(invoice_discount_percentage, "Invoice discount")
    lines = list(lines)

    raw = []
    for line in lines:
        subtotal = Decimal(line.quantity) * Decimal(line.unit_price)
        line_discount = subtotal * Decimal(line.discount_percentage or 0) / HUNDRED
        raw.append((subtotal, line_discount, subtotal - line_discount, Decimal(line.vat_rate or 0)))

    after_line_discounts = sum((r[2] for r in raw), Decimal("0"))
    invoice_discount_total = after_line_discounts * invoice_pct / HUNDRED

    per_line: list[LineTotals] = []
    vat_total = Decimal("0")
    for subtotal, line_discount, discounted, vat_rate in raw:
        share = (discounted / after_line_discounts) if after_line_discounts else Decimal("0")
        invoice_discount = invoice_discount_total * share
        net = discounted - invoice_discount
        vat = net * vat_rate / HUNDRED
        vat_total += vat
        per_line.append(
            LineTotals(
                subtotal=money(subtotal),
                line_discount=money(line_discount),
                invoice_discount=money(invoice_discount),
                net=money(net),
                vat=money(vat),
                total=money(net + vat),
            )
        )

    subtotal = money(sum((r[0] for r in raw), Decimal("0")))
    line_discount = money(sum((r[1] for r in raw), Decimal("0")))
    invoice_discount = money(invoice_discount_total)
    vat = money(vat_total)
    total = money(subtotal - line_discount - invoice_discount + vat)
    return InvoiceTotals(
        subtotal=subtotal,
        line_discount=line_discount,
        invoice_discount=invoice_discount,
        vat=vat,
        total=total,
        lines=tuple(per_line),
    )
