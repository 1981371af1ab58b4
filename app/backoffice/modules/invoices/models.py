from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base


class InvoiceVendor(Base):
    __tablename__ = "invoice_vendors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    vat_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_terms: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class LineItemCatalogItem(Base):
    __tablename__ = "line_item_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    default_vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("20"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class InvoiceSeries(Base):
    __tablename__ = "invoice_series"

    series_code: Mapped[str] = mapped_column(String(10), primary_key=True)  # INV, QTE
    current_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class _LineItemColumns:
    """Columns shared by invoice, quote and recurring line items."""

    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("20"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_vendor_id", "vendor_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
        CheckConstraint(
            "status IN ('draft','sent','paid','partially_paid','overdue','void','written_off')",
            name="ck_invoices_status",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    vendor_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_vendors.id", ondelete="RESTRICT"), nullable=True)
    recurring_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_invoices.id", ondelete="SET NULL", use_alter=True, name="fk_invoices_recurring_invoice_id"),
        nullable=True,
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    invoice_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    vendor: Mapped[InvoiceVendor | None] = relationship("InvoiceVendor", lazy="selectin")
    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineItem.id",
    )
    payments: Mapped[list["InvoicePayment"]] = relationship(
        "InvoicePayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoicePayment.payment_date",
    )

    @property
    def balance_due(self) -> Decimal:
        return Decimal(self.total_amount or 0) - Decimal(self.paid_amount or 0)


class InvoiceLineItem(_LineItemColumns, Base):
    __tablename__ = "invoice_line_items"
    __table_args__ = (Index("idx_invoice_line_items_invoice_id", "invoice_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    catalog_item_id: Mapped[int | None] = mapped_column(ForeignKey("line_item_catalog.id", ondelete="SET NULL"), nullable=True)

    invoice: Mapped[Invoice] = relationship("Invoice", back_populates="line_items")


class InvoicePayment(Base):
    __tablename__ = "invoice_payments"
    __table_args__ = (
        Index("idx_invoice_payments_invoice_id", "invoice_id"),
        CheckConstraint("amount > 0", name="ck_invoice_payments_amount"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)  # bank_transfer, cash, cheque, card, other
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    invoice: Mapped[Invoice] = relationship("Invoice", back_populates="payments")


class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (
        Index("idx_quotes_vendor_id", "vendor_id"),
        CheckConstraint("status IN ('draft','sent','accepted','rejected','expired')", name="ck_quotes_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    quote_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    vendor_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_vendors.id", ondelete="RESTRICT"), nullable=True)
    quote_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    quote_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    converted_to_invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    vendor: Mapped[InvoiceVendor | None] = relationship("InvoiceVendor", lazy="selectin")
    line_items: Mapped[list["QuoteLineItem"]] = relationship(
        "QuoteLineItem",
        back_populates="quote",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="QuoteLineItem.id",
    )


class QuoteLineItem(_LineItemColumns, Base):
    __tablename__ = "quote_line_items"
    __table_args__ = (Index("idx_quote_line_items_quote_id", "quote_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    quote_id: Mapped[int] = mapped_column(ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    catalog_item_id: Mapped[int | None] = mapped_column(ForeignKey("line_item_catalog.id", ondelete="SET NULL"), nullable=True)

    quote: Mapped[Quote] = relationship("Quote", back_populates="line_items")


class RecurringInvoice(Base):
    __tablename__ = "recurring_invoices"
    __table_args__ = (
        Index("idx_recurring_invoices_next_date", "next_invoice_date"),
        CheckConstraint("frequency IN ('weekly','monthly','quarterly','yearly')", name="ck_recurring_invoices_frequency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor_id: Mapped[int] = mapped_column(ForeignKey("invoice_vendors.id", ondelete="RESTRICT"), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    days_before_due: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    invoice_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    vendor: Mapped[InvoiceVendor] = relationship("InvoiceVendor", lazy="selectin")
    line_items: Mapped[list["RecurringInvoiceLineItem"]] = relationship(
        "RecurringInvoiceLineItem",
        back_populates="recurring_invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="RecurringInvoiceLineItem.id",
    )


class RecurringInvoiceLineItem(_LineItemColumns, Base):
    __tablename__ = "recurring_invoice_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recurring_invoice_id: Mapped[int] = mapped_column(ForeignKey("recurring_invoices.id", ondelete="CASCADE"), nullable=False)
    catalog_item_id: Mapped[int | None] = mapped_column(ForeignKey("line_item_catalog.id", ondelete="SET NULL"), nullable=True)

    recurring_invoice: Mapped[RecurringInvoice] = relationship("RecurringInvoice", back_populates="line_items")
