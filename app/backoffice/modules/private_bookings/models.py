from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.modules.customers.models import Customer


class PrivateBooking(Base):
    __tablename__ = "private_bookings"
    __table_args__ = (
        Index("idx_private_bookings_event_date", "event_date"),
        Index("idx_private_bookings_status_hold", "status", "hold_expiry"),
        CheckConstraint("guest_count IS NULL OR guest_count >= 1", name="ck_private_bookings_guest_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    # Contact details as given at enquiry time; the customer row may change later.
    customer_first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    guest_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft, confirmed, completed, cancelled

    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("250.00"))
    deposit_paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deposit_payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    balance_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    final_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    final_payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    hold_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    discount_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # percent, fixed
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    customer_requests: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer: Mapped["Customer | None"] = relationship("Customer", lazy="selectin")
    items: Mapped[list["PrivateBookingItem"]] = relationship(
        "PrivateBookingItem",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=lambda: [PrivateBookingItem.display_order, PrivateBookingItem.id],
    )
    documents: Mapped[list["PrivateBookingDocument"]] = relationship(
        "PrivateBookingDocument",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PrivateBookingDocument.uploaded_at.desc()",
    )

    @property
    def customer_name(self) -> str:
        return " ".join(p for p in (self.customer_first_name, self.customer_last_name) if p)


class PrivateBookingItem(Base):
    __tablename__ = "private_booking_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("private_bookings.id", ondelete="CASCADE"), nullable=False)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False)  # space, catering, vendor, other
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # percent, fixed
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    booking: Mapped[PrivateBooking] = relationship("PrivateBooking", back_populates="items")


class PrivateBookingDocument(Base):
    __tablename__ = "private_booking_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("private_bookings.id", ondelete="CASCADE"), nullable=False)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")  # contract, floor_plan, menu, other
    storage_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    booking: Mapped[PrivateBooking] = relationship("PrivateBooking", back_populates="documents")
