from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.modules.customers.models import Customer


class VenueTable(Base):
    __tablename__ = "venue_tables"
    __table_args__ = (
        CheckConstraint("capacity >= 1 AND capacity <= 20", name="ck_venue_tables_capacity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    table_number: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class BookingPolicy(Base):
    __tablename__ = "booking_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_type: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # regular, sunday_lunch

    full_refund_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=48)
    partial_refund_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    partial_refund_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    modification_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cancellation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    max_party_size: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    min_advance_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_advance_days: Mapped[int] = mapped_column(Integer, nullable=False, default=56)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class TableBookingTable(Base):
    __tablename__ = "table_booking_tables"
    booking_id: Mapped[int] = mapped_column(ForeignKey("table_bookings.id", ondelete="CASCADE"), primary_key=True)
    table_id: Mapped[int] = mapped_column(ForeignKey("venue_tables.id", ondelete="CASCADE"), primary_key=True)


class TableBooking(Base):
    __tablename__ = "table_bookings"
    __table_args__ = (
        Index("idx_table_bookings_date_status", "booking_date", "status"),
        Index("idx_table_bookings_customer", "customer_id"),
        CheckConstraint("party_size >= 1", name="ck_table_bookings_party_size"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_reference: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)  # TB-2026-0421

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    booking_time: Mapped[time] = mapped_column(Time, nullable=False)
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)
    booking_type: Mapped[str] = mapped_column(String(32), nullable=False, default="regular")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="confirmed")
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=120)

    special_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    dietary_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    celebration_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="phone")  # phone, walk_in, online, staff

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    no_show_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer: Mapped["Customer"] = relationship("Customer", lazy="selectin")
    tables: Mapped[list[VenueTable]] = relationship(secondary="table_booking_tables", lazy="selectin")
    items: Mapped[list["TableBookingItem"]] = relationship(
        "TableBookingItem",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TableBookingItem.id",
    )
    payments: Mapped[list["TableBookingPayment"]] = relationship(
        "TableBookingPayment",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TableBookingPayment.created_at",
    )
    modifications: Mapped[list["TableBookingModification"]] = relationship(
        "TableBookingModification",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TableBookingModification.created_at.desc()",
    )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.booking_date, self.booking_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes or 120)

    @property
    def items_total(self) -> Decimal:
        return sum((i.line_total for i in self.items), Decimal("0"))


class TableBookingItem(Base):
    __tablename__ = "table_booking_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("table_bookings.id", ondelete="CASCADE"), nullable=False)
    custom_item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False, default="main")  # main, side, extra
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price_at_booking: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    guest_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    booking: Mapped[TableBooking] = relationship("TableBooking", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.price_at_booking or 0) * (self.quantity or 0)


class TableBookingPayment(Base):
    __tablename__ = "table_booking_payments"
    __table_args__ = (
        Index("idx_table_booking_payments_booking", "booking_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("table_bookings.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="card")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, completed, failed, refunded, partial_refund
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    refund_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    booking: Mapped[TableBooking] = relationship("TableBooking", back_populates="payments")


class TableBookingModification(Base):
    __tablename__ = "table_booking_modifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("table_bookings.id", ondelete="CASCADE"), nullable=False)
    modified_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    modification_type: Mapped[str] = mapped_column(String(32), nullable=False)  # details, tables, status
    old_values_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_values_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    booking: Mapped[TableBooking] = relationship("TableBooking", back_populates="modifications")
