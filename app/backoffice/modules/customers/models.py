from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.backoffice.models import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_last_name", "last_name"),
        Index("idx_customers_email", "email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mobile_number: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)  # E.164
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    sms_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_delivery_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sms_deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sms_deactivation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @property
    def can_receive_sms(self) -> bool:
        return bool(self.mobile_number) and self.sms_opt_in and self.sms_deactivated_at is None
