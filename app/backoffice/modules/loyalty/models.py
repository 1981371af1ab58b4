from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.modules.customers.models import Customer


class LoyaltyMember(Base):
    __tablename__ = "loyalty_members"
    __table_args__ = (
        CheckConstraint("available_points >= 0", name="ck_loyalty_members_available_points"),
        Index("idx_loyalty_members_tier", "tier"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, unique=True)

    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="member")
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # lifetime earned
    available_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active|suspended

    join_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_visit_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped["Customer"] = relationship("Customer", lazy="selectin")


class LoyaltyReward(Base):
    __tablename__ = "loyalty_rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    points_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    tier_required: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    inventory: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class RewardRedemption(Base):
    __tablename__ = "reward_redemptions"
    __table_args__ = (Index("idx_reward_redemptions_status_expires", "status", "expires_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id: Mapped[int] = mapped_column(ForeignKey("loyalty_rewards.id", ondelete="RESTRICT"), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending|redeemed|cancelled|expired

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    redeemed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    member: Mapped[LoyaltyMember] = relationship("LoyaltyMember", lazy="selectin")
    reward: Mapped[LoyaltyReward] = relationship("LoyaltyReward", lazy="selectin")


class LoyaltyCheckIn(Base):
    __tablename__ = "loyalty_check_ins"
    __table_args__ = (UniqueConstraint("member_id", "event_date", name="uq_loyalty_check_ins_member_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False, default="standard")
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    checked_in_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class LoyaltyPointTransaction(Base):
    __tablename__ = "loyalty_point_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)  # signed
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)  # welcome|earned|bonus|adjustment|redeemed|refunded
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
