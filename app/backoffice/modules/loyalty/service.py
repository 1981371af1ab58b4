"""
Loyalty programme: members, check-ins, points ledger and reward redemptions.

Every change to a member's available points writes a LoyaltyPointTransaction
with the resulting balance, so the ledger can always be replayed.
"""
from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.messaging.service import queue_templated_sms
from app.backoffice.utils import parse_int

from .models import LoyaltyCheckIn, LoyaltyMember, LoyaltyPointTransaction, LoyaltyReward, RewardRedemption

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    key: str
    name: str
    min_events: int
    multiplier: int


# Ordered lowest → highest.
TIERS: tuple[Tier, ...] = (
    Tier("member", "VIP Member", 0, 1),
    Tier("bronze", "Bronze VIP", 5, 2),
    Tier("silver", "Silver VIP", 10, 3),
    Tier("gold", "Gold VIP", 20, 4),
    Tier("platinum", "Platinum VIP", 40, 6),
)
TIERS_BY_KEY = {t.key: t for t in TIERS}

WELCOME_BONUS = 50
BASE_ATTENDANCE_POINTS = 50
EVENT_MULTIPLIERS: dict[str, Decimal] = {
    "standard": Decimal("1"),
    "quiz": Decimal("1"),
    "bingo": Decimal("1"),
    "karaoke": Decimal("1.2"),
    "gameshow": Decimal("1"),
    "drag": Decimal("1.5"),
    "tasting": Decimal("2"),
    "special": Decimal("2"),
}
MILESTONE_BONUSES = {10: 100, 25: 250, 50: 500, 100: 1000}
REDEMPTION_TTL = timedelta(hours=24)
REDEMPTION_STATUSES = ("pending", "redeemed", "cancelled", "expired")


def tier_for_events(lifetime_events: int) -> Tier:
    current = TIERS[0]
    for t in TIERS:
        if lifetime_events >= t.min_events:
            current = t
    return current


def tier_rank(key: str | None) -> int:
    for i, t in enumerate(TIERS):
        if t.key == key:
            return i
    return 0


def calculate_check_in_points(event_type: str, tier_key: str) -> int:
    multiplier = EVENT_MULTIPLIERS.get(event_type, Decimal("1"))
    tier = TIERS_BY_KEY.get(tier_key, TIERS[0])
    points = Decimal(BASE_ATTENDANCE_POINTS) * multiplier * tier.multiplier
    return int(points.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _ledger(
    s: Session,
    member: LoyaltyMember,
    points: int,
    transaction_type: str,
    *,
    description: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    user: User | None = None,
) -> LoyaltyPointTransaction:
    """Apply `points` (signed) to the member and record the ledger row."""
    new_balance = member.available_points + points
    if new_balance < 0:
        raise ValueError("Insufficient points")
    member.available_points = new_balance
    if points > 0 and transaction_type != "refunded":
        member.total_points += points
    member.updated_at = datetime.utcnow()
    tx = LoyaltyPointTransaction(
        member_id=member.id,
        points=points,
        balance_after=new_balance,
        transaction_type=transaction_type,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_user_id=user.id if user else None,
    )
    s.add(tx)
    return tx


def _require_active(member: LoyaltyMember) -> None:
    if member.status != "active":
        raise ValueError("Loyalty member is not active")


# ─────────────────────────────────────────────────────────────────────────────
# Members
# ─────────────────────────────────────────────────────────────────────────────


def get_member_for_customer(s: Session, customer_id: int) -> LoyaltyMember | None:
    return s.query(LoyaltyMember).filter(LoyaltyMember.customer_id == customer_id).one_or_none()


def enroll_member(s: Session, customer: Customer, *, user: User | None, today: date, send_welcome: bool = True) -> LoyaltyMember:
    if get_member_for_customer(s, customer.id) is not None:
        raise ValueError("Customer is already a loyalty member")
    member = LoyaltyMember(
        customer_id=customer.id,
        tier=TIERS[0].key,
        total_points=0,
        available_points=0,
        lifetime_events=0,
        status="active",
        join_date=today,
    )
    s.add(member)
    s.flush()
    _ledger(s, member, WELCOME_BONUS, "welcome", description="Welcome bonus", user=user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="loyalty.enroll",
        entity_type="LoyaltyMember",
        entity_id=str(member.id),
        metadata={"customer_id": customer.id, "welcome_bonus": WELCOME_BONUS},
    )
    if send_welcome:
        queue_templated_sms(
            s,
            "loyalty.welcome",
            customer=customer,
            context={"points": WELCOME_BONUS},
            dedupe_context={"member_id": member.id},
            related_entity_type="LoyaltyMember",
            related_entity_id=str(member.id),
            user=user,
        )
    return member


def set_member_status(s: Session, member: LoyaltyMember, status: str, *, user: User) -> LoyaltyMember:
    if status not in ("active", "suspended"):
        raise ValueError("Status must be active or suspended")
    old = member.status
    member.status = status
    member.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="loyalty.member_status", entity_type="LoyaltyMember", entity_id=str(member.id), metadata={"from": old, "to": status})
    return member


@dataclass(frozen=True)
class CheckInResult:
    check_in: LoyaltyCheckIn
    points_earned: int
    milestone_bonus: int
    old_tier: str
    new_tier: str

    @property
    def tier_upgraded(self) -> bool:
        return tier_rank(self.new_tier) > tier_rank(self.old_tier)


def check_in(
    s: Session,
    member: LoyaltyMember,
    *,
    event_date: date,
    event_type: str = "standard",
    user: User | None,
    now: datetime,
) -> CheckInResult:
    """One check-in per member per event date. Points use the tier held before this visit."""
    _require_active(member)
    if event_type not in EVENT_MULTIPLIERS:
        raise ValueError(f"Unknown event type: {event_type}")
    exists = (
        s.query(LoyaltyCheckIn.id)
        .filter(LoyaltyCheckIn.member_id == member.id, LoyaltyCheckIn.event_date == event_date)
        .first()
    )
    if exists:
        raise ValueError("Member has already checked in for this date")

    old_tier = member.tier
    points = calculate_check_in_points(event_type, old_tier)
    ci = LoyaltyCheckIn(
        member_id=member.id,
        event_date=event_date,
        event_type=event_type,
        points_earned=points,
        checked_in_at=now,
        checked_in_by_user_id=user.id if user else None,
    )
    s.add(ci)
    s.flush()
    _ledger(s, member, points, "earned", description=f"Check-in ({event_type})", reference_type="LoyaltyCheckIn", reference_id=str(ci.id), user=user)

    member.lifetime_events += 1
    member.last_visit_date = event_date
    bonus = MILESTONE_BONUSES.get(member.lifetime_events, 0)
    if bonus:
        _ledger(s, member, bonus, "bonus", description=f"{member.lifetime_events}th visit milestone", reference_type="LoyaltyCheckIn", reference_id=str(ci.id), user=user)

    new_tier = tier_for_events(member.lifetime_events)
    if tier_rank(new_tier.key) > tier_rank(member.tier):
        member.tier = new_tier.key
        logger.info("Loyalty member %s upgraded %s -> %s", member.id, old_tier, new_tier.key)
    s.flush()

    record_event(
        s,
        actor=user,
        action="loyalty.check_in",
        entity_type="LoyaltyMember",
        entity_id=str(member.id),
        metadata={
            "event_date": event_date.isoformat(),
            "event_type": event_type,
            "points": points,
            "milestone_bonus": bonus,
            "tier": member.tier,
        },
    )
    return CheckInResult(check_in=ci, points_earned=points, milestone_bonus=bonus, old_tier=old_tier, new_tier=member.tier)


def adjust_points(s: Session, member: LoyaltyMember, *, points: int, reason: str | None, user: User) -> LoyaltyPointTransaction:
    if not points:
        raise ValueError("Adjustment must be a non-zero number of points")
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A reason is required for point adjustments")
    tx = _ledger(s, member, points, "adjustment", description=reason, user=user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="loyalty.adjust_points",
        entity_type="LoyaltyMember",
        entity_id=str(member.id),
        reason=reason,
        metadata={"points": points, "balance_after": tx.balance_after},
    )
    return tx


# ─────────────────────────────────────────────────────────────────────────────
# Rewards
# ─────────────────────────────────────────────────────────────────────────────


def _clean_reward(payload: dict[str, Any]) -> dict[str, Any]:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValueError("Reward name is required.")
    cost = payload.get("points_cost")
    cost = parse_int(cost) if isinstance(cost, str) else cost
    if cost is None or cost < 1:
        raise ValueError("Points cost must be at least 1")
    tier_required = (payload.get("tier_required") or "").strip() or None
    if tier_required and tier_required not in TIERS_BY_KEY:
        raise ValueError(f"Unknown tier: {tier_required}")
    inventory = payload.get("inventory")
    inventory = parse_int(inventory) if isinstance(inventory, str) else inventory
    if inventory is not None and inventory < 0:
        raise ValueError("Inventory cannot be negative.")
    return {
        "name": name,
        "description": (payload.get("description") or "").strip() or None,
        "points_cost": cost,
        "tier_required": tier_required,
        "category": (payload.get("category") or "").strip() or None,
        "inventory": inventory,
    }


def create_reward(s: Session, payload: dict[str, Any], *, user: User) -> LoyaltyReward:
    reward = LoyaltyReward(is_active=True, **_clean_reward(payload))
    s.add(reward)
    s.flush()
    record_event(s, actor=user, action="loyalty.reward_create", entity_type="LoyaltyReward", entity_id=str(reward.id), metadata={"name": reward.name, "points_cost": reward.points_cost})
    return reward


def update_reward(s: Session, reward: LoyaltyReward, payload: dict[str, Any], *, user: User) -> LoyaltyReward:
    data = _clean_reward(payload)
    before = {k: getattr(reward, k) for k in data}
    for k, v in data.items():
        setattr(reward, k, v)
    if "is_active" in payload:
        reward.is_active = bool(payload["is_active"])
    reward.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="loyalty.reward_update", entity_type="LoyaltyReward", entity_id=str(reward.id), metadata={"before": before, "after": data})
    return reward


def delete_reward(s: Session, reward: LoyaltyReward, *, user: User) -> bool:
    """Rewards with redemptions are deactivated instead. Returns True when deleted."""
    used = s.query(RewardRedemption.id).filter(RewardRedemption.reward_id == reward.id).first() is not None
    if used:
        reward.is_active = False
        reward.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="loyalty.reward_deactivate", entity_type="LoyaltyReward", entity_id=str(reward.id))
        return False
    record_event(s, actor=user, action="loyalty.reward_delete", entity_type="LoyaltyReward", entity_id=str(reward.id), metadata={"name": reward.name})
    s.delete(reward)
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Redemptions
# ─────────────────────────────────────────────────────────────────────────────


def generate_redemption_code(rng: random.Random | None = None) -> str:
    """Three letters and four digits, e.g. ABC1234."""
    rng = rng or random.SystemRandom()
    letters = "".join(rng.choice(string.ascii_uppercase) for _ in range(3))
    return f"{letters}{rng.randrange(10000):04d}"


def _unique_code(s: Session, rng: random.Random | None = None) -> str:
    for _ in range(20):
        code = generate_redemption_code(rng)
        if not s.query(RewardRedemption.id).filter(RewardRedemption.code == code).first():
            return code
    raise ValueError("Could not generate a unique redemption code")


def create_redemption(
    s: Session,
    member: LoyaltyMember,
    reward: LoyaltyReward,
    *,
    user: User | None,
    now: datetime,
    rng: random.Random | None = None,
) -> RewardRedemption:
    _require_active(member)
    if not reward.is_active:
        raise ValueError("Reward is not available")
    if reward.tier_required and tier_rank(member.tier) < tier_rank(reward.tier_required):
        raise ValueError(f"This reward requires {TIERS_BY_KEY[reward.tier_required].name} or above")
    if reward.inventory is not None and reward.inventory <= 0:
        raise ValueError("Reward is out of stock")
    if member.available_points < reward.points_cost:
        raise ValueError("Insufficient points")

    redemption = RewardRedemption(
        member_id=member.id,
        reward_id=reward.id,
        code=_unique_code(s, rng),
        points_spent=reward.points_cost,
        status="pending",
        expires_at=now + REDEMPTION_TTL,
        created_at=now,
    )
    s.add(redemption)
    s.flush()
    _ledger(
        s,
        member,
        -reward.points_cost,
        "redeemed",
        description=f"Redeemed: {reward.name}",
        reference_type="RewardRedemption",
        reference_id=str(redemption.id),
        user=user,
    )
    if reward.inventory is not None:
        reward.inventory -= 1
    s.flush()
    record_event(
        s,
        actor=user,
        action="loyalty.redemption_create",
        entity_type="RewardRedemption",
        entity_id=str(redemption.id),
        metadata={"member_id": member.id, "reward_id": reward.id, "points_spent": reward.points_cost},
    )
    if member.customer is not None:
        queue_templated_sms(
            s,
            "loyalty.redemption_code",
            customer=member.customer,
            context={
                "reward_name": reward.name,
                "code": redemption.code,
                "expires_at": redemption.expires_at.strftime("%H:%M on %d %B"),
            },
            dedupe_context={"redemption_id": redemption.id},
            related_entity_type="RewardRedemption",
            related_entity_id=str(redemption.id),
            user=user,
            now=now,
        )
    return redemption


def validate_redemption_code(s: Session, code: str | None, *, now: datetime) -> RewardRedemption:
    code = (code or "").strip().upper()
    if not code:
        raise ValueError("Enter a redemption code")
    redemption = s.query(RewardRedemption).filter(RewardRedemption.code == code).one_or_none()
    if redemption is None:
        raise ValueError("Invalid redemption code")
    if redemption.status == "redeemed":
        raise ValueError("This code has already been used")
    if redemption.status == "cancelled":
        raise ValueError("This code has been cancelled")
    if redemption.status == "expired" or redemption.expires_at < now:
        raise ValueError("This code has expired")
    return redemption


def process_redemption(s: Session, code: str | None, *, user: User, now: datetime) -> RewardRedemption:
    redemption = validate_redemption_code(s, code, now=now)
    redemption.status = "redeemed"
    redemption.redeemed_at = now
    redemption.redeemed_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="loyalty.redemption_process",
        entity_type="RewardRedemption",
        entity_id=str(redemption.id),
        metadata={"code": redemption.code, "member_id": redemption.member_id},
    )
    return redemption


def cancel_redemption(s: Session, redemption: RewardRedemption, *, user: User, now: datetime) -> RewardRedemption:
    if redemption.status != "pending":
        raise ValueError(f"Only pending redemptions can be cancelled (status is {redemption.status})")
    redemption.status = "cancelled"
    redemption.cancelled_at = now
    _ledger(
        s,
        redemption.member,
        redemption.points_spent,
        "refunded",
        description="Redemption cancelled - points refunded",
        reference_type="RewardRedemption",
        reference_id=str(redemption.id),
        user=user,
    )
    if redemption.reward is not None and redemption.reward.inventory is not None:
        redemption.reward.inventory += 1
    record_event(
        s,
        actor=user,
        action="loyalty.redemption_cancel",
        entity_type="RewardRedemption",
        entity_id=str(redemption.id),
        metadata={"points_refunded": redemption.points_spent},
    )
    return redemption


def expire_redemptions(s: Session, *, now: datetime, user: User | None = None) -> int:
    """Pending codes past their expiry lapse; points are not refunded."""
    stale = (
        s.query(RewardRedemption)
        .filter(RewardRedemption.status == "pending", RewardRedemption.expires_at < now)
        .all()
    )
    for r in stale:
        r.status = "expired"
    if stale:
        record_event(s, actor=user, action="loyalty.redemptions_expired", entity_type="RewardRedemption", metadata={"count": len(stale)})
        logger.info("Expired %s redemption codes", len(stale))
    return len(stale)


def loyalty_stats(s: Session) -> dict[str, Any]:
    members = s.query(LoyaltyMember).all()
    by_tier = {t.key: 0 for t in TIERS}
    for m in members:
        by_tier[m.tier] = by_tier.get(m.tier, 0) + 1
    pending = s.query(RewardRedemption.id).filter(RewardRedemption.status == "pending").count()
    return {
        "member_count": len(members),
        "active_members": sum(1 for m in members if m.status == "active"),
        "by_tier": by_tier,
        "points_outstanding": sum(m.available_points for m in members),
        "pending_redemptions": pending,
    }
