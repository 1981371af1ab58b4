"""Tests for the loyalty programme: enrolment, check-ins, tiers and redemptions."""
import random
import re
from datetime import date, datetime, timedelta

import pytest

from app.backoffice.modules.loyalty.models import LoyaltyPointTransaction, LoyaltyReward
from app.backoffice.modules.loyalty.service import (
    adjust_points,
    calculate_check_in_points,
    cancel_redemption,
    check_in,
    create_redemption,
    create_reward,
    delete_reward,
    enroll_member,
    expire_redemptions,
    generate_redemption_code,
    loyalty_stats,
    process_redemption,
    set_member_status,
    tier_for_events,
    validate_redemption_code,
)
from app.backoffice.modules.messaging.models import Message

NOW = datetime(2026, 3, 2, 20, 0)


@pytest.fixture()
def member(db, admin, customer):
    return enroll_member(db, customer, user=admin, today=NOW.date())


@pytest.fixture()
def reward(db, admin):
    return create_reward(db, {"name": "Free pint", "points_cost": "100", "inventory": "2"}, user=admin)


def _visits(db, member, admin, n, *, start=date(2026, 1, 1)):
    return [check_in(db, member, event_date=start + timedelta(days=i), user=admin, now=NOW) for i in range(n)]


@pytest.mark.parametrize(
    "events,tier",
    [(0, "member"), (4, "member"), (5, "bronze"), (10, "silver"), (20, "gold"), (39, "gold"), (40, "platinum")],
)
def test_tier_thresholds(events, tier):
    assert tier_for_events(events).key == tier


@pytest.mark.parametrize(
    "event_type,tier,points",
    [("standard", "member", 50), ("tasting", "member", 100), ("karaoke", "gold", 240), ("drag", "platinum", 450)],
)
def test_check_in_points(event_type, tier, points):
    assert calculate_check_in_points(event_type, tier) == points


def test_enroll_awards_welcome_bonus(db, admin, customer, member):
    assert member.tier == "member"
    assert member.available_points == 50
    assert member.total_points == 50
    tx = db.query(LoyaltyPointTransaction).filter(LoyaltyPointTransaction.member_id == member.id).one()
    assert tx.transaction_type == "welcome"
    assert db.query(Message).filter(Message.template_key == "loyalty.welcome").count() == 1

    with pytest.raises(ValueError, match="already a loyalty member"):
        enroll_member(db, customer, user=admin, today=NOW.date())


def test_check_in_once_per_date(db, admin, member):
    result = check_in(db, member, event_date=date(2026, 3, 2), event_type="tasting", user=admin, now=NOW)
    assert result.points_earned == 100
    assert member.available_points == 150
    assert member.lifetime_events == 1
    assert member.last_visit_date == date(2026, 3, 2)

    with pytest.raises(ValueError, match="already checked in"):
        check_in(db, member, event_date=date(2026, 3, 2), user=admin, now=NOW)
    with pytest.raises(ValueError, match="Unknown event type"):
        check_in(db, member, event_date=date(2026, 3, 3), event_type="darts", user=admin, now=NOW)


def test_points_use_tier_held_before_visit(db, admin, member):
    results = _visits(db, member, admin, 5)
    assert [r.points_earned for r in results] == [50] * 5
    assert results[-1].tier_upgraded
    assert member.tier == "bronze"

    sixth = check_in(db, member, event_date=date(2026, 2, 1), user=admin, now=NOW)
    assert sixth.points_earned == 100
    assert not sixth.tier_upgraded


def test_milestone_bonus_is_separate_ledger_row(db, admin, member):
    results = _visits(db, member, admin, 10)
    tenth = results[-1]
    assert tenth.points_earned == 100
    assert tenth.milestone_bonus == 100
    assert tenth.new_tier == "silver"
    bonus = (
        db.query(LoyaltyPointTransaction)
        .filter(LoyaltyPointTransaction.member_id == member.id, LoyaltyPointTransaction.transaction_type == "bonus")
        .one()
    )
    assert bonus.points == 100
    # welcome 50, five visits at 50, five at 100, milestone 100
    assert member.available_points == 50 + 5 * 50 + 5 * 100 + 100


def test_suspended_member_cannot_check_in(db, admin, member):
    set_member_status(db, member, "suspended", user=admin)
    with pytest.raises(ValueError, match="not active"):
        check_in(db, member, event_date=date(2026, 3, 2), user=admin, now=NOW)
    with pytest.raises(ValueError, match="active or suspended"):
        set_member_status(db, member, "banned", user=admin)


def test_adjust_points(db, admin, member):
    with pytest.raises(ValueError, match="reason is required"):
        adjust_points(db, member, points=10, reason=" ", user=admin)
    with pytest.raises(ValueError, match="Insufficient points"):
        adjust_points(db, member, points=-60, reason="Correction", user=admin)
    tx = adjust_points(db, member, points=-20, reason="Correction", user=admin)
    assert tx.balance_after == 30
    assert member.total_points == 50


def test_redemption_code_format():
    code = generate_redemption_code(random.Random(7))
    assert re.fullmatch(r"[A-Z]{3}\d{4}", code)


def test_redeem_flow(db, admin, member, reward):
    with pytest.raises(ValueError, match="Insufficient points"):
        create_redemption(db, member, reward, user=admin, now=NOW)
    adjust_points(db, member, points=200, reason="Goodwill", user=admin)

    r = create_redemption(db, member, reward, user=admin, now=NOW)
    assert r.status == "pending"
    assert r.expires_at == NOW + timedelta(hours=24)
    assert member.available_points == 150
    assert reward.inventory == 1
    msg = db.query(Message).filter(Message.template_key == "loyalty.redemption_code").one()
    assert r.code in msg.body

    assert validate_redemption_code(db, r.code.lower(), now=NOW).id == r.id
    process_redemption(db, r.code, user=admin, now=NOW + timedelta(hours=1))
    assert r.status == "redeemed"
    with pytest.raises(ValueError, match="already been used"):
        validate_redemption_code(db, r.code, now=NOW)
    with pytest.raises(ValueError, match="Invalid redemption code"):
        validate_redemption_code(db, "ZZZ0000" if r.code != "ZZZ0000" else "AAA0000", now=NOW)


def test_cancel_refunds_points(db, admin, member, reward):
    adjust_points(db, member, points=50, reason="Goodwill", user=admin)
    r = create_redemption(db, member, reward, user=admin, now=NOW)
    assert member.available_points == 0

    cancel_redemption(db, r, user=admin, now=NOW)
    assert r.status == "cancelled"
    assert member.available_points == 100
    assert member.total_points == 100
    assert reward.inventory == 2
    with pytest.raises(ValueError, match="has been cancelled"):
        validate_redemption_code(db, r.code, now=NOW)
    with pytest.raises(ValueError, match="Only pending"):
        cancel_redemption(db, r, user=admin, now=NOW)


def test_expired_codes_keep_points_spent(db, admin, member, reward):
    adjust_points(db, member, points=50, reason="Goodwill", user=admin)
    r = create_redemption(db, member, reward, user=admin, now=NOW)

    later = NOW + timedelta(hours=25)
    with pytest.raises(ValueError, match="expired"):
        validate_redemption_code(db, r.code, now=later)
    assert expire_redemptions(db, now=NOW + timedelta(hours=1)) == 0
    assert expire_redemptions(db, now=later) == 1
    assert r.status == "expired"
    assert member.available_points == 0


def test_reward_restrictions(db, admin, member):
    adjust_points(db, member, points=500, reason="Goodwill", user=admin)
    gold = create_reward(db, {"name": "Chef's table", "points_cost": "100", "tier_required": "gold"}, user=admin)
    with pytest.raises(ValueError, match="requires Gold VIP or above"):
        create_redemption(db, member, gold, user=admin, now=NOW)

    single = create_reward(db, {"name": "Signed poster", "points_cost": "10", "inventory": "1"}, user=admin)
    create_redemption(db, member, single, user=admin, now=NOW)
    with pytest.raises(ValueError, match="out of stock"):
        create_redemption(db, member, single, user=admin, now=NOW)

    with pytest.raises(ValueError, match="Unknown tier"):
        create_reward(db, {"name": "Bad", "points_cost": "1", "tier_required": "diamond"}, user=admin)


def test_delete_reward(db, admin, member, reward):
    unused = create_reward(db, {"name": "Crisps", "points_cost": "5"}, user=admin)
    unused_id = unused.id
    assert delete_reward(db, unused, user=admin) is True
    db.flush()
    assert db.get(LoyaltyReward, unused_id) is None

    adjust_points(db, member, points=100, reason="Goodwill", user=admin)
    create_redemption(db, member, reward, user=admin, now=NOW)
    assert delete_reward(db, reward, user=admin) is False
    assert not reward.is_active


def test_stats(db, admin, member):
    _visits(db, member, admin, 5)
    stats = loyalty_stats(db)
    assert stats["member_count"] == 1
    assert stats["by_tier"]["bronze"] == 1
    assert stats["points_outstanding"] == member.available_points
