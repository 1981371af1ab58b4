from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.modules.customers.models import Customer
from app.backoffice.utils import current_user, parse_date, parse_int, venue_now, venue_today

from .models import LoyaltyCheckIn, LoyaltyMember, LoyaltyPointTransaction, LoyaltyReward, RewardRedemption
from .service import (
    EVENT_MULTIPLIERS,
    TIERS,
    TIERS_BY_KEY,
    adjust_points,
    cancel_redemption,
    check_in,
    create_redemption,
    create_reward,
    delete_reward,
    enroll_member,
    loyalty_stats,
    process_redemption,
    set_member_status,
    tier_rank,
    update_reward,
    validate_redemption_code,
)

bp = Blueprint("loyalty", __name__)

REWARD_FIELDS = ("name", "description", "points_cost", "tier_required", "category", "inventory")


def _get_member_or_404(member_id: int) -> LoyaltyMember:
    m = db_session().get(LoyaltyMember, member_id)
    if not m:
        abort(404)
    return m


def _member_detail(member_id: int):
    return redirect(url_for("loyalty.members_detail", member_id=member_id))


@bp.get("/loyalty")
@require_permission("loyalty.view")
def members_list():
    s = db_session()
    tier = (request.args.get("tier") or "").strip()
    q_text = (request.args.get("q") or "").strip()
    q = s.query(LoyaltyMember).join(Customer, Customer.id == LoyaltyMember.customer_id)
    if tier in TIERS_BY_KEY:
        q = q.filter(LoyaltyMember.tier == tier)
    if q_text:
        like = f"%{q_text}%"
        q = q.filter((Customer.first_name.ilike(like)) | (Customer.last_name.ilike(like)) | (Customer.mobile_number.ilike(like)))
    members = q.order_by(LoyaltyMember.available_points.desc()).limit(500).all()
    return render_template(
        "admin/loyalty/list.html",
        members=members,
        stats=loyalty_stats(s),
        tiers=TIERS,
        tier=tier,
        q=q_text,
    )


@bp.post("/loyalty/enroll")
@require_permission("loyalty.manage")
def members_enroll():
    s = db_session()
    customer_id = parse_int(request.form.get("customer_id"))
    customer = s.get(Customer, customer_id) if customer_id else None
    if customer is None:
        flash("Customer not found.", "danger")
        return redirect(url_for("loyalty.members_list"))
    try:
        m = enroll_member(s, customer, user=current_user(), today=venue_today(), send_welcome=request.form.get("send_welcome") != "0")
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("loyalty.members_list"))
    flash(f"{customer.full_name} enrolled.", "success")
    return _member_detail(m.id)


@bp.get("/loyalty/members/<int:member_id>")
@require_permission("loyalty.view")
def members_detail(member_id: int):
    s = db_session()
    m = _get_member_or_404(member_id)
    transactions = (
        s.query(LoyaltyPointTransaction)
        .filter(LoyaltyPointTransaction.member_id == m.id)
        .order_by(LoyaltyPointTransaction.created_at.desc(), LoyaltyPointTransaction.id.desc())
        .limit(100)
        .all()
    )
    check_ins = s.query(LoyaltyCheckIn).filter(LoyaltyCheckIn.member_id == m.id).order_by(LoyaltyCheckIn.event_date.desc()).limit(50).all()
    redemptions = s.query(RewardRedemption).filter(RewardRedemption.member_id == m.id).order_by(RewardRedemption.created_at.desc()).all()
    rewards = [
        r
        for r in s.query(LoyaltyReward).filter(LoyaltyReward.is_active.is_(True)).order_by(LoyaltyReward.points_cost.asc()).all()
        if not r.tier_required or tier_rank(m.tier) >= tier_rank(r.tier_required)
    ]
    return render_template(
        "admin/loyalty/detail.html",
        member=m,
        tier=TIERS_BY_KEY.get(m.tier),
        transactions=transactions,
        check_ins=check_ins,
        redemptions=redemptions,
        rewards=rewards,
        event_types=sorted(EVENT_MULTIPLIERS),
        today=venue_today(),
    )


@bp.post("/loyalty/members/<int:member_id>/check-in")
@require_permission("loyalty.manage")
def members_check_in(member_id: int):
    s = db_session()
    m = _get_member_or_404(member_id)
    try:
        result = check_in(
            s,
            m,
            event_date=parse_date(request.form.get("event_date")) or venue_today(),
            event_type=(request.form.get("event_type") or "standard").strip(),
            user=current_user(),
            now=venue_now(),
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return _member_detail(member_id)
    msg = f"Checked in: {result.points_earned} points"
    if result.milestone_bonus:
        msg += f" plus a {result.milestone_bonus} point milestone bonus"
    if result.tier_upgraded:
        msg += f". Upgraded to {TIERS_BY_KEY[result.new_tier].name}!"
    flash(msg, "success")
    return _member_detail(member_id)


@bp.post("/loyalty/members/<int:member_id>/adjust")
@require_permission("loyalty.manage")
def members_adjust(member_id: int):
    s = db_session()
    m = _get_member_or_404(member_id)
    try:
        adjust_points(s, m, points=parse_int(request.form.get("points")) or 0, reason=request.form.get("reason"), user=current_user())
        s.commit()
        flash("Points adjusted.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return _member_detail(member_id)


@bp.post("/loyalty/members/<int:member_id>/status")
@require_permission("loyalty.manage")
def members_status(member_id: int):
    s = db_session()
    m = _get_member_or_404(member_id)
    try:
        set_member_status(s, m, (request.form.get("status") or "").strip(), user=current_user())
        s.commit()
        flash("Member status updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return _member_detail(member_id)


@bp.post("/loyalty/members/<int:member_id>/redeem")
@require_permission("loyalty.manage")
def members_redeem(member_id: int):
    s = db_session()
    m = _get_member_or_404(member_id)
    reward_id = parse_int(request.form.get("reward_id"))
    reward = s.get(LoyaltyReward, reward_id) if reward_id else None
    if reward is None:
        flash("Reward not found.", "danger")
        return _member_detail(member_id)
    try:
        r = create_redemption(s, m, reward, user=current_user(), now=venue_now())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return _member_detail(member_id)
    flash(f"Redemption code {r.code} issued.", "success")
    return _member_detail(member_id)


# ─────────────────────────────────────────────────────────────────────────────
# Rewards
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/loyalty/rewards")
@require_permission("loyalty.view")
def rewards_list():
    rewards = db_session().query(LoyaltyReward).order_by(LoyaltyReward.is_active.desc(), LoyaltyReward.points_cost.asc()).all()
    return render_template("admin/loyalty/rewards.html", rewards=rewards, tiers=TIERS)


@bp.post("/loyalty/rewards/new")
@require_permission("loyalty.manage")
def rewards_new_post():
    s = db_session()
    try:
        create_reward(s, {k: request.form.get(k) for k in REWARD_FIELDS}, user=current_user())
        s.commit()
        flash("Reward created.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("loyalty.rewards_list"))


@bp.post("/loyalty/rewards/<int:reward_id>/edit")
@require_permission("loyalty.manage")
def rewards_edit_post(reward_id: int):
    s = db_session()
    reward = s.get(LoyaltyReward, reward_id)
    if not reward:
        abort(404)
    payload = {k: request.form.get(k) for k in REWARD_FIELDS}
    payload["is_active"] = request.form.get("is_active") == "on"
    try:
        update_reward(s, reward, payload, user=current_user())
        s.commit()
        flash("Reward updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("loyalty.rewards_list"))


@bp.post("/loyalty/rewards/<int:reward_id>/delete")
@require_permission("loyalty.manage")
def rewards_delete(reward_id: int):
    s = db_session()
    reward = s.get(LoyaltyReward, reward_id)
    if not reward:
        abort(404)
    deleted = delete_reward(s, reward, user=current_user())
    s.commit()
    flash("Reward deleted." if deleted else "Reward has redemptions, so it was deactivated instead.", "success" if deleted else "warning")
    return redirect(url_for("loyalty.rewards_list"))


# ─────────────────────────────────────────────────────────────────────────────
# Redemption desk
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/loyalty/redeem")
@require_permission("loyalty.view")
def redeem_get():
    code = (request.args.get("code") or "").strip()
    redemption = None
    error = None
    if code:
        try:
            redemption = validate_redemption_code(db_session(), code, now=venue_now())
        except ValueError as e:
            error = str(e)
    return render_template("admin/loyalty/redeem.html", code=code, redemption=redemption, error=error)


@bp.post("/loyalty/redeem")
@require_permission("loyalty.manage")
def redeem_post():
    s = db_session()
    try:
        r = process_redemption(s, request.form.get("code"), user=current_user(), now=venue_now())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("loyalty.redeem_get"))
    flash(f"{r.reward.name} redeemed for {r.member.customer.full_name}.", "success")
    return redirect(url_for("loyalty.redeem_get"))


@bp.post("/loyalty/redemptions/<int:redemption_id>/cancel")
@require_permission("loyalty.manage")
def redemptions_cancel(redemption_id: int):
    s = db_session()
    r = s.get(RewardRedemption, redemption_id)
    if not r:
        abort(404)
    try:
        cancel_redemption(s, r, user=current_user(), now=venue_now())
        s.commit()
        flash("Redemption cancelled and points refunded.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return _member_detail(r.member_id)
