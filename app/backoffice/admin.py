import re
from datetime import datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from werkzeug.security import generate_password_hash

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import AuditEvent, Role, User
from app.backoffice.rbac import require_permission, user_has_permission
from app.backoffice.modules.reporting.service import dashboard_snapshot
from app.backoffice.utils import current_user, parse_date, venue_today

bp = Blueprint("admin", __name__)

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MIN_PASSWORD_LENGTH = 8


def _password_errors(password: str, password_confirm: str) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    if password != password_confirm:
        return ["Passwords do not match."]
    return []


def _selected_roles(s) -> list[Role]:
    role_ids = [int(r) for r in request.form.getlist("role_ids") if r.strip().isdigit()]
    if not role_ids:
        return []
    return s.query(Role).filter(Role.id.in_(role_ids)).all()


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    snapshot = None
    if user_has_permission(getattr(g, "current_user", None), "reports.view"):
        snapshot = dashboard_snapshot(s, today=venue_today())
    return render_template("admin/index.html", snapshot=snapshot)


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = current_user()
    role_keys = sorted({r.key for r in user.roles})
    perm_keys = sorted({p.key for r in user.roles for p in r.permissions})
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=perm_keys)


@bp.post("/me")
@require_permission("admin.view")
def me_update():
    s = db_session()
    user = current_user()
    display_name = (request.form.get("display_name") or "").strip() or None
    if display_name and len(display_name) > 128:
        flash("Display name must be at most 128 characters.", "danger")
        return redirect(url_for("admin.me"))
    before = user.display_name
    user.display_name = display_name
    record_event(
        s,
        actor=user,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": {"display_name": before}, "after": {"display_name": display_name}},
    )
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("admin.me"))


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Latest 200 audit events, filterable by action, actor email, entity type
    and date range (YYYY-MM-DD, inclusive).
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Accounts
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/accounts")
@require_permission("admin.users")
def accounts_list():
    s = db_session()
    users = s.query(User).order_by(User.email.asc()).all()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return render_template("admin/accounts/list.html", users=users, roles=roles)


@bp.get("/accounts/new")
@require_permission("admin.users")
def accounts_new_get():
    roles = db_session().query(Role).order_by(Role.name.asc()).all()
    return render_template("admin/accounts/new.html", roles=roles)


@bp.post("/accounts/new")
@require_permission("admin.users")
def accounts_new_post():
    s = db_session()
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not _EMAIL_RE.match(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    errors += _password_errors(password, request.form.get("password_confirm") or "")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.accounts_new_get"))

    new_user = User(
        email=email,
        display_name=(request.form.get("display_name") or "").strip() or None,
        password_hash=generate_password_hash(password),
        is_active=True,
    )
    s.add(new_user)
    s.flush()
    new_user.roles.extend(_selected_roles(s))
    record_event(
        s,
        actor=current_user(),
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "roles": [r.key for r in new_user.roles]},
    )
    s.commit()
    flash(f"Account created for {email}.", "success")
    return redirect(url_for("admin.accounts_list"))


@bp.get("/accounts/<int:user_id>")
@require_permission("admin.users")
def accounts_detail(user_id: int):
    s = db_session()
    account = s.get(User, user_id)
    if not account:
        abort(404)
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return render_template("admin/accounts/detail.html", account=account, roles=roles)


@bp.post("/accounts/<int:user_id>/update")
@require_permission("admin.users")
def accounts_update(user_id: int):
    s = db_session()
    actor = current_user()
    account = s.get(User, user_id)
    if not account:
        abort(404)
    if account.id == actor.id:
        flash("You cannot modify your own account from this page.", "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))

    before = {"is_active": account.is_active, "roles": [r.key for r in account.roles]}
    account.is_active = request.form.get("is_active") == "1"
    account.roles = _selected_roles(s)
    after = {"is_active": account.is_active, "roles": [r.key for r in account.roles]}
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(account.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    flash(f"Account updated for {account.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))


@bp.post("/accounts/<int:user_id>/reset-password")
@require_permission("admin.users")
def accounts_reset_password(user_id: int):
    s = db_session()
    actor = current_user()
    account = s.get(User, user_id)
    if not account:
        abort(404)

    password = request.form.get("password") or ""
    errors = _password_errors(password, request.form.get("password_confirm") or "")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))

    account.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=actor,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(account.id),
        metadata={"target_email": account.email, "reset_by": actor.email},
    )
    s.commit()
    flash(f"Password reset for {account.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))
