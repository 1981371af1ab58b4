from __future__ import annotations

import time
import uuid
from collections import defaultdict

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.utils import venue_now

bp = Blueprint("auth", __name__)

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz", "/auth/login")


def _failed_logins() -> dict[tuple[str, str], list[float]]:
    # Per-app so each worker (and each test app) keeps its own window.
    return current_app.extensions.setdefault("failed_logins", defaultdict(list))


def _is_throttled(key: tuple[str, str]) -> bool:
    window = current_app.config.get("LOGIN_WINDOW_SECONDS", 300)
    cutoff = time.monotonic() - window
    attempts = _failed_logins()
    recent = [t for t in attempts.get(key, ()) if t > cutoff]
    if not recent:
        attempts.pop(key, None)
        return False
    attempts[key] = recent
    return len(recent) >= current_app.config.get("LOGIN_MAX_ATTEMPTS", 5)


def load_current_user() -> None:
    """
    Resolve g.current_user from the session cookie and tag the request with
    a request_id for audit rows and log lines. Deactivated staff are signed
    out on their next request.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(_PUBLIC_PREFIXES):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        user = db_session().get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("Could not load staff user %s, clearing session: %s", user_id, e)
        user = None
    if user is None or not user.is_active:
        session.clear()
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None) is not None:
        return redirect(url_for("admin.index"))
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    key = (request.remote_addr or "unknown", email)

    if _is_throttled(key):
        minutes = max(1, current_app.config.get("LOGIN_WINDOW_SECONDS", 300) // 60)
        flash(f"Too many failed sign-ins. Try again in {minutes} minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        _failed_logins()[key].append(time.monotonic())
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email or "-",
            reason="Invalid credentials",
            metadata={"ip": key[0]},
        )
        s.commit()
        current_app.logger.info("Failed sign-in for %s from %s", email, key[0])
        flash("Invalid email or password.", "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))

    _failed_logins().pop(key, None)
    # Fresh session on sign-in; the CSRF token is reissued on the next request.
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    user.last_login_at = venue_now()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()

    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("admin.index"))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    flash("Signed out.", "success")
    return redirect(url_for("auth.login_get"))
