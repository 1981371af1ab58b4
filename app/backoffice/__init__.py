import logging
import os
from datetime import timedelta
from decimal import Decimal

from flask import Flask, flash, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv

from app.backoffice.config import load_config
from app.backoffice.db import init_db, teardown_db_session
from app.backoffice.routes import bp as routes_bp
from app.backoffice.auth import bp as auth_bp, load_current_user
from app.backoffice.admin import bp as admin_bp
from app.backoffice.modules.customers.admin import bp as customers_bp
from app.backoffice.modules.table_bookings.admin import bp as table_bookings_bp
from app.backoffice.modules.private_bookings.admin import bp as private_bookings_bp
from app.backoffice.modules.invoices.admin import bp as invoices_bp
from app.backoffice.modules.loyalty.admin import bp as loyalty_bp
from app.backoffice.modules.messaging.admin import bp as messaging_bp
from app.backoffice.modules.calendar_notes.admin import bp as calendar_notes_bp
from app.backoffice.modules.reporting.admin import bp as reporting_bp

logger = logging.getLogger(__name__)

MODULE_BLUEPRINTS = (
    customers_bp,
    table_bookings_bp,
    private_bookings_bp,
    invoices_bp,
    loyalty_bp,
    messaging_bp,
    calendar_notes_bp,
    reporting_bp,
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=12)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.backoffice.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.backoffice.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm, "venue_name": app.config.get("VENUE_NAME")}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%d %b %Y") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("timeformat")
    def _timeformat_filter(value) -> str:
        if value is None:
            return ""
        return value.strftime("%H:%M")

    @app.template_filter("money")
    def _money_filter(value) -> str:
        if value is None:
            return "£0.00"
        return f"£{Decimal(value):,.2f}"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout post before a session exists
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):

        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for module_bp in MODULE_BLUEPRINTS:
        app.register_blueprint(module_bp, url_prefix="/admin")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("admin.index")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")
    return app
