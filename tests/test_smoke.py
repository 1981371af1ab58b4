import time

import pytest
from werkzeug.security import generate_password_hash

from app.backoffice.auth import _failed_logins, _is_throttled
from app.backoffice.db import session_scope
from app.backoffice.models import Permission, Role, User

ADMIN_PAGES = [
    "/admin/",
    "/admin/me",
    "/admin/audit",
    "/admin/accounts",
    "/admin/accounts/new",
    "/admin/customers",
    "/admin/customers/new",
    "/admin/table-bookings",
    "/admin/table-bookings/new",
    "/admin/table-bookings/tables",
    "/admin/private-bookings",
    "/admin/private-bookings/new",
    "/admin/invoices",
    "/admin/invoices/new",
    "/admin/invoices/vendors",
    "/admin/invoices/catalog",
    "/admin/invoices/recurring",
    "/admin/invoices/recurring/new",
    "/admin/quotes",
    "/admin/quotes/new",
    "/admin/loyalty",
    "/admin/loyalty/rewards",
    "/admin/loyalty/redeem",
    "/admin/messages",
    "/admin/messages/templates",
    "/admin/calendar-notes",
    "/admin/reports/table-bookings",
]


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_admin_access(client):
    # Anonymous should be forbidden
    r = client.get("/admin/")
    assert r.status_code in (302, 403)

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200


def test_bad_password_rejected(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert r.status_code in (200, 401)
    assert client.get("/admin/").status_code in (302, 403)


@pytest.mark.parametrize("path", ADMIN_PAGES)
def test_admin_pages_render(admin_client, path):
    r = admin_client.get(path)
    assert r.status_code == 200, path


def test_post_without_csrf_token_rejected(admin_client):
    r = admin_client.post("/admin/customers/new", data={"first_name": "No", "mobile_number": "07700900999"})
    assert r.status_code == 400


def test_missing_permission_is_forbidden(app, client):
    with session_scope(app) as s:
        view = s.query(Permission).filter(Permission.key == "admin.view").one()
        r = Role(key="viewer", name="Viewer")
        r.permissions.append(view)
        u = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])

    client.post("/auth/login", data={"email": "viewer@example.com", "password": "pw"})
    assert client.get("/admin/").status_code == 200
    assert client.get("/admin/invoices").status_code == 403


def test_failed_sign_ins_are_throttled(app, client):
    app.config["LOGIN_MAX_ATTEMPTS"] = 2
    for _ in range(2):
        client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"})

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=True)
    assert b"Too many failed sign-ins" in r.data
    assert client.get("/admin/").status_code in (302, 403)

    # Throttle is per email, so another account can still sign in.
    with session_scope(app) as s:
        s.add(User(email="other@example.com", password_hash=generate_password_hash("pw"), is_active=True))
    r = client.post("/auth/login", data={"email": "other@example.com", "password": "pw"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/")


def test_expired_sign_in_failures_are_forgotten(app, client):
    app.config["LOGIN_MAX_ATTEMPTS"] = 2
    stale = time.monotonic() - app.config.get("LOGIN_WINDOW_SECONDS", 300) - 60
    with app.app_context():
        failures = _failed_logins()
    failures[("127.0.0.1", "ghost@example.com")] = [stale, stale, stale]
    failures[("127.0.0.1", "admin@example.com")] = [stale, stale]

    with app.test_request_context():
        assert _is_throttled(("127.0.0.1", "ghost@example.com")) is False
    assert ("127.0.0.1", "ghost@example.com") not in failures

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert b"Too many failed sign-ins" not in r.data
    assert len(failures[("127.0.0.1", "admin@example.com")]) == 1


def test_deactivated_user_is_signed_out(app, admin_client):
    assert admin_client.get("/admin/").status_code == 200
    with session_scope(app) as s:
        s.query(User).filter(User.email == "admin@example.com").one().is_active = False
    assert admin_client.get("/admin/").status_code in (302, 403)
