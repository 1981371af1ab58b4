import pytest
from werkzeug.security import generate_password_hash

from app.backoffice import create_app
from app.backoffice.db import session_scope
from app.backoffice.models import Base, Permission, Role, User
from app.backoffice.modules.customers.models import Customer
from scripts.init_db import PERMISSIONS


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "TWILIO_FROM_NUMBER",
        "SMTP_HOST",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        for key, name in PERMISSIONS:
            r.permissions.append(Permission(key=key, name=name))
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(app):
    """Session inside an app context; committed at the end of the test."""
    with app.app_context():
        with session_scope(app) as s:
            yield s


@pytest.fixture()
def admin(db):
    return db.query(User).filter(User.email == "admin@example.com").one()


@pytest.fixture()
def customer(db):
    c = Customer(first_name="Sam", last_name="Taylor", mobile_number="+447700900123", email="sam@example.com")
    db.add(c)
    db.flush()
    return c


@pytest.fixture()
def admin_client(client):
    """Logged-in client whose session carries csrf_token "t"."""
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302
    with client.session_transaction() as sess:
        sess["csrf_token"] = "t"
    return client
