"""Tests for the operational scripts: seeding, customer import and daily jobs."""
from datetime import timedelta

from app.backoffice.db import session_scope
from app.backoffice.models import Base, Role, User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.private_bookings.models import PrivateBooking
from app.backoffice.modules.private_bookings.service import create_booking as create_private_booking
from app.backoffice.modules.table_bookings.models import BookingPolicy
from app.backoffice.utils import venue_now
from scripts._db_utils import create_script_engine, script_session
from scripts.import_customers import import_customer_rows, map_headers, read_rows
from scripts.init_db import PERMISSIONS, seed_only
from scripts.run_daily_jobs import run_daily_jobs


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Owner@Venue.example")
    monkeypatch.setenv("ADMIN_PASSWORD", "secret")
    url = f"sqlite:///{tmp_path / 'seed.db'}"
    engine = create_script_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    seed_only(database_url=url)
    seed_only(database_url=url)

    with script_session(url) as s:
        assert s.query(User).count() == 1
        owner = s.query(User).one()
        assert owner.email == "owner@venue.example"
        admin_role = s.query(Role).filter(Role.key == "admin").one()
        assert {p.key for p in admin_role.permissions} == {k for k, _ in PERMISSIONS}
        assert {r.key for r in s.query(Role).all()} == {"admin", "manager", "staff"}
        manager = s.query(Role).filter(Role.key == "manager").one()
        assert "admin.users" not in {p.key for p in manager.permissions}
        assert {p.booking_type for p in s.query(BookingPolicy).all()} == {"regular", "sunday_lunch"}


def test_map_headers():
    assert map_headers(["Forename", "Surname", "Mobile", None, "E-mail"]) == {
        "first_name": 0,
        "last_name": 1,
        "mobile_number": 2,
        "email": 4,
    }


def test_import_customer_rows(db, admin, customer):
    rows = [
        ["First Name", "Last Name", "Phone", "Email", "SMS"],
        ["Priya", "Shah", 447700900456.0, "priya@example.com", "yes"],
        ["Sam", "Taylor", "07700 900123", "", ""],
        ["", "Nobody", "", "", ""],
        ["Bad", "Email", "", "not-an-email", ""],
        ["Quiet", "Guest", "07700 900789", "", "no"],
    ]
    result = import_customer_rows(db, rows, user=admin)
    assert result.created == 2
    assert result.skipped == 2
    assert result.errors == ["Row 5: Invalid email format."]

    priya = db.query(Customer).filter(Customer.first_name == "Priya").one()
    assert priya.mobile_number == "+447700900456"
    quiet = db.query(Customer).filter(Customer.first_name == "Quiet").one()
    assert quiet.sms_opt_in is False


def test_import_requires_first_name_column(db, admin):
    result = import_customer_rows(db, [["Phone"], ["07700 900456"]], user=admin)
    assert result.errors == ["No first name column found in header row."]


def test_read_rows_from_xlsx(tmp_path):
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.append(["First Name", "Mobile"])
    ws.append(["Priya", "07700 900456"])
    path = tmp_path / "customers.xlsx"
    wb.save(path)

    assert read_rows(path) == [["First Name", "Mobile"], ["Priya", "07700 900456"]]


def test_read_rows_from_csv(tmp_path):
    path = tmp_path / "customers.csv"
    path.write_text("\ufeffFirst Name,Mobile\nPriya,07700 900456\n", encoding="utf-8")
    assert read_rows(path) == [["First Name", "Mobile"], ["Priya", "07700 900456"]]


def test_daily_jobs_expire_holds(app):
    now = venue_now()
    with session_scope(app) as s:
        b = create_private_booking(
            s,
            {
                "customer_first_name": "Priya",
                "contact_phone": "07700 900456",
                "event_date": (now + timedelta(days=60)).date().isoformat(),
                "start_time": "18:00",
            },
            user=None,
            now=now - timedelta(days=20),
        )
        booking_id = b.id

    assert run_daily_jobs(["invoices", "quotes", "recurring", "holds", "redemptions", "dispatch"]) == 0

    with session_scope(app) as s:
        b = s.get(PrivateBooking, booking_id)
        assert b.status == "cancelled"
        assert b.cancellation_reason.startswith("Hold period expired")
