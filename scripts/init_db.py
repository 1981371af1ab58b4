import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.backoffice.models import Permission, Role, User
from app.backoffice.modules.table_bookings.models import BookingPolicy
from app.backoffice.modules.table_bookings.policy import BOOKING_TYPES, default_policy
from scripts._db_utils import script_database_url, script_session

PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view shell"),
    ("admin.users", "Admin: manage staff accounts"),
    ("settings.manage", "Settings: manage venue settings and calendar"),
    ("reports.view", "Reports: view"),
    # Customers
    ("customers.view", "Customers: view"),
    ("customers.create", "Customers: create"),
    ("customers.edit", "Customers: edit"),
    # Table bookings
    ("table_bookings.view", "Table Bookings: view"),
    ("table_bookings.create", "Table Bookings: create"),
    ("table_bookings.edit", "Table Bookings: edit"),
    ("table_bookings.delete", "Table Bookings: delete"),
    ("table_bookings.manage", "Table Bookings: manage tables and policies"),
    # Private bookings
    ("private_bookings.view", "Private Bookings: view"),
    ("private_bookings.create", "Private Bookings: create"),
    ("private_bookings.edit", "Private Bookings: edit"),
    ("private_bookings.delete", "Private Bookings: delete"),
    # Invoices and quotes
    ("invoices.view", "Invoices: view"),
    ("invoices.create", "Invoices: create"),
    ("invoices.edit", "Invoices: edit"),
    ("invoices.delete", "Invoices: delete"),
    # Loyalty
    ("loyalty.view", "Loyalty: view"),
    ("loyalty.manage", "Loyalty: manage members and rewards"),
    # Messaging
    ("messages.view", "Messages: view"),
    ("messages.send", "Messages: send"),
    ("messages.manage", "Messages: manage templates and dispatch"),
)

# Role key -> (name, permission keys). The admin role always gets everything.
ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "manager": (
        "Manager",
        tuple(k for k, _ in PERMISSIONS if k not in ("admin.users",)),
    ),
    "staff": (
        "Front of house",
        (
            "admin.view",
            "customers.view",
            "customers.create",
            "customers.edit",
            "table_bookings.view",
            "table_bookings.create",
            "table_bookings.edit",
            "private_bookings.view",
            "loyalty.view",
            "loyalty.manage",
            "messages.view",
            "messages.send",
        ),
    ),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user/booking policies in an idempotent way.
    Does NOT overwrite an existing admin user's password or edited policies.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@backoffice.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = script_database_url(database_url)

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        def ensure_role(key: str, name: str, perm_keys) -> Role:
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for k in perm_keys:
                if perms[k] not in role.permissions:
                    role.permissions.append(perms[k])
            return role

        role_admin = ensure_role("admin", "Administrator", perms.keys())
        for key, (name, perm_keys) in ROLES.items():
            ensure_role(key, name, perm_keys)

        for booking_type in BOOKING_TYPES:
            existing = s.query(BookingPolicy).filter(BookingPolicy.booking_type == booking_type).one_or_none()
            if not existing:
                s.add(default_policy(booking_type))

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
