"""
Release-phase helper.

Goal:
- Fail fast if DATABASE_URL is missing (avoid silently using SQLite in prod).
- Run alembic migrations.
- Seed permissions/roles/admin user/booking policies (idempotent; does NOT overwrite existing passwords).

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(
            f"Missing required environment variable {name}. "
            "Set it in the hosting platform's environment settings."
        )
    return v


def _report_integrations() -> None:
    """Outbound channels left unconfigured keep their messages queued; say so at deploy time."""
    checks = {
        "SMS (Twilio)": ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER"),
        "Email (SMTP)": ("SMTP_HOST", "SMTP_FROM"),
        "Calendar note generation (OpenAI)": ("OPENAI_API_KEY",),
    }
    if (os.environ.get("STORAGE_BACKEND") or "").strip().lower() == "s3":
        checks["Document storage (S3)"] = ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
    for label, names in checks.items():
        missing = [n for n in names if not (os.environ.get(n) or "").strip()]
        state = "configured" if not missing else f"NOT configured (missing {', '.join(missing)})"
        print(f"[integrations] {label}: {state}", flush=True)


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    # Guardrail: prevent accidental prod deploys against SQLite.
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print("=== Back office release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)
    print("Running Alembic migrations...", flush=True)

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)

    print("Seeding permissions/admin/policies (idempotent)...", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)
    _report_integrations()
    print("=== Back office release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
