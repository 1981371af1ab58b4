#!/usr/bin/env python
"""
Daily housekeeping for the back office.

Runs, in order:
- invoices: sent -> overdue once the due date has passed
- quotes: sent -> expired once valid_until has passed
- recurring invoices: generate anything due today (one period per schedule per run)
- private bookings: expire draft holds past hold_expiry
- loyalty: lapse pending redemption codes past expiry
- messaging: dispatch queued SMS/email (skipped with --no-dispatch)

Each job commits on its own so one failure does not roll back the others.

Usage:
    python scripts/run_daily_jobs.py
    python scripts/run_daily_jobs.py --only invoices,quotes --no-dispatch

Environment:
    DATABASE_URL, plus TWILIO_* / SMTP_* for dispatch.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.backoffice import create_app
from app.backoffice.db import session_scope
from app.backoffice.modules.invoices.quotes import persist_expired_quotes
from app.backoffice.modules.invoices.recurring import generate_due_recurring_invoices
from app.backoffice.modules.invoices.service import persist_overdue_invoices
from app.backoffice.modules.loyalty.service import expire_redemptions
from app.backoffice.modules.messaging.clients import email_client_from_config, sms_client_from_config
from app.backoffice.modules.messaging.safety import SendLimits
from app.backoffice.modules.messaging.service import dispatch_due_messages
from app.backoffice.modules.private_bookings.service import expire_overdue_holds
from app.backoffice.utils import venue_now

logger = logging.getLogger("backoffice.daily_jobs")

JOBS = ("invoices", "quotes", "recurring", "holds", "redemptions", "dispatch")


def _run_job(app, name: str) -> str:
    now = venue_now()
    today = now.date()
    with session_scope(app) as s:
        if name == "invoices":
            return f"{persist_overdue_invoices(s, today=today)} invoices marked overdue"
        if name == "quotes":
            return f"{persist_expired_quotes(s, today=today)} quotes expired"
        if name == "recurring":
            result = generate_due_recurring_invoices(s, today=today)
            return f"{len(result.generated)} recurring invoices generated, {len(result.failed)} failed"
        if name == "holds":
            return f"{len(expire_overdue_holds(s, now=now))} private booking holds expired"
        if name == "redemptions":
            return f"{expire_redemptions(s, now=now)} redemption codes expired"
        if name == "dispatch":
            result = dispatch_due_messages(
                s,
                sms_client=sms_client_from_config(app.config),
                email_client=email_client_from_config(app.config),
                limits=SendLimits.from_config(app.config),
                now=now,
            )
            return f"{result.sent} messages sent, {result.failed} failed, {result.deferred} deferred"
    raise ValueError(f"Unknown job: {name}")


def run_daily_jobs(jobs: list[str]) -> int:
    app = create_app()
    failures = 0
    with app.app_context():
        for name in jobs:
            try:
                summary = _run_job(app, name)
            except Exception:
                failures += 1
                logger.exception("Daily job %s failed", name)
                print(f"[{name}] FAILED (see log)", flush=True)
                continue
            print(f"[{name}] {summary}", flush=True)
    return failures


def main() -> None:
    parser = argparse.ArgumentParser(description="Run back office daily housekeeping jobs.")
    parser.add_argument("--only", help=f"Comma-separated subset of: {', '.join(JOBS)}")
    parser.add_argument("--no-dispatch", action="store_true", help="Leave queued messages for the next run")
    args = parser.parse_args()

    jobs = list(JOBS)
    if args.only:
        jobs = [j.strip() for j in args.only.split(",") if j.strip()]
        unknown = [j for j in jobs if j not in JOBS]
        if unknown:
            parser.error(f"Unknown job(s): {', '.join(unknown)}")
    if args.no_dispatch and "dispatch" in jobs:
        jobs.remove("dispatch")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(1 if run_daily_jobs(jobs) else 0)


if __name__ == "__main__":
    main()
