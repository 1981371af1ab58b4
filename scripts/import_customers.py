#!/usr/bin/env python
"""
Import customers from an Excel (.xlsx) or CSV export.

Header names are matched loosely ("Mobile", "Phone", "mobile_number" all map
to the mobile number). Rows whose mobile number already belongs to a
customer are skipped; rows with an invalid number or email are reported and
skipped.

Usage:
    python scripts/import_customers.py customers.xlsx
    python scripts/import_customers.py customers.csv --actor manager@venue.co.uk --dry-run

Environment:
    DATABASE_URL
"""
from __future__ import annotations

import argparse
import csv
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from openpyxl import load_workbook

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.orm import Session

from app.backoffice.models import User
from app.backoffice.modules.customers.service import create_customer, find_customer_by_phone
from scripts._db_utils import script_database_url, script_session

HEADER_MAPPINGS: dict[str, tuple[str, ...]] = {
    "first_name": ("first name", "first_name", "firstname", "forename", "given name"),
    "last_name": ("last name", "last_name", "lastname", "surname", "family name"),
    "mobile_number": ("mobile", "mobile number", "mobile_number", "phone", "phone number", "telephone"),
    "email": ("email", "email address", "e-mail"),
    "sms_opt_in": ("sms opt in", "sms_opt_in", "sms", "marketing sms"),
    "notes": ("notes", "comments"),
}

_FALSE_VALUES = {"0", "no", "n", "false", "opted out", "out"}


@dataclass
class ImportResult:
    created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def map_headers(headers: Iterable[Any]) -> dict[str, int]:
    col_map: dict[str, int] = {}
    for i, h in enumerate(headers):
        if h is None:
            continue
        h_lower = str(h).strip().lower()
        for fld, options in HEADER_MAPPINGS.items():
            if h_lower in options and fld not in col_map:
                col_map[fld] = i
                break
    return col_map


def _cell(row: list[Any], idx: int | None) -> str:
    if idx is None or idx >= len(row) or row[idx] is None:
        return ""
    value = row[idx]
    # Excel stores phone numbers typed without a leading zero as floats.
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def read_rows(path: Path) -> list[list[Any]]:
    if path.suffix.lower() in (".xlsx", ".xlsm"):
        wb = load_workbook(str(path), read_only=True, data_only=True)
        try:
            return [list(r) for r in wb.active.iter_rows(values_only=True)]
        finally:
            wb.close()
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        return [list(r) for r in csv.reader(f)]


def import_customer_rows(s: Session, rows: list[list[Any]], *, user: User | None) -> ImportResult:
    result = ImportResult()
    if not rows:
        return result

    col_map = map_headers(rows[0])
    if "first_name" not in col_map:
        result.errors.append("No first name column found in header row.")
        return result

    for line_no, row in enumerate(rows[1:], start=2):
        payload = {fld: _cell(row, col_map.get(fld)) for fld in HEADER_MAPPINGS}
        if not payload["first_name"]:
            result.skipped += 1
            continue
        payload["sms_opt_in"] = payload["sms_opt_in"].lower() not in _FALSE_VALUES

        try:
            if payload["mobile_number"] and find_customer_by_phone(s, payload["mobile_number"]):
                result.skipped += 1
                continue
            with s.begin_nested():
                create_customer(s, payload, user=user)
        except ValueError as e:
            result.errors.append(f"Row {line_no}: {e}")
            continue
        result.created += 1
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Import customers from .xlsx or .csv")
    parser.add_argument("path", help="Spreadsheet to import")
    parser.add_argument("--actor", help="Staff email recorded in the audit trail")
    parser.add_argument("--dry-run", action="store_true", help="Validate and report without saving")
    args = parser.parse_args()

    path = Path(args.path)
    if not path.exists():
        print(f"File not found: {path}")
        sys.exit(1)

    rows = read_rows(path)
    db_url = script_database_url(os.environ.get("DATABASE_URL"))
    with script_session(db_url) as s:
        actor = None
        if args.actor:
            actor = s.query(User).filter(User.email == args.actor.strip().lower()).one_or_none()
            if not actor:
                print(f"Unknown actor: {args.actor}")
                sys.exit(1)
        result = import_customer_rows(s, rows, user=actor)
        if args.dry_run:
            s.rollback()

    print(f"Created: {result.created}")
    print(f"Skipped: {result.skipped}")
    for err in result.errors:
        print(f"  {err}")
    if args.dry_run:
        print("Dry run: nothing saved.")


if __name__ == "__main__":
    main()
