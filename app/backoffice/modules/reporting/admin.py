from __future__ import annotations

from datetime import timedelta

from flask import Blueprint, flash, render_template, request

from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.utils import parse_date, venue_today

from .service import TableBookingReport, table_booking_report

bp = Blueprint("reporting", __name__)


@bp.get("/reports/table-bookings")
@require_permission("reports.view")
def table_bookings_report():
    today = venue_today()
    end = parse_date(request.args.get("end")) or today
    start = parse_date(request.args.get("start")) or end - timedelta(days=29)
    try:
        report = table_booking_report(db_session(), start=start, end=end)
    except ValueError as e:
        flash(str(e), "danger")
        report = TableBookingReport(start=start, end=end)
    return render_template("admin/reports/table_bookings.html", report=report)
