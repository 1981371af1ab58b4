from __future__ import annotations

from datetime import timedelta

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.rbac import require_permission
from app.backoffice.utils import current_user, parse_date, venue_today

from .ai import ai_client_from_config
from .holidays import uk_key_dates
from .models import CalendarNote
from .service import create_note, delete_note, generate_notes_with_ai, list_notes, seed_key_dates, update_note

bp = Blueprint("calendar_notes", __name__)

NOTE_FIELDS = ("note_date", "end_date", "title", "notes", "start_time", "end_time", "color")


def _range_from_args() -> tuple:
    today = venue_today()
    start = parse_date(request.args.get("start")) or today.replace(day=1)
    end = parse_date(request.args.get("end")) or start + timedelta(days=90)
    return start, end


@bp.get("/calendar-notes")
@require_permission("settings.manage")
def notes_list():
    s = db_session()
    start, end = _range_from_args()
    return render_template(
        "admin/calendar_notes/list.html",
        notes=list_notes(s, start=start, end=end),
        key_dates=uk_key_dates(start, end),
        start=start,
        end=end,
        ai_enabled=ai_client_from_config(current_app.config) is not None,
    )


@bp.post("/calendar-notes/new")
@require_permission("settings.manage")
def notes_new_post():
    s = db_session()
    try:
        create_note(s, {k: request.form.get(k) for k in NOTE_FIELDS}, user=current_user())
        s.commit()
        flash("Calendar note added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("calendar_notes.notes_list"))


@bp.post("/calendar-notes/<int:note_id>/edit")
@require_permission("settings.manage")
def notes_edit_post(note_id: int):
    s = db_session()
    n = s.get(CalendarNote, note_id)
    if not n:
        abort(404)
    try:
        update_note(s, n, {k: request.form.get(k) for k in NOTE_FIELDS}, user=current_user())
        s.commit()
        flash("Calendar note updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("calendar_notes.notes_list"))


@bp.post("/calendar-notes/<int:note_id>/delete")
@require_permission("settings.manage")
def notes_delete(note_id: int):
    s = db_session()
    n = s.get(CalendarNote, note_id)
    if not n:
        abort(404)
    delete_note(s, n, user=current_user())
    s.commit()
    flash("Calendar note deleted.", "success")
    return redirect(url_for("calendar_notes.notes_list"))


@bp.post("/calendar-notes/seed")
@require_permission("settings.manage")
def notes_seed():
    s = db_session()
    start = parse_date(request.form.get("start_date"))
    end = parse_date(request.form.get("end_date"))
    if not start or not end:
        flash("Start and end dates are required.", "danger")
        return redirect(url_for("calendar_notes.notes_list"))
    try:
        outcome = seed_key_dates(s, start=start, end=end, user=current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("calendar_notes.notes_list"))
    flash(f"Added {outcome.inserted_count} key dates ({outcome.skipped} already present).", "success")
    return redirect(url_for("calendar_notes.notes_list", start=start.isoformat(), end=end.isoformat()))


@bp.post("/calendar-notes/generate")
@require_permission("settings.manage")
def notes_generate():
    s = db_session()
    start = parse_date(request.form.get("start_date"))
    end = parse_date(request.form.get("end_date"))
    if not start or not end:
        flash("Start and end dates are required.", "danger")
        return redirect(url_for("calendar_notes.notes_list"))
    try:
        outcome = generate_notes_with_ai(
            s,
            start=start,
            end=end,
            guidance=request.form.get("guidance"),
            client=ai_client_from_config(current_app.config),
            user=current_user(),
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("calendar_notes.notes_list"))
    flash(f"Generated {outcome.inserted_count} notes; skipped {outcome.skipped}.", "success")
    return redirect(url_for("calendar_notes.notes_list", start=start.isoformat(), end=end.isoformat()))
