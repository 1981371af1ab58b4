"""
Calendar notes: manual planning notes, seeded UK key dates and notes
generated by a language model.

Generated candidates go through the same validation as manual notes; any
that fall outside the requested range or repeat an existing
(start, end, title) are skipped rather than failing the batch.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.utils import parse_date

from .ai import AiError
from .holidays import KeyDate, uk_key_dates
from .models import DEFAULT_NOTE_COLOR, CalendarNote, note_key

logger = logging.getLogger(__name__)

TITLE_MAX = 160
NOTES_MAX = 4000
GUIDANCE_MAX = 2000
MAX_AI_GENERATION_RANGE_DAYS = 730
MAX_AI_CANDIDATES = 250
EXISTING_NOTES_IN_PROMPT = 200
AI_TEMPERATURE = 0.2
AI_MAX_TOKENS = 3200

_TIME_RE = re.compile(r"^\d{2}:\d{2}$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

SYSTEM_PROMPT = (
    "You generate UK calendar notes for hospitality planning. Return concise factual entries "
    "and never include dates outside the requested range."
)

NOTE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "notes": {
            "type": "array",
            "maxItems": MAX_AI_CANDIDATES,
            "items": {
                "type": "object",
                "properties": {
                    "note_date": {"type": "string"},
                    "end_date": {"type": "string"},
                    "title": {"type": "string"},
                    "notes": {"type": ["string", "null"]},
                    "start_time": {"type": ["string", "null"]},
                    "end_time": {"type": ["string", "null"]},
                    "color": {"type": ["string", "null"]},
                },
                "required": ["note_date", "end_date", "title", "notes", "start_time", "end_time", "color"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["notes"],
    "additionalProperties": False,
}


class JsonCompleter(Protocol):
    def complete_json(self, messages: list[dict[str, str]], *, schema_name: str, schema: dict[str, Any], **options: Any) -> Any: ...


@dataclass
class GenerationOutcome:
    inserted: list[CalendarNote] = field(default_factory=list)
    skipped: int = 0

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


def normalize_color(value: str | None) -> str:
    v = (value or "").strip()
    return v.upper() if _COLOR_RE.match(v) else DEFAULT_NOTE_COLOR


def _parse_hhmm(value: Any, label: str) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    v = str(value).strip()
    if not v:
        return None
    if not _TIME_RE.match(v):
        raise ValueError(f"{label} must be in HH:MM format")
    try:
        return datetime.strptime(v, "%H:%M").time()
    except ValueError as e:
        raise ValueError(f"{label} must be in HH:MM format") from e


def _parse_iso(value: Any, label: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    d = parse_date(str(value))
    if d is None:
        raise ValueError(f"{label} must be in YYYY-MM-DD format")
    return d


def validate_note(payload: dict[str, Any]) -> dict[str, Any]:
    """Clean a note payload into column values; raises ValueError with the first problem."""
    note_date = _parse_iso(payload.get("note_date"), "Date")
    if note_date is None:
        raise ValueError("Date is required")
    end_date = _parse_iso(payload.get("end_date"), "End date") or note_date
    if end_date < note_date:
        raise ValueError("End date must be the same or after start date")

    title = (payload.get("title") or "").strip()
    if not title:
        raise ValueError("Title is required")
    if len(title) > TITLE_MAX:
        raise ValueError("Title is too long")

    notes = (payload.get("notes") or "").strip() or None
    if notes and len(notes) > NOTES_MAX:
        raise ValueError("Notes are too long")

    start_time = _parse_hhmm(payload.get("start_time"), "Start time")
    end_time = _parse_hhmm(payload.get("end_time"), "End time")
    if end_time is not None and start_time is None:
        raise ValueError("End time requires a start time")

    color_raw = (payload.get("color") or "").strip()
    if color_raw and not _COLOR_RE.match(color_raw):
        raise ValueError("Color must be a 6-digit hex value")

    return {
        "note_date": note_date,
        "end_date": end_date,
        "title": title,
        "notes": notes,
        "start_time": start_time,
        "end_time": end_time,
        "color": normalize_color(color_raw),
    }


def list_notes(s: Session, *, start: date | None = None, end: date | None = None) -> list[CalendarNote]:
    q = s.query(CalendarNote)
    if start is not None:
        q = q.filter(CalendarNote.end_date >= start)
    if end is not None:
        q = q.filter(CalendarNote.note_date <= end)
    return q.order_by(
        CalendarNote.note_date.asc(),
        CalendarNote.end_date.asc(),
        CalendarNote.start_time.asc(),
        CalendarNote.title.asc(),
    ).all()


def _snapshot(n: CalendarNote) -> dict[str, Any]:
    return {
        "note_date": n.note_date.isoformat(),
        "end_date": n.end_date.isoformat(),
        "title": n.title,
        "source": n.source,
        "start_time": n.start_time.strftime("%H:%M") if n.start_time else None,
        "end_time": n.end_time.strftime("%H:%M") if n.end_time else None,
        "color": n.color,
    }


def create_note(s: Session, payload: dict[str, Any], *, user: User | None) -> CalendarNote:
    data = validate_note(payload)
    n = CalendarNote(
        source="manual",
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
        **data,
    )
    s.add(n)
    s.flush()
    record_event(s, actor=user, action="calendar_note.create", entity_type="CalendarNote", entity_id=str(n.id), metadata=_snapshot(n))
    return n


def update_note(s: Session, n: CalendarNote, payload: dict[str, Any], *, user: User) -> CalendarNote:
    """Fields missing from `payload` keep their current values; the merged note is validated as a whole."""
    before = _snapshot(n)
    merged = {
        "note_date": n.note_date,
        "end_date": n.end_date,
        "title": n.title,
        "notes": n.notes,
        "start_time": n.start_time,
        "end_time": n.end_time,
        "color": n.color,
    }
    merged.update({k: v for k, v in payload.items() if k in merged and v is not None})
    data = validate_note(merged)
    for k, v in data.items():
        setattr(n, k, v)
    n.updated_by_user_id = user.id
    n.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="calendar_note.update",
        entity_type="CalendarNote",
        entity_id=str(n.id),
        metadata={"before": before, "after": _snapshot(n)},
    )
    return n


def delete_note(s: Session, n: CalendarNote, *, user: User) -> None:
    record_event(s, actor=user, action="calendar_note.delete", entity_type="CalendarNote", entity_id=str(n.id), metadata=_snapshot(n))
    s.delete(n)


def _existing_keys(s: Session, start: date, end: date) -> tuple[list[CalendarNote], set[str]]:
    rows = (
        s.query(CalendarNote)
        .filter(CalendarNote.note_date >= start, CalendarNote.note_date <= end)
        .order_by(CalendarNote.note_date.asc())
        .all()
    )
    return rows, {r.dedupe_key for r in rows}


def seed_key_dates(s: Session, *, start: date, end: date, user: User | None) -> GenerationOutcome:
    """Insert UK key dates in range as `holiday` notes, skipping ones already present."""
    if end < start:
        raise ValueError("End date must be the same or after the start date.")
    _, seen = _existing_keys(s, start, end)
    outcome = GenerationOutcome()
    for kd in uk_key_dates(start, end):
        key = note_key(kd.day, kd.day, kd.title)
        if key in seen:
            outcome.skipped += 1
            continue
        seen.add(key)
        n = CalendarNote(
            note_date=kd.day,
            end_date=kd.day,
            title=kd.title,
            source="holiday",
            color=kd.color,
            created_by_user_id=user.id if user else None,
            updated_by_user_id=user.id if user else None,
        )
        s.add(n)
        outcome.inserted.append(n)
    s.flush()
    if outcome.inserted:
        record_event(
            s,
            actor=user,
            action="calendar_note.seed_key_dates",
            entity_type="CalendarNote",
            metadata={"start_date": start.isoformat(), "end_date": end.isoformat(), "inserted": outcome.inserted_count, "skipped": outcome.skipped},
        )
    return outcome


def build_generation_messages(
    start: date,
    end: date,
    *,
    guidance: str | None,
    existing: list[CalendarNote],
    key_dates: list[KeyDate],
) -> list[dict[str, str]]:
    existing_lines = []
    for r in existing[:EXISTING_NOTES_IN_PROMPT]:
        label = r.note_date.isoformat() if r.note_date == r.end_date else f"{r.note_date.isoformat()} to {r.end_date.isoformat()}"
        existing_lines.append(f"{label}: {r.title}")
    key_date_lines = [f"{k.day.isoformat()}: {k.title}" for k in key_dates]

    user_prompt = "\n".join(
        [
            "Generate important calendar notes for a UK pub between the start and end dates (inclusive).",
            "",
            f"Start date: {start.isoformat()}",
            f"End date: {end.isoformat()}",
            "",
            "Include key moments such as major UK bank holidays and hospitality-relevant observances when they fall in range.",
            "These dates are already calculated for you and are correct; use them rather than working moveable dates out yourself:",
            "\n".join(key_date_lines) if key_date_lines else "(none in range)",
            "",
            "Add useful seasonal reminders where appropriate.",
            "Keep titles short and operational notes concise.",
            "Use end_date for multi-day notes; for single-day notes set end_date equal to note_date.",
            "Use null for start_time/end_time unless there is a clear reason to set one.",
            "",
            f"Extra user guidance: {guidance}" if guidance else "Extra user guidance: none.",
            "",
            "Avoid duplicates of these existing notes in the same period:",
            "\n".join(existing_lines) if existing_lines else "(none)",
            "",
            'Return a JSON object with key "notes", where "notes" is an array of objects with keys:',
            "- note_date (YYYY-MM-DD)",
            "- end_date (YYYY-MM-DD)",
            "- title (string)",
            "- notes (string or null)",
            "- start_time (HH:MM or null)",
            "- end_time (HH:MM or null)",
            "- color (#RRGGBB or null)",
            "",
            "Sort output by date ascending and return at most 120 entries.",
        ]
    )
    return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": user_prompt}]


def generate_notes_with_ai(
    s: Session,
    *,
    start: date,
    end: date,
    guidance: str | None,
    client: JsonCompleter | None,
    user: User | None,
) -> GenerationOutcome:
    if end < start:
        raise ValueError("End date must be the same or after the start date.")
    if (end - start).days + 1 > MAX_AI_GENERATION_RANGE_DAYS:
        raise ValueError(f"Date range is too large. Maximum range is {MAX_AI_GENERATION_RANGE_DAYS} days.")
    guidance = (guidance or "").strip() or None
    if guidance and len(guidance) > GUIDANCE_MAX:
        raise ValueError("Guidance is too long")
    if client is None:
        raise ValueError("OpenAI is not configured. Add an API key first.")

    existing, seen = _existing_keys(s, start, end)
    messages = build_generation_messages(start, end, guidance=guidance, existing=existing, key_dates=uk_key_dates(start, end))
    try:
        payload = client.complete_json(
            messages,
            schema_name="calendar_note_generation",
            schema=NOTE_SCHEMA,
            temperature=AI_TEMPERATURE,
            max_tokens=AI_MAX_TOKENS,
        )
    except AiError as e:
        logger.exception("Calendar note generation failed")
        raise ValueError("OpenAI request failed while generating notes.") from e

    candidates = payload.get("notes") if isinstance(payload, dict) else None
    if not isinstance(candidates, list) or len(candidates) > MAX_AI_CANDIDATES:
        logger.error("AI calendar payload failed validation: %r", str(payload)[:300])
        raise ValueError("AI response format was invalid.")

    context = json.dumps({"start_date": start.isoformat(), "end_date": end.isoformat(), "guidance": guidance})
    outcome = GenerationOutcome()
    for raw in candidates:
        if not isinstance(raw, dict) or any(
            raw.get(k) is not None and not isinstance(raw.get(k), str)
            for k in ("title", "notes", "note_date", "end_date", "start_time", "end_time", "color")
        ):
            outcome.skipped += 1
            continue
        candidate = dict(raw)
        candidate["end_date"] = candidate.get("end_date") or candidate.get("note_date")
        candidate["color"] = normalize_color(candidate.get("color"))
        try:
            data = validate_note(candidate)
        except ValueError:
            outcome.skipped += 1
            continue
        if data["note_date"] < start or data["end_date"] > end:
            outcome.skipped += 1
            continue
        key = note_key(data["note_date"], data["end_date"], data["title"])
        if key in seen:
            outcome.skipped += 1
            continue
        seen.add(key)
        n = CalendarNote(
            source="ai",
            generated_context_json=context,
            created_by_user_id=user.id if user else None,
            updated_by_user_id=user.id if user else None,
            **data,
        )
        s.add(n)
        outcome.inserted.append(n)

    s.flush()
    if outcome.inserted:
        record_event(
            s,
            actor=user,
            action="calendar_note.generate",
            entity_type="CalendarNote",
            metadata={
                "source": "ai",
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "inserted_count": outcome.inserted_count,
                "skipped_count": outcome.skipped,
            },
        )
    return outcome
