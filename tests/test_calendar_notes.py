"""Tests for calendar notes: validation, UK key dates and generated notes."""
from datetime import date, time

import pytest

from app.backoffice.modules.calendar_notes.ai import AiError
from app.backoffice.modules.calendar_notes.holidays import (
    HOLIDAY_COLOR,
    OBSERVANCE_COLOR,
    bank_holidays,
    easter_sunday,
    uk_key_dates,
)
from app.backoffice.modules.calendar_notes.models import CalendarNote
from app.backoffice.modules.calendar_notes.service import (
    create_note,
    generate_notes_with_ai,
    list_notes,
    seed_key_dates,
    update_note,
    validate_note,
)


class FakeAi:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def complete_json(self, messages, *, schema_name, schema, **options):
        self.calls.append((messages, schema_name, options))
        if self.error:
            raise self.error
        return self.payload


@pytest.mark.parametrize(
    "year,expected",
    [(2024, date(2024, 3, 31)), (2025, date(2025, 4, 20)), (2026, date(2026, 4, 5)), (2027, date(2027, 3, 28))],
)
def test_easter_sunday(year, expected):
    assert easter_sunday(year) == expected


def test_bank_holidays_2026():
    days = {k.title: k.day for k in bank_holidays(2026)}
    assert days["New Year's Day (bank holiday)"] == date(2026, 1, 1)
    assert days["Good Friday (bank holiday)"] == date(2026, 4, 3)
    assert days["Easter Monday (bank holiday)"] == date(2026, 4, 6)
    assert days["Early May bank holiday"] == date(2026, 5, 4)
    assert days["Spring bank holiday"] == date(2026, 5, 25)
    assert days["Summer bank holiday"] == date(2026, 8, 31)
    assert days["Christmas Day (bank holiday)"] == date(2026, 12, 25)
    # Boxing Day is a Saturday.
    assert days["Boxing Day (bank holiday)"] == date(2026, 12, 28)


@pytest.mark.parametrize(
    "year,christmas,boxing",
    [
        (2021, date(2021, 12, 27), date(2021, 12, 28)),
        (2022, date(2022, 12, 27), date(2022, 12, 26)),
        (2023, date(2023, 12, 25), date(2023, 12, 26)),
    ],
)
def test_christmas_substitute_days(year, christmas, boxing):
    days = {k.title: k.day for k in bank_holidays(year)}
    assert days["Christmas Day (bank holiday)"] == christmas
    assert days["Boxing Day (bank holiday)"] == boxing


def test_new_year_substitute_day():
    days = {k.title: k.day for k in bank_holidays(2022)}
    assert days["New Year's Day (bank holiday)"] == date(2022, 1, 3)


def test_key_dates_span_years():
    found = uk_key_dates(date(2026, 12, 20), date(2027, 1, 5))
    assert [k.day for k in found] == sorted(k.day for k in found)
    titles = [k.title for k in found]
    assert titles[0] == "Christmas Eve"
    assert "New Year's Eve" in titles
    assert titles[-1] == "New Year's Day (bank holiday)"
    assert found[-1].day == date(2027, 1, 1)
    assert found[-1].color == HOLIDAY_COLOR
    assert found[0].color == OBSERVANCE_COLOR
    assert uk_key_dates(date(2026, 3, 15), date(2026, 3, 15))[0].title == "Mothering Sunday"
    assert uk_key_dates(date(2026, 2, 1), date(2026, 1, 1)) == []


def test_validate_note():
    data = validate_note({"note_date": "2026-03-02", "title": " Quiz ", "start_time": "19:30", "color": "#abcdef"})
    assert data["end_date"] == date(2026, 3, 2)
    assert data["title"] == "Quiz"
    assert data["start_time"] == time(19, 30)
    assert data["color"] == "#ABCDEF"
    assert validate_note({"note_date": "2026-03-02", "title": "x"})["color"] == "#0EA5E9"

    with pytest.raises(ValueError, match="Date is required"):
        validate_note({"title": "x"})
    with pytest.raises(ValueError, match="same or after start date"):
        validate_note({"note_date": "2026-03-02", "end_date": "2026-03-01", "title": "x"})
    with pytest.raises(ValueError, match="HH:MM"):
        validate_note({"note_date": "2026-03-02", "title": "x", "start_time": "7pm"})
    with pytest.raises(ValueError, match="requires a start time"):
        validate_note({"note_date": "2026-03-02", "title": "x", "end_time": "23:00"})
    with pytest.raises(ValueError, match="6-digit hex"):
        validate_note({"note_date": "2026-03-02", "title": "x", "color": "red"})
    with pytest.raises(ValueError, match="Title is too long"):
        validate_note({"note_date": "2026-03-02", "title": "x" * 161})


def test_create_update_and_list(db, admin):
    n = create_note(db, {"note_date": "2026-03-10", "end_date": "2026-03-12", "title": "Beer festival"}, user=admin)
    assert n.source == "manual"
    assert n.is_multi_day
    update_note(db, n, {"title": "Cider festival"}, user=admin)
    assert n.title == "Cider festival"
    assert n.end_date == date(2026, 3, 12)

    create_note(db, {"note_date": "2026-04-01", "title": "Stocktake"}, user=admin)
    assert [x.title for x in list_notes(db, start=date(2026, 3, 11), end=date(2026, 3, 31))] == ["Cider festival"]


def test_seed_key_dates_skips_existing(db, admin):
    start, end = date(2026, 12, 1), date(2026, 12, 31)
    first = seed_key_dates(db, start=start, end=end, user=admin)
    assert first.inserted_count == 4
    assert all(n.source == "holiday" for n in first.inserted)

    again = seed_key_dates(db, start=start, end=end, user=admin)
    assert again.inserted_count == 0
    assert again.skipped == 4
    assert db.query(CalendarNote).count() == 4


def test_generate_notes_with_ai(db, admin):
    create_note(db, {"note_date": "2026-03-17", "title": "St Patrick's Day"}, user=admin)
    ai = FakeAi(
        {
            "notes": [
                {"note_date": "2026-03-06", "end_date": None, "title": "Six Nations weekend", "notes": "Extra staff", "start_time": None, "end_time": None, "color": "#16a34a"},
                {"note_date": "2026-03-17", "end_date": "2026-03-17", "title": "st patrick's day", "notes": None, "start_time": None, "end_time": None, "color": None},
                {"note_date": "2026-05-01", "end_date": "2026-05-01", "title": "Out of range", "notes": None, "start_time": None, "end_time": None, "color": None},
                {"note_date": "2026-03-20", "end_date": "2026-03-20", "title": "Bad time", "notes": None, "start_time": "8pm", "end_time": None, "color": None},
                "not an object",
            ]
        }
    )
    outcome = generate_notes_with_ai(db, start=date(2026, 3, 1), end=date(2026, 3, 31), guidance="Sport focus", client=ai, user=admin)

    assert outcome.inserted_count == 1
    assert outcome.skipped == 4
    note = outcome.inserted[0]
    assert note.source == "ai"
    assert note.end_date == date(2026, 3, 6)
    assert note.color == "#16A34A"
    assert '"guidance": "Sport focus"' in note.generated_context_json

    messages, schema_name, options = ai.calls[0]
    assert schema_name == "calendar_note_generation"
    assert options["temperature"] == 0.2
    prompt = messages[1]["content"]
    assert "2026-03-15: Mothering Sunday" in prompt
    assert "2026-03-17: St Patrick's Day" in prompt
    assert "Extra user guidance: Sport focus" in prompt


def test_ai_candidates_with_wrong_field_types_are_skipped(db, admin):
    ai = FakeAi(
        {
            "notes": [
                {"note_date": "2026-03-06", "title": 42, "notes": None},
                {"note_date": "2026-03-07", "title": "Quiz night", "notes": ["bring", "pens"]},
                {"note_date": ["2026-03-08"], "title": "Darts"},
                {"note_date": "2026-03-09", "title": "Live music", "notes": "Acoustic set"},
            ]
        }
    )
    outcome = generate_notes_with_ai(db, start=date(2026, 3, 1), end=date(2026, 3, 31), guidance=None, client=ai, user=admin)

    assert outcome.skipped == 3
    assert [n.title for n in outcome.inserted] == ["Live music"]


def test_generate_errors(db, admin):
    start, end = date(2026, 3, 1), date(2026, 3, 31)
    with pytest.raises(ValueError, match="not configured"):
        generate_notes_with_ai(db, start=start, end=end, guidance=None, client=None, user=admin)
    with pytest.raises(ValueError, match="request failed"):
        generate_notes_with_ai(db, start=start, end=end, guidance=None, client=FakeAi(error=AiError("boom")), user=admin)
    with pytest.raises(ValueError, match="format was invalid"):
        generate_notes_with_ai(db, start=start, end=end, guidance=None, client=FakeAi({"items": []}), user=admin)
    with pytest.raises(ValueError, match="too large"):
        generate_notes_with_ai(db, start=start, end=date(2028, 3, 31), guidance=None, client=FakeAi({"notes": []}), user=admin)
    assert db.query(CalendarNote).count() == 0
