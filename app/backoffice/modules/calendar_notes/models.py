from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column

from app.backoffice.models import Base

DEFAULT_NOTE_COLOR = "#0EA5E9"


class CalendarNote(Base):
    __tablename__ = "calendar_notes"
    __table_args__ = (
        CheckConstraint("end_date >= note_date", name="ck_calendar_notes_date_order"),
        CheckConstraint("source IN ('manual', 'ai', 'holiday')", name="ck_calendar_notes_source"),
        Index("idx_calendar_notes_note_date", "note_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    note_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default=DEFAULT_NOTE_COLOR)
    generated_context_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def dedupe_key(self) -> str:
        return note_key(self.note_date, self.end_date, self.title)

    @property
    def is_multi_day(self) -> bool:
        return self.end_date != self.note_date


def note_key(note_date: date, end_date: date | None, title: str) -> str:
    return f"{note_date.isoformat()}|{(end_date or note_date).isoformat()}|{title.strip().lower()}"
