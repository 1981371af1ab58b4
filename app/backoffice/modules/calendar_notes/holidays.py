"""
UK key dates for hospitality planning.

Bank holidays follow the England & Wales rules, including substitute days
when a fixed holiday falls at the weekend. Moveable observances hang off
Easter (computed with the anonymous Gregorian algorithm) or off "nth weekday
of month" rules.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY, SUNDAY = range(7)

HOLIDAY_COLOR = "#DC2626"
OBSERVANCE_COLOR = "#7C3AED"


@dataclass(frozen=True, order=True)
class KeyDate:
    day: date
    title: str
    category: str  # bank_holiday | observance

    @property
    def color(self) -> str:
        return HOLIDAY_COLOR if self.category == "bank_holiday" else OBSERVANCE_COLOR


def easter_sunday(year: int) -> date:
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def last_weekday(year: int, month: int, weekday: int) -> date:
    nxt = date(year + (month == 12), month % 12 + 1, 1)
    last = nxt - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def _substitute(d: date) -> date:
    if d.weekday() == SATURDAY:
        return d + timedelta(days=2)
    if d.weekday() == SUNDAY:
        return d + timedelta(days=1)
    return d


def bank_holidays(year: int) -> list[KeyDate]:
    easter = easter_sunday(year)
    out = [
        KeyDate(_substitute(date(year, 1, 1)), "New Year's Day (bank holiday)", "bank_holiday"),
        KeyDate(easter - timedelta(days=2), "Good Friday (bank holiday)", "bank_holiday"),
        KeyDate(easter + timedelta(days=1), "Easter Monday (bank holiday)", "bank_holiday"),
        KeyDate(nth_weekday(year, 5, MONDAY, 1), "Early May bank holiday", "bank_holiday"),
        KeyDate(last_weekday(year, 5, MONDAY), "Spring bank holiday", "bank_holiday"),
        KeyDate(last_weekday(year, 8, MONDAY), "Summer bank holiday", "bank_holiday"),
    ]

    christmas = date(year, 12, 25)
    boxing = date(year, 12, 26)
    if christmas.weekday() == SATURDAY:
        christmas_observed, boxing_observed = date(year, 12, 27), date(year, 12, 28)
    elif christmas.weekday() == SUNDAY:
        christmas_observed, boxing_observed = date(year, 12, 27), boxing
    elif boxing.weekday() == SATURDAY:
        christmas_observed, boxing_observed = christmas, date(year, 12, 28)
    else:
        christmas_observed, boxing_observed = christmas, boxing
    out.append(KeyDate(christmas_observed, "Christmas Day (bank holiday)", "bank_holiday"))
    out.append(KeyDate(boxing_observed, "Boxing Day (bank holiday)", "bank_holiday"))
    return out


def observances(year: int) -> list[KeyDate]:
    easter = easter_sunday(year)
    fixed = [
        (1, 25, "Burns Night"),
        (2, 14, "Valentine's Day"),
        (3, 1, "St David's Day"),
        (3, 17, "St Patrick's Day"),
        (4, 23, "St George's Day"),
        (10, 31, "Halloween"),
        (11, 5, "Bonfire Night"),
        (11, 30, "St Andrew's Day"),
        (12, 24, "Christmas Eve"),
        (12, 31, "New Year's Eve"),
    ]
    out = [KeyDate(date(year, m, d), title, "observance") for m, d, title in fixed]
    out += [
        KeyDate(easter - timedelta(days=47), "Shrove Tuesday (Pancake Day)", "observance"),
        KeyDate(easter - timedelta(days=21), "Mothering Sunday", "observance"),
        KeyDate(easter - timedelta(days=7), "Palm Sunday", "observance"),
        KeyDate(easter, "Easter Sunday", "observance"),
        KeyDate(last_weekday(year, 3, SUNDAY), "Clocks go forward (BST starts)", "observance"),
        KeyDate(nth_weekday(year, 6, SATURDAY, 2), "World Gin Day", "observance"),
        KeyDate(nth_weekday(year, 6, SUNDAY, 3), "Father's Day", "observance"),
        KeyDate(last_weekday(year, 10, SUNDAY), "Clocks go back (BST ends)", "observance"),
        KeyDate(nth_weekday(year, 11, SUNDAY, 2), "Remembrance Sunday", "observance"),
        KeyDate(nth_weekday(year, 11, THURSDAY, 4) + timedelta(days=1), "Black Friday", "observance"),
    ]
    return out


def uk_key_dates(start: date, end: date) -> list[KeyDate]:
    """Bank holidays and observances falling within [start, end], sorted by date."""
    if end < start:
        return []
    found: list[KeyDate] = []
    for year in range(start.year, end.year + 1):
        found.extend(k for k in bank_holidays(year) + observances(year) if start <= k.day <= end)
    return sorted(found)
