"""
Parse the date strings that show up on scanned identity and education documents.

Collaborator output is not normalised: the same birth date may arrive as
"1990-05-14", "14/05/1990", "14 May 1990" or "May 14, 1990". We try a fixed,
ordered list of shapes and stop at the first one that matches, so parsing is
deterministic for any given input.

Supported patterns (in order):
    "1990-05-14"          ISO, optional time suffix ignored
    "14/05/1990"          day/month/year with / - or . separators
    "14 May 1990"         day month-name year
    "May 14, 1990"        month-name day year
    "1990"                bare year (1900-2100) → 1 January
    anything else         generic ISO-8601 / RFC 2822 fallback
"""

from __future__ import annotations

import re
from datetime import date, datetime
from email.utils import parsedate_to_datetime

# ─── Lookup Tables ───────────────────────────────────────────────────

_MONTHS: dict[str, int] = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_DMY = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")
_DAY_MONTH_NAME = re.compile(r"^(\d{1,2})[\s\-.]?([a-zA-Z]+)[\s\-.,]?\s*(\d{4})$")
_MONTH_NAME_DAY = re.compile(r"^([a-zA-Z]+)\s+(\d{1,2}),?\s*(\d{4})$")
_BARE_YEAR = re.compile(r"^\d{4}$")

MIN_YEAR = 1900
MAX_YEAR = 2100


class CalendarDateError(ValueError):
    """The value has a recognised shape but names a day that does not exist."""


# ─── Public API ──────────────────────────────────────────────────────


def parse_date(value: object) -> date:
    """Parse a document date into a ``datetime.date``.

    Raises:
        ValueError: if the value is empty or matches no known format.
        CalendarDateError: if the format matched but the day is impossible
            (e.g. "30/02/2024").
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value if value is not None else "").strip()
    if not text:
        raise ValueError("Empty date value")

    m = _ISO.match(text)
    if m:
        return _build(int(m.group(1)), int(m.group(2)), int(m.group(3)), text)

    m = _DMY.match(text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if 1 <= month <= 12 and 1 <= day <= 31:
            return _build(year, month, day, text)

    m = _DAY_MONTH_NAME.match(text)
    if m and m.group(2).lower() in _MONTHS:
        return _build(int(m.group(3)), _MONTHS[m.group(2).lower()], int(m.group(1)), text)

    m = _MONTH_NAME_DAY.match(text)
    if m and m.group(1).lower() in _MONTHS:
        return _build(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)), text)

    if _BARE_YEAR.match(text):
        year = int(text)
        if MIN_YEAR <= year <= MAX_YEAR:
            return date(year, 1, 1)

    fallback = _generic_parse(text)
    if fallback is not None:
        return fallback

    raise ValueError(f"Unrecognized date format: '{text}'")


# ─── Internals ───────────────────────────────────────────────────────


def _build(year: int, month: int, day: int, raw: str) -> date:
    try:
        return date(year, month, day)
    except ValueError as e:
        raise CalendarDateError(f"'{raw}' is not a real calendar date") from e


def _generic_parse(text: str) -> date | None:
    """Last resort: ISO-8601 with time/zone, slash-ISO, then RFC 2822."""
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%Y/%m/%d").date()
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text).date()
    except (TypeError, ValueError, IndexError):
        return None
