from __future__ import annotations

import logging
import unicodedata

from visascheduler.domain import DateKey, InvalidDateFormatError, UnknownMonthError

logger = logging.getLogger(__name__)


_MONTHS = {
    # Portuguese month names as rendered by the pt-br datepicker and the groups page
    "janeiro": 1,
    "fevereiro": 2,
    "março": 3,
    "abril": 4,
    "maio": 5,
    "junho": 6,
    "julho": 7,
    "agosto": 8,
    "setembro": 9,
    "outubro": 10,
    "novembro": 11,
    "dezembro": 12,
}


def _fold(name: str) -> str:
    # "Março" / "MARCO" / "marco" all map to the same key.
    decomposed = unicodedata.normalize("NFKD", name.strip().lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


_FOLDED_MONTHS = {_fold(name): number for name, number in _MONTHS.items()}


def month_number(month_name: str) -> int:
    m = _FOLDED_MONTHS.get(_fold(month_name))
    if not m:
        raise UnknownMonthError(f"Unknown month name: {month_name!r}")
    return m


def _to_int(raw: str, what: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise InvalidDateFormatError(f"Invalid {what}: {raw!r}") from e


def parse_localized_date(day: str, month_name: str, year: str) -> DateKey:
    """Build a DateKey from a localized "5 Março 2026"-style triple.

    An unrecognized month is not fatal: the key is built with month 1 and a
    warning is logged.
    """
    d = _to_int(day, "day")
    y = _to_int(year, "year")
    try:
        m = month_number(month_name)
    except UnknownMonthError:
        logger.warning("Unknown month %r in date %s/%s, falling back to month 1", month_name, day, year)
        m = 1
    return DateKey.from_parts(y, m, d)


def to_key(date_str: str) -> DateKey:
    """Parse ``DD-MM-YYYY``."""
    if not isinstance(date_str, str) or date_str.count("-") != 2:
        raise InvalidDateFormatError(f"Invalid date format: {date_str!r}. Expected DD-MM-YYYY format.")

    day, month, year = (p.strip() for p in date_str.split("-"))
    if not (day.isdigit() and month.isdigit() and year.isdigit()):
        raise InvalidDateFormatError(f"Invalid date format: {date_str!r}. Expected DD-MM-YYYY format.")

    return DateKey.from_parts(int(year), int(month), int(day))


def format_full_date(key: DateKey) -> str:
    return str(key)


def is_before(a: DateKey, b: DateKey) -> bool:
    return a.value < b.value


def days_between(earlier: DateKey, later: DateKey) -> int:
    """Calendar days from ``earlier`` to ``later`` (negative if reversed)."""
    return (later.to_date() - earlier.to_date()).days


def is_within_tolerance_before(candidate: DateKey, reference: DateKey, tolerance_days: int) -> bool:
    """True when ``candidate`` is on ``reference`` or at most N days before it.

    Uses real calendar arithmetic, so 30-07 is one day before 01-08.
    """
    return 0 <= days_between(candidate, reference) <= tolerance_days
