from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field


class DiscoveryMethod(enum.Enum):
    ATTRIBUTE_SCAN = "attribute-scan"
    INTERACTIVE_PROBE = "interactive-probe"


class CalendarKind(enum.Enum):
    """Which of the two linked calendars is being driven.

    Element ids are the ones rendered by the appointment page of
    ais.usvisa-info.com.
    """

    PRIMARY = "consulate"
    COMPANION = "asc"

    @property
    def date_field(self) -> str:
        return f"#appointments_{self.value}_appointment_date"

    @property
    def time_select(self) -> str:
        return f"#appointments_{self.value}_appointment_time"

    @property
    def facility_select(self) -> str:
        return f"#appointments_{self.value}_appointment_facility_id"

    @property
    def label(self) -> str:
        return "consulate" if self is CalendarKind.PRIMARY else "CASV"


@dataclass(frozen=True, order=True)
class DateKey:
    """A calendar date as the sortable integer YYYYMMDD."""

    value: int

    @classmethod
    def from_parts(cls, year: int, month: int, day: int) -> DateKey:
        return cls(year * 10000 + month * 100 + day)

    @classmethod
    def from_date(cls, d: dt.date) -> DateKey:
        return cls.from_parts(d.year, d.month, d.day)

    @property
    def year(self) -> int:
        return self.value // 10000

    @property
    def month(self) -> int:
        return self.value // 100 % 100

    @property
    def day(self) -> int:
        return self.value % 100

    def to_date(self) -> dt.date:
        return dt.date(self.year, self.month, self.day)

    def __str__(self) -> str:
        return f"{self.day:02d}-{self.month:02d}-{self.year:04d}"


@dataclass(frozen=True)
class CalendarDay:
    """A day cell seen as available during one search pass.

    Never reuse these across page reloads: the datepicker is re-rendered and
    cell positions change.
    """

    day_number: int
    month: int
    year: int
    is_available: bool = True
    discovery_method: DiscoveryMethod = DiscoveryMethod.ATTRIBUTE_SCAN

    @property
    def key(self) -> DateKey:
        return DateKey.from_parts(self.year, self.month, self.day_number)


@dataclass(frozen=True)
class TimeOption:
    value: str
    text: str
    disabled: bool = False

    @property
    def selectable(self) -> bool:
        return bool(self.value) and bool(self.text) and not self.disabled


@dataclass(frozen=True)
class BookingCandidate:
    primary_date: DateKey
    primary_time: str | None
    companion_date: DateKey | None
    companion_time: str | None
    is_improvement: bool
    previous_best: DateKey | None

    accepted: bool = True
    baseline: DateKey | None = None
    primary_location: str | None = None
    companion_location: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.companion_date is not None and self.primary_time is not None


@dataclass(frozen=True)
class ExistingAppointment:
    """An appointment the account already holds (from the groups page)."""

    date: DateKey
    time: str | None = None
    location: str | None = None


@dataclass
class RunStats:
    started_at: dt.datetime = field(default_factory=dt.datetime.now)
    checks: int = 0
    improvements_found: int = 0
    failed_checks: int = 0
    last_check_at: dt.datetime | None = None
    best_found: DateKey | None = None

    def runtime(self, now: dt.datetime | None = None) -> dt.timedelta:
        return (now or dt.datetime.now()) - self.started_at

    def runtime_text(self, now: dt.datetime | None = None) -> str:
        total_minutes = int(self.runtime(now).total_seconds() // 60)
        return f"{total_minutes // 60}h {total_minutes % 60}m"


class UnknownMonthError(ValueError):
    """Month name outside the calendar's vocabulary."""


class InvalidDateFormatError(ValueError):
    """Date string is not DD-MM-YYYY."""


class PageDriverError(RuntimeError):
    """A DOM interaction failed (element missing, click rejected, ...).

    Recoverable: it aborts at most the current monitoring cycle.
    """


class ElementTimeoutError(PageDriverError):
    """An element did not appear within the caller-supplied timeout."""


class BusyError(RuntimeError):
    """The site answered with its temporary 'system busy' page.

    This is a normal state of the site, not a business-logic failure, so
    subscribers are never alerted about it; only the admin chat hears of it.
    """


class CycleCancelled(Exception):
    """Raised at a step boundary when shutdown was requested."""
