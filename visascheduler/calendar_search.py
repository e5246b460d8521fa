from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Callable, Sequence

from visascheduler.dates import month_number
from visascheduler.domain import (
    CalendarDay,
    CalendarKind,
    DateKey,
    DiscoveryMethod,
    PageDriverError,
    UnknownMonthError,
)
from visascheduler.interfaces import CancellationToken, CellInfo, Clock, PageDriver, SystemClock

logger = logging.getLogger(__name__)


DAY_CELL_SELECTOR = ".ui-datepicker-calendar td"

# jQuery UI marks non-bookable days with any of these.
DISABLED_CLASSES = ("ui-datepicker-unselectable", "ui-state-disabled", "disabled")
OTHER_MONTH_CLASS = "ui-datepicker-other-month"

_HEADER_RE = re.compile(r"([^\W\d_]+)\W*(\d{4})")

_ISO_VALUE_RE = re.compile(r"^\s*\d{4}-\d{1,2}-(\d{1,2})\s*$")
_DMY_VALUE_RE = re.compile(r"^\s*(\d{1,2})[-/.]\d{1,2}[-/.]\d{4}\s*$")


def _day_number(cell: CellInfo) -> int | None:
    text = cell.text.strip()
    if not text.isdigit():
        return None
    return int(text)


def _is_candidate(cell: CellInfo) -> bool:
    return _day_number(cell) is not None and not cell.has_class(*DISABLED_CLASSES, OTHER_MONTH_CLASS)


def _field_matches_day(value: str | None, day: int) -> bool:
    # The date input holds e.g. "2025-08-14"; a bare substring test would let
    # day 1 match any value containing a "1".
    if not value:
        return False
    m = _ISO_VALUE_RE.match(value) or _DMY_VALUE_RE.match(value)
    if m:
        return int(m.group(1)) == day
    return any(int(tok) == day for tok in re.findall(r"\d+", value) if len(tok) <= 2)


class CalendarSearchEngine:
    """Month-by-month search over the jQuery UI datepicker.

    The engine never raises for UI trouble: unreadable grids, failed clicks
    and missing navigation all degrade to "nothing found here".
    """

    def __init__(
        self,
        driver: PageDriver,
        *,
        clock: Clock | None = None,
        cancel_token: CancellationToken | None = None,
        probe_delay_seconds: float = 0.5,
        navigation_delay_seconds: float = 1.0,
        selection_delay_seconds: float = 2.0,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self._driver = driver
        self._clock = clock or SystemClock()
        self._cancel = cancel_token or CancellationToken()
        self._probe_delay = probe_delay_seconds
        self._navigation_delay = navigation_delay_seconds
        self._selection_delay = selection_delay_seconds
        self._today = today

        self.current_month: int | None = None
        self.current_year: int | None = None
        self._advanced_unread = False

    def search(
        self,
        kind: CalendarKind,
        max_months: int,
        upper_bound: DateKey | None = None,
    ) -> list[CalendarDay]:
        logger.info("Searching %s calendar (up to %d months)", kind.label, max_months)

        found: list[CalendarDay] = []
        for month_index in range(max_months):
            self._cancel.raise_if_cancelled()
            self._refresh_context()

            if upper_bound is not None and self._context_after(upper_bound):
                logger.info(
                    "%s calendar is past %02d/%d, stopping search",
                    kind.label,
                    upper_bound.month,
                    upper_bound.year,
                )
                break

            found = self._scan_attributes()
            if not found:
                logger.info("No enabled %s days by attribute scan, probing cells", kind.label)
                found = self._probe_cells(kind)

            if upper_bound is not None:
                found = [d for d in found if d.key <= upper_bound]

            if found:
                logger.info(
                    "Found %d available %s dates in month %d: %s",
                    len(found),
                    kind.label,
                    month_index + 1,
                    ", ".join(str(d.key) for d in found),
                )
                return found

            if month_index == max_months - 1:
                break

            if not self._advance():
                logger.warning("Could not navigate to next month, stopping %s search", kind.label)
                break

        logger.info("No available %s dates found", kind.label)
        return found

    def select_day(self, kind: CalendarKind, day: CalendarDay) -> bool:
        """Click the enabled cell for ``day`` in the displayed month."""
        try:
            cells = self._driver.read_cells(DAY_CELL_SELECTOR)
            for cell in cells:
                if _is_candidate(cell) and _day_number(cell) == day.day_number:
                    self._driver.click_cell(DAY_CELL_SELECTOR, cell.ref)
                    self._clock.sleep(self._selection_delay)
                    logger.info("Selected %s date %s", kind.label, day.key)
                    return True
        except PageDriverError as e:
            logger.warning("Could not select %s date %s (%s)", kind.label, day.key, e)
            return False

        logger.warning("No selectable cell for %s date %s", kind.label, day.key)
        return False

    def _refresh_context(self) -> None:
        try:
            header = self._driver.read_header_text()
            match = _HEADER_RE.search(header or "")
            if not match:
                raise UnknownMonthError(f"Unrecognized calendar header: {header!r}")
            self.current_month = month_number(match.group(1))
            self.current_year = int(match.group(2))
            self._advanced_unread = False
        except (PageDriverError, UnknownMonthError) as e:
            if self.current_month is None or self.current_year is None:
                today = self._today()
                self.current_month, self.current_year = today.month, today.year
                action = "using today's month"
            elif self._advanced_unread:
                # The page moved one month since the last context was set.
                if self.current_month == 12:
                    self.current_month, self.current_year = 1, self.current_year + 1
                else:
                    self.current_month += 1
                action = "assuming next month"
            else:
                action = "keeping"
            self._advanced_unread = False
            logger.warning(
                "Calendar header unreadable (%s); %s %02d/%d",
                e,
                action,
                self.current_month,
                self.current_year,
            )

    def _context(self) -> tuple[int, int]:
        if self.current_month is None or self.current_year is None:
            raise RuntimeError("Calendar month context read before the header was checked")
        return self.current_month, self.current_year

    def _context_after(self, bound: DateKey) -> bool:
        month, year = self._context()
        return (year, month) > (bound.year, bound.month)

    def _stamp(self, day_number: int, method: DiscoveryMethod) -> CalendarDay | None:
        month, year = self._context()
        day = CalendarDay(
            day_number=day_number,
            month=month,
            year=year,
            is_available=True,
            discovery_method=method,
        )
        try:
            day.key.to_date()
        except ValueError:
            logger.warning("Skipping day %s: not a valid date in %02d/%d", day_number, month, year)
            return None
        return day

    def _scan_attributes(self) -> list[CalendarDay]:
        try:
            cells = self._driver.read_cells(DAY_CELL_SELECTOR)
        except PageDriverError as e:
            logger.warning("Could not read calendar cells (%s)", e)
            return []

        stamped = (self._stamp(_day_number(c), DiscoveryMethod.ATTRIBUTE_SCAN) for c in cells if _is_candidate(c))
        return [d for d in stamped if d is not None]

    def _probe_cells(self, kind: CalendarKind) -> list[CalendarDay]:
        try:
            cells: Sequence[CellInfo] = self._driver.read_cells(DAY_CELL_SELECTOR)
        except PageDriverError as e:
            logger.warning("Probe skipped, calendar cells unreadable (%s)", e)
            return []

        confirmed: list[CalendarDay] = []
        for cell in cells:
            if not _is_candidate(cell):
                continue
            day = _day_number(cell)
            try:
                self._driver.click_cell(DAY_CELL_SELECTOR, cell.ref)
                self._clock.sleep(self._probe_delay)
                value = self._driver.read_field_value(kind.date_field)
                if _field_matches_day(value, day):
                    logger.info("Day %s confirmed available by click probe", day)
                    stamped = self._stamp(day, DiscoveryMethod.INTERACTIVE_PROBE)
                    if stamped is not None:
                        confirmed.append(stamped)
                if value:
                    # A selection closes the datepicker. Reopen it while the
                    # input still holds this month's date so the same month
                    # is shown, then empty the input for the next cell.
                    self._driver.click(kind.date_field)
                    self._clock.sleep(self._probe_delay)
                    self._driver.set_field_value(kind.date_field, "")
            except PageDriverError as e:
                logger.debug("Probe of day %s failed (%s)", day, e)
                continue

        return confirmed

    def _advance(self) -> bool:
        try:
            moved = self._driver.advance_month()
        except PageDriverError as e:
            logger.warning("Month navigation failed (%s)", e)
            return False
        if moved:
            self._advanced_unread = True
            self._clock.sleep(self._navigation_delay)
        return moved
