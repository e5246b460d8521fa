from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass, field

import pytest

from visascheduler.calendar_search import DAY_CELL_SELECTOR, CalendarSearchEngine
from visascheduler.domain import (
    CalendarKind,
    CycleCancelled,
    DateKey,
    DiscoveryMethod,
    PageDriverError,
)
from visascheduler.interfaces import CancellationToken, CellInfo
from visascheduler.slot_matcher import match

_PT_MONTHS = [
    "Janeiro", "Fevereiro", "Março", "Abril", "Maio", "Junho",
    "Julho", "Agosto", "Setembro", "Outubro", "Novembro", "Dezembro",
]


def month_cells(year: int, month: int, available: set[int], *, disabled_class: str = "ui-state-disabled") -> list[CellInfo]:
    """Render a jQuery UI month grid: leading other-month padding + every day."""
    first_weekday, ndays = calendar.monthrange(year, month)
    cells: list[CellInfo] = []
    for _ in range((first_weekday + 1) % 7):
        cells.append(CellInfo(ref=len(cells), text="", classes=frozenset({"ui-datepicker-other-month"})))
    for day in range(1, ndays + 1):
        classes = frozenset() if day in available else frozenset({"ui-datepicker-unselectable", disabled_class})
        cells.append(CellInfo(ref=len(cells), text=str(day), classes=classes))
    return cells


@dataclass
class FakeMonth:
    year: int
    month: int
    available: set[int] = field(default_factory=set)
    # Look enabled but the site ignores clicks on them.
    decoys: set[int] = field(default_factory=set)
    header: str | None = None
    unreadable: bool = False

    def header_text(self) -> str:
        if self.header is not None:
            return self.header
        return f"{_PT_MONTHS[self.month - 1]} {self.year}"


class FakeCalendarPage:
    def __init__(self, months: list[FakeMonth], *, can_advance: bool = True, scan_failures: int = 0) -> None:
        self.months = months
        self.index = 0
        self.can_advance = can_advance
        # The next N read_cells() calls fail, as when the grid is re-rendering.
        self.scan_failures = scan_failures
        self.fields: dict[str, str] = {}
        self.clicked: list[int] = []
        self.fail_clicks: set[int] = set()
        # A real selection closes the datepicker until the input is clicked again.
        self.open = True
        self.reopened = 0

    @property
    def current(self) -> FakeMonth:
        return self.months[self.index]

    def _render(self) -> list[CellInfo]:
        m = self.current
        return month_cells(m.year, m.month, m.available | m.decoys)

    def read_cells(self, selector: str) -> list[CellInfo]:
        assert selector == DAY_CELL_SELECTOR
        if self.current.unreadable:
            raise PageDriverError("grid missing")
        if self.scan_failures:
            self.scan_failures -= 1
            raise PageDriverError("grid re-rendering")
        return self._render()

    def click_cell(self, selector: str, ref: int) -> None:
        day = int(self._render()[ref].text)
        self.clicked.append(day)
        if not self.open:
            raise PageDriverError("element not interactable")
        if day in self.fail_clicks:
            raise PageDriverError("click intercepted")
        m = self.current
        if day in m.available:
            self.fields["#appointments_consulate_appointment_date"] = f"{m.year}-{m.month:02d}-{day:02d}"
            self.open = False

    def click(self, selector: str) -> None:
        assert selector == "#appointments_consulate_appointment_date"
        self.open = True
        self.reopened += 1

    def read_field_value(self, selector: str) -> str | None:
        return self.fields.get(selector) or None

    def set_field_value(self, selector: str, value: str) -> None:
        self.fields[selector] = value

    def advance_month(self) -> bool:
        if not self.can_advance or self.index + 1 >= len(self.months):
            return False
        self.index += 1
        return True

    def read_header_text(self) -> str:
        return self.current.header_text()

    def select_dropdown_value(self, selector: str, value: str) -> None:
        pass

    def read_options_list(self, selector: str):
        return []


class NoSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.calls.append(seconds)


def _engine(page: FakeCalendarPage, **kwargs) -> CalendarSearchEngine:
    return CalendarSearchEngine(page, clock=NoSleep(), today=lambda: dt.date(2025, 7, 1), **kwargs)


def test_attribute_scan_finds_enabled_days_and_stamps_month() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={14, 20})])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=3)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 8, 14), DateKey.from_parts(2025, 8, 20)]
    assert all(d.discovery_method is DiscoveryMethod.ATTRIBUTE_SCAN for d in days)
    assert page.clicked == []


def test_search_advances_until_a_month_has_days() -> None:
    page = FakeCalendarPage(
        [
            FakeMonth(2025, 7),
            FakeMonth(2025, 8),
            FakeMonth(2025, 9, available={3}),
            FakeMonth(2025, 10, available={1}),
        ]
    )
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=12)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 9, 3)]
    assert page.index == 2


def test_search_respects_max_months() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 7), FakeMonth(2025, 8), FakeMonth(2025, 9, available={3})])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=2)

    assert days == []
    assert page.index == 1


def test_search_stops_when_navigation_fails() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 7), FakeMonth(2025, 8, available={1})], can_advance=False)
    assert _engine(page).search(CalendarKind.PRIMARY, max_months=5) == []
    assert page.index == 0


def test_probe_confirms_days_and_clears_field_between_probes() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={7}, decoys={5, 6})], scan_failures=1)
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert [d.day_number for d in days] == [7]
    assert days[0].discovery_method is DiscoveryMethod.INTERACTIVE_PROBE
    assert page.clicked == [5, 6, 7]
    assert page.fields["#appointments_consulate_appointment_date"] == ""


def test_probe_skips_cells_whose_click_fails() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={9, 10})], scan_failures=1)
    page.fail_clicks = {9}
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert [d.day_number for d in days] == [10]


def test_probe_matches_whole_day_number_not_substring() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, decoys={2})], scan_failures=1)
    # Left over from an earlier selection; contains a "2" but not day 2.
    page.fields["#appointments_consulate_appointment_date"] = "2025-08-21"

    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert days == []
    assert page.clicked == [2]
    assert page.fields["#appointments_consulate_appointment_date"] == ""


def test_unreadable_month_counts_as_empty_and_moves_on() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 7, unreadable=True), FakeMonth(2025, 8, available={2})])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=3)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 8, 2)]


def test_unparseable_header_after_advance_assumes_next_month() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 7), FakeMonth(2025, 8, available={5}, header="???")])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=3)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 8, 5)]


def test_unparseable_header_rolls_over_year_end() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 12), FakeMonth(2026, 1, available={2}, header="")])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=3)

    assert [d.key for d in days] == [DateKey.from_parts(2026, 1, 2)]


def test_unparseable_header_without_navigation_keeps_previous_context() -> None:
    engine = _engine(FakeCalendarPage([FakeMonth(2025, 9)]))
    engine.search(CalendarKind.PRIMARY, max_months=1)

    # Same engine, a calendar whose header cannot be read and no navigation.
    engine._driver = FakeCalendarPage([FakeMonth(2025, 9, available={4}, header="")])
    days = engine.search(CalendarKind.PRIMARY, max_months=1)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 9, 4)]


def test_day_after_unreadable_header_is_never_stamped_into_a_short_month() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 11), FakeMonth(2025, 12, available={31}, header="")])
    engine = _engine(page)

    bounded = engine.search(CalendarKind.COMPANION, max_months=3, upper_bound=DateKey.from_parts(2025, 12, 1))
    assert bounded == []

    page.index = 0
    engine = _engine(page)
    days = engine.search(CalendarKind.COMPANION, max_months=3)
    assert [d.key for d in days] == [DateKey.from_parts(2025, 12, 31)]
    assert match(DateKey.from_parts(2025, 12, 31), days, tolerance_days=2) is days[0]


def test_days_that_do_not_exist_in_the_header_month_are_skipped() -> None:
    # Header claims February but the grid still shows March cells.
    page = FakeCalendarPage([FakeMonth(2025, 3, available={27, 30}, header="Fevereiro 2025")])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 2, 27)]


def test_click_confirmation_reopens_datepicker_after_each_selection() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={7, 9, 12}, decoys={8})], scan_failures=1)
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert [d.day_number for d in days] == [7, 9, 12]
    assert page.reopened == 3
    assert page.open is True


def test_first_unparseable_header_falls_back_to_today() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 9, available={5}, header="")])
    days = _engine(page).search(CalendarKind.PRIMARY, max_months=1)

    assert [d.key for d in days] == [DateKey.from_parts(2025, 7, 5)]


def test_upper_bound_drops_later_days_and_stops_past_bound_month() -> None:
    page = FakeCalendarPage(
        [
            FakeMonth(2025, 7),
            FakeMonth(2025, 8, available={20, 25}),
            FakeMonth(2025, 9, available={1}),
        ]
    )
    days = _engine(page).search(CalendarKind.COMPANION, max_months=12, upper_bound=DateKey.from_parts(2025, 8, 14))

    assert days == []
    assert page.index == 2


def test_upper_bound_keeps_days_on_or_before_bound() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={12, 14, 16})])
    days = _engine(page).search(CalendarKind.COMPANION, max_months=12, upper_bound=DateKey.from_parts(2025, 8, 14))

    assert [d.day_number for d in days] == [12, 14]


def test_cancellation_is_checked_between_months() -> None:
    token = CancellationToken()
    token.cancel()
    page = FakeCalendarPage([FakeMonth(2025, 8, available={1})])

    with pytest.raises(CycleCancelled):
        _engine(page, cancel_token=token).search(CalendarKind.PRIMARY, max_months=3)


def test_select_day_clicks_matching_enabled_cell() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={14})])
    engine = _engine(page)
    (day,) = engine.search(CalendarKind.PRIMARY, max_months=1)

    assert engine.select_day(CalendarKind.PRIMARY, day) is True
    assert page.clicked == [14]


def test_select_day_returns_false_when_cell_is_gone() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, available={14})])
    engine = _engine(page)
    (day,) = engine.search(CalendarKind.PRIMARY, max_months=1)
    page.months[0].available = set()

    assert engine.select_day(CalendarKind.PRIMARY, day) is False


def test_probe_reads_day_from_iso_value_not_month() -> None:
    page = FakeCalendarPage([FakeMonth(2025, 8, decoys={8})], scan_failures=1)
    page.fields["#appointments_consulate_appointment_date"] = "2025-08-21"

    assert _engine(page).search(CalendarKind.PRIMARY, max_months=1) == []
