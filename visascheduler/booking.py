from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from visascheduler import slot_matcher
from visascheduler.calendar_search import CalendarSearchEngine
from visascheduler.domain import (
    BookingCandidate,
    CalendarDay,
    CalendarKind,
    CycleCancelled,
    DateKey,
    PageDriverError,
    TimeOption,
)
from visascheduler.improvement import BaselineState, Evaluation, ImprovementPolicy
from visascheduler.interfaces import CancellationToken, Clock, PageDriver, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingOptions:
    primary_facility_id: str
    companion_facility_id: str
    primary_location: str | None = None
    companion_location: str | None = None

    max_primary_months: int = 12
    max_companion_months: int = 12
    tolerance_days: int = 2

    action_delay_seconds: float = 1.0
    calendar_delay_seconds: float = 2.0
    facility_delay_seconds: float = 3.0


class _CycleAborted(Exception):
    """Internal: a step could not complete; the cycle yields None."""


def _selectable(options: Sequence[TimeOption]) -> list[TimeOption]:
    return [o for o in options if o.selectable]


class BookingOrchestrator:
    """Runs one booking cycle: consulate slot, improvement check, CASV pairing.

    Nothing is committed to the baseline state unless the whole pairing
    succeeded.
    """

    def __init__(
        self,
        driver: PageDriver,
        policy: ImprovementPolicy,
        options: BookingOptions,
        *,
        engine: CalendarSearchEngine | None = None,
        clock: Clock | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._driver = driver
        self._policy = policy
        self._options = options
        self._clock = clock or SystemClock()
        self._cancel = cancel_token or CancellationToken()
        self._engine = engine or CalendarSearchEngine(driver, clock=self._clock, cancel_token=self._cancel)

    @classmethod
    def create(
        cls,
        driver: PageDriver,
        options: BookingOptions,
        *,
        max_acceptable_date: DateKey,
        clock: Clock | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BookingOrchestrator:
        policy = ImprovementPolicy(BaselineState(max_acceptable_date=max_acceptable_date))
        return cls(driver, policy, options, clock=clock, cancel_token=cancel_token)

    def get_best_found(self) -> DateKey | None:
        return self._policy.state.best_found

    def get_baseline(self) -> DateKey | None:
        return self._policy.state.baseline_date

    def seed_baseline(self, date: DateKey) -> None:
        self._policy.seed_baseline(date)

    def run_cycle(self) -> BookingCandidate | None:
        try:
            return self._run_cycle()
        except CycleCancelled:
            logger.info("Cycle cancelled, discarding partial results")
            return None
        except _CycleAborted as e:
            logger.info("Cycle aborted: %s", e)
            return None
        except PageDriverError as e:
            logger.warning("Cycle aborted by page error (%s: %s)", type(e).__name__, e)
            return None

    def _run_cycle(self) -> BookingCandidate | None:
        opts = self._options

        self._step()
        self._select_facility(CalendarKind.PRIMARY, opts.primary_facility_id)
        self._open_calendar(CalendarKind.PRIMARY)

        self._step()
        primary_days = self._engine.search(CalendarKind.PRIMARY, opts.max_primary_months)
        if not primary_days:
            logger.info("No available consulate dates found")
            return None

        earliest = min(primary_days, key=lambda d: d.key)
        evaluation = self._policy.assess(earliest.key)

        if not evaluation.is_improvement:
            logger.info(
                "Earliest available date %s is not better than reference %s, skipping CASV search",
                earliest.key,
                evaluation.reference,
            )
            self._policy.commit(evaluation)
            return self._candidate(evaluation, primary_time=None, companion=None, companion_time=None)

        self._step()
        self._pick_day(CalendarKind.PRIMARY, earliest)
        primary_time = self._pick_time(CalendarKind.PRIMARY, latest=True)

        self._step()
        self._select_facility(CalendarKind.COMPANION, opts.companion_facility_id)
        self._open_calendar(CalendarKind.COMPANION)

        self._step()
        companion_days = self._engine.search(
            CalendarKind.COMPANION,
            opts.max_companion_months,
            upper_bound=earliest.key,
        )
        if not companion_days:
            raise _CycleAborted("no CASV dates found")

        companion = slot_matcher.match(earliest.key, companion_days, opts.tolerance_days)
        if companion is None:
            raise _CycleAborted(f"no CASV date within {opts.tolerance_days} days before {earliest.key}")

        self._step()
        self._pick_day(CalendarKind.COMPANION, companion)
        companion_time = self._pick_time(CalendarKind.COMPANION, latest=False)

        self._step()
        self._policy.commit(evaluation)
        return self._candidate(
            evaluation,
            primary_time=primary_time.text,
            companion=companion,
            companion_time=companion_time.text,
        )

    def _step(self) -> None:
        self._cancel.raise_if_cancelled()

    def _select_facility(self, kind: CalendarKind, facility_id: str) -> None:
        # The facility select is reset on every page reload.
        self._driver.select_dropdown_value(kind.facility_select, facility_id)
        logger.info("Selected %s facility %s", kind.label, facility_id)
        self._clock.sleep(self._options.facility_delay_seconds)

    def _open_calendar(self, kind: CalendarKind) -> None:
        logger.info("Opening %s calendar", kind.label)
        self._driver.click(kind.date_field)
        self._clock.sleep(self._options.calendar_delay_seconds)

    def _pick_day(self, kind: CalendarKind, day: CalendarDay) -> None:
        if not self._engine.select_day(kind, day):
            raise _CycleAborted(f"could not select {kind.label} date {day.key}")

    def _pick_time(self, kind: CalendarKind, *, latest: bool) -> TimeOption:
        """Consulate: latest time of the day. CASV: earliest, to keep the gap short."""
        options = _selectable(self._driver.read_options_list(kind.time_select))
        if not options:
            raise _CycleAborted(f"no {kind.label} time slots for selected date")

        chosen = options[-1] if latest else options[0]
        logger.info(
            "Available %s times: %s; selecting %s",
            kind.label,
            ", ".join(o.text for o in options),
            chosen.text,
        )
        self._driver.select_dropdown_value(kind.time_select, chosen.value)
        self._clock.sleep(self._options.action_delay_seconds)
        return chosen

    def _candidate(
        self,
        evaluation: Evaluation,
        *,
        primary_time: str | None,
        companion: CalendarDay | None,
        companion_time: str | None,
    ) -> BookingCandidate:
        return BookingCandidate(
            primary_date=evaluation.candidate,
            primary_time=primary_time,
            companion_date=companion.key if companion is not None else None,
            companion_time=companion_time,
            is_improvement=evaluation.is_improvement,
            previous_best=evaluation.previous_best,
            accepted=evaluation.accepted,
            baseline=self._policy.state.baseline_date,
            primary_location=self._options.primary_location,
            companion_location=self._options.companion_location,
        )
