from __future__ import annotations

import logging
from typing import Iterable

from visascheduler.dates import days_between, is_within_tolerance_before
from visascheduler.domain import CalendarDay, DateKey

logger = logging.getLogger(__name__)


def matching_candidates(
    primary_date: DateKey,
    companion_candidates: Iterable[CalendarDay],
    tolerance_days: int,
) -> list[CalendarDay]:
    """Companion days on ``primary_date`` or up to ``tolerance_days`` before it."""
    return [
        day
        for day in companion_candidates
        if is_within_tolerance_before(day.key, primary_date, tolerance_days)
    ]


def match(
    primary_date: DateKey,
    companion_candidates: Iterable[CalendarDay],
    tolerance_days: int,
) -> CalendarDay | None:
    """Pick the qualifying companion day closest to the primary date.

    Ties keep the first one seen. ``None`` just means no pairing is possible
    this cycle.
    """
    candidates = list(companion_candidates)
    qualifying = matching_candidates(primary_date, candidates, tolerance_days)

    if not qualifying:
        logger.info(
            "No CASV dates within %d days before %s (available: %s)",
            tolerance_days,
            primary_date,
            ", ".join(str(d.key) for d in candidates) or "none",
        )
        return None

    # min() returns the first of equal elements, which gives the tie-break.
    best = min(qualifying, key=lambda d: days_between(d.key, primary_date))
    logger.info(
        "Best matching CASV date: %s (%d days before %s)",
        best.key,
        days_between(best.key, primary_date),
        primary_date,
    )
    return best
