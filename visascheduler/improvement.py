from __future__ import annotations

import logging
from dataclasses import dataclass

from visascheduler.domain import DateKey

logger = logging.getLogger(__name__)


@dataclass
class BaselineState:
    """Process-lifetime memory of the dates we compare against.

    ``baseline_date`` comes from an appointment the account already holds and
    is never overwritten. ``best_found`` only moves earlier.
    """

    max_acceptable_date: DateKey
    baseline_date: DateKey | None = None
    best_found: DateKey | None = None

    @property
    def reference(self) -> DateKey:
        return self.baseline_date or self.best_found or self.max_acceptable_date


@dataclass(frozen=True)
class Evaluation:
    candidate: DateKey
    accepted: bool
    is_improvement: bool
    previous_best: DateKey | None
    reference: DateKey


class ImprovementPolicy:
    def __init__(self, state: BaselineState) -> None:
        self.state = state

    def seed_baseline(self, date: DateKey) -> None:
        if self.state.baseline_date is not None:
            logger.warning(
                "Baseline already set to %s, ignoring new value %s",
                self.state.baseline_date,
                date,
            )
            return

        self.state.baseline_date = date
        self.state.best_found = date
        logger.info("Existing appointment set as permanent baseline: %s", date)
        logger.info("Will only notify for dates better than: %s", date)

    def assess(self, candidate: DateKey) -> Evaluation:
        """Classify ``candidate`` without touching the state."""
        state = self.state
        previous_best = state.best_found

        if candidate > state.max_acceptable_date:
            logger.info("Found date %s is later than max date %s - not acceptable", candidate, state.max_acceptable_date)
            return Evaluation(candidate, False, False, previous_best, state.max_acceptable_date)

        reference = state.reference
        if state.baseline_date is None and state.best_found is None:
            # First date under the ceiling is always worth reporting, even
            # when it equals the max date itself.
            logger.info("First date found: %s (max date %s)", candidate, state.max_acceptable_date)
            return Evaluation(candidate, True, True, previous_best, reference)

        is_improvement = candidate < reference
        if is_improvement:
            if state.baseline_date is not None:
                logger.info("Found date %s is better than baseline appointment %s", candidate, reference)
            else:
                logger.info("New best date: %s (improved from %s)", candidate, reference)
        elif state.baseline_date is not None:
            logger.info("Found date %s is not better than baseline appointment %s", candidate, reference)
        else:
            logger.info("Found date %s is not better than current best %s", candidate, reference)

        return Evaluation(candidate, True, is_improvement, previous_best, reference)

    def commit(self, evaluation: Evaluation) -> bool:
        """Apply an assessment. Returns True if ``best_found`` moved."""
        if not (evaluation.accepted and evaluation.is_improvement):
            return False

        current = self.state.best_found
        if current is not None and evaluation.candidate >= current:
            return False

        self.state.best_found = evaluation.candidate
        return True

    def evaluate(self, candidate: DateKey) -> Evaluation:
        evaluation = self.assess(candidate)
        self.commit(evaluation)
        return evaluation
