"""Capabilities the scheduling core needs from the outside world.

The core only talks to the browser through ``PageDriver``; the Selenium
implementation lives in ``visascheduler.selenium_provider`` and tests use
hand-written fakes.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Protocol, Sequence

from visascheduler.domain import BookingCandidate, CycleCancelled, TimeOption


@dataclass(frozen=True)
class CellInfo:
    """Snapshot of one calendar ``<td>``.

    ``ref`` is the cell position in the grid at read time; it is only valid
    until the datepicker re-renders.
    """

    ref: int
    text: str
    classes: frozenset[str] = frozenset()

    def has_class(self, *names: str) -> bool:
        return any(n in self.classes for n in names)


class PageDriver(Protocol):
    def read_cells(self, selector: str) -> Sequence[CellInfo]:
        """Raise PageDriverError when the grid cannot be read at all."""

    def click_cell(self, selector: str, ref: int) -> None: ...

    def click(self, selector: str) -> None: ...

    def read_field_value(self, selector: str) -> str | None: ...

    def set_field_value(self, selector: str, value: str) -> None: ...

    def advance_month(self) -> bool:
        """Return False when no 'next month' control could be used."""

    def read_header_text(self) -> str: ...

    def select_dropdown_value(self, selector: str, value: str) -> None: ...

    def read_options_list(self, selector: str) -> Sequence[TimeOption]: ...


class Clock(Protocol):
    def sleep(self, seconds: float) -> None: ...


class NotificationSink(Protocol):
    def publish(self, candidate: BookingCandidate) -> bool:
        """Fire-and-forget. Must not raise."""


class SystemClock:
    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class CancellationToken:
    """Cooperative shutdown flag checked between logical steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CycleCancelled("shutdown requested")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, seconds))
