from __future__ import annotations

import datetime as dt
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Callable

from tenacity import RetryCallState, retry, stop_after_attempt, wait_exponential

from visascheduler.booking import BookingOptions, BookingOrchestrator
from visascheduler.config import Settings
from visascheduler.domain import BookingCandidate, BusyError, DateKey, ExistingAppointment, RunStats
from visascheduler.improvement import BaselineState, ImprovementPolicy
from visascheduler.interfaces import CancellationToken, Clock, NotificationSink, PageDriver, SystemClock
from visascheduler.notifications import (
    TelegramSink,
    broadcast_telegram,
    format_error_message,
    format_session_timeout_message,
    send_status_message,
)
from visascheduler.selenium_provider import (
    SeleniumPageDriver,
    build_appointments_url,
    build_sign_in_url,
    is_session_expired_error,
    log_in,
    open_appointments_page,
    read_existing_appointment,
    reload_appointments_page,
    save_debug_snapshot,
    start_driver,
)

logger = logging.getLogger(__name__)


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    # Type and message only, no traceback between attempts.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_before_attempt(retry_state: RetryCallState) -> None:
    logger.info("Attempt %s: starting", retry_state.attempt_number)


def _log_after_attempt(retry_state: RetryCallState) -> None:
    # Called at the end of every attempt, failed or not.
    if retry_state.outcome is not None and retry_state.outcome.failed:
        reason = _short_exc(retry_state)
        if reason:
            logger.warning("Attempt %s: failed (%s)", retry_state.attempt_number, reason)
        else:
            logger.warning("Attempt %s: failed", retry_state.attempt_number)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    next_attempt = retry_state.attempt_number + 1
    reason = _short_exc(retry_state)

    if sleep_seconds is None:
        logger.info("Waiting before next attempt... (reason: %s)", reason or "unknown")
        return

    logger.info("Attempt %s in %.0f s (reason: %s)", next_attempt, sleep_seconds, reason or "unknown")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff, for session bootstrap."""

    max_attempts: int
    delay: float = 2.0
    max_delay: float = 30.0

    def wrap(self, fn: Callable[..., Any]) -> Callable[..., Any]:
        return retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.delay, min=self.delay, max=self.max_delay),
            before=_log_before_attempt,
            after=_log_after_attempt,
            before_sleep=_log_before_sleep,
            reraise=True,
        )(fn)


@dataclass
class Session:
    """A logged-in browser sitting on the appointment page."""

    page: PageDriver
    driver: Any = None
    existing_appointment: ExistingAppointment | None = None
    wait_seconds: float = 30

    def reload(self) -> None:
        reload_appointments_page(self.driver, wait_seconds=self.wait_seconds)
        logger.info("Page refreshed")

    def close(self) -> None:
        if self.driver is None:
            return
        try:
            self.driver.quit()
        except Exception:
            logger.warning("Failed to quit driver cleanly", exc_info=True)
        self.driver = None


def _open_session(settings: Settings, lookup_existing: bool = True) -> Session:
    sign_in_url = build_sign_in_url(settings.country_code)
    appointments_url = build_appointments_url(settings.country_code, settings.schedule_id)

    logger.info("Starting browser (headless=%s)", settings.headless)
    driver = start_driver(headless=settings.headless, page_load_timeout=settings.page_load_timeout_seconds)

    try:
        logger.info("Logging in: %s", sign_in_url)
        log_in(
            driver,
            sign_in_url=sign_in_url,
            username=settings.visa_username,
            password=settings.visa_password,
            wait_seconds=settings.page_load_timeout_seconds,
        )

        existing = None
        if lookup_existing:
            existing = read_existing_appointment(
                driver,
                country_code=settings.country_code,
                wait_seconds=settings.element_wait_timeout_seconds,
            )

        logger.info("Opening appointment page: %s", appointments_url)
        open_appointments_page(driver, appointments_url=appointments_url, wait_seconds=settings.page_load_timeout_seconds)
    except Exception:
        try:
            driver.quit()
        except Exception:
            logger.warning("Failed to quit driver cleanly", exc_info=True)
        raise

    return Session(
        page=SeleniumPageDriver(driver, wait_seconds=settings.element_wait_timeout_seconds),
        driver=driver,
        existing_appointment=existing,
        wait_seconds=settings.page_load_timeout_seconds,
    )


def open_session_with_retry(settings: Settings, lookup_existing: bool = True) -> Session:
    policy = RetryPolicy(max_attempts=settings.check_retry_attempts)
    return policy.wrap(_open_session)(settings, lookup_existing)


def booking_options(settings: Settings) -> BookingOptions:
    return BookingOptions(
        primary_facility_id=settings.consulate_facility_id,
        companion_facility_id=settings.casv_facility_id,
        primary_location=settings.consulate,
        companion_location=settings.casv_location_name,
        max_primary_months=settings.max_months_to_check,
        max_companion_months=settings.max_companion_months_to_check,
        tolerance_days=settings.companion_date_tolerance_days,
        action_delay_seconds=settings.action_delay_seconds,
        calendar_delay_seconds=settings.calendar_delay_seconds,
        facility_delay_seconds=settings.selection_delay_seconds,
    )


SessionFactory = Callable[[Settings, bool], Session]


@dataclass
class Monitor:
    """Owns the browser session, the baseline state and the run statistics."""

    settings: Settings
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    sink: NotificationSink | None = None
    clock: Clock = field(default_factory=SystemClock)
    session_factory: SessionFactory = open_session_with_retry

    stats: RunStats = field(default_factory=RunStats)
    session: Session | None = None
    orchestrator: BookingOrchestrator | None = None

    def __post_init__(self) -> None:
        self.policy = ImprovementPolicy(BaselineState(max_acceptable_date=self.settings.max_date))
        if self.sink is None:
            self.sink = TelegramSink(self.settings, check_number=lambda: self.stats.checks)

    def start(self) -> None:
        self.session = self.session_factory(self.settings, True)
        self._bind(self.session)
        self._seed_baseline(self.session.existing_appointment)

    def _bind(self, session: Session) -> None:
        self.orchestrator = BookingOrchestrator(
            session.page,
            self.policy,
            booking_options(self.settings),
            clock=self.clock,
            cancel_token=self.cancel_token,
        )

    def _seed_baseline(self, existing: ExistingAppointment | None) -> None:
        baseline: DateKey | None = self.settings.current_appointment_date
        if baseline is None and existing is not None:
            logger.info("Existing appointment: %s %s %s", existing.date, existing.time or "", existing.location or "")
            baseline = existing.date
        if baseline is not None:
            self.policy.seed_baseline(baseline)
        else:
            logger.info("No existing appointment; comparing against max date %s", self.settings.max_date)

    def check(self) -> BookingCandidate | None:
        if self.session is None or self.orchestrator is None:
            raise RuntimeError("Monitor.start() must be called before check()")

        self.stats.checks += 1
        self.stats.last_check_at = dt.datetime.now()
        logger.info("Check #%d - looking for dates before %s", self.stats.checks, self.policy.state.reference)

        self.session.reload()
        candidate = self.orchestrator.run_cycle()
        self.stats.best_found = self.orchestrator.get_best_found()

        if candidate is None:
            logger.info("No available appointments found")
            return None

        if not candidate.is_improvement:
            logger.info("Earliest date %s is not an improvement, no notification", candidate.primary_date)
            return candidate

        self.stats.improvements_found += 1
        logger.info(
            "Appointment selected: consulate %s %s, CASV %s %s",
            candidate.primary_date,
            candidate.primary_time,
            candidate.companion_date,
            candidate.companion_time,
        )
        self.sink.publish(candidate)
        return candidate

    def recover_session(self) -> None:
        logger.info("Session may have expired, logging in again")
        send_status_message(self.settings, format_session_timeout_message())
        self.close()
        self.session = self.session_factory(self.settings, False)
        self._bind(self.session)
        logger.info("Session restored")

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None


def _notify_busy(settings: Settings, e: BusyError) -> None:
    # Normal site state: only the admin chat hears about it.
    if not settings.telegram_admin_chat_id:
        return
    try:
        broadcast_telegram(settings, f"Site is busy, check skipped ({e})", admin_only=True)
    except Exception:
        logger.warning("Failed to send busy notice to admin chat", exc_info=True)


def run_check_once(settings: Settings, *, monitor: Monitor | None = None) -> BookingCandidate | None:
    monitor = monitor or Monitor(settings)
    try:
        monitor.start()
        return monitor.check()

    except BusyError as e:
        logger.info("Site is busy, skipping notification (%s)", e)
        _notify_busy(settings, e)
        return None

    except Exception as e:
        logger.error("Check failed (%s: %s)", type(e).__name__, e)
        send_status_message(settings, format_error_message(e, "Single check"))
        raise

    finally:
        monitor.close()


def run_forever(
    settings: Settings,
    *,
    cancel_token: CancellationToken | None = None,
    monitor: Monitor | None = None,
) -> RunStats:
    cancel_token = cancel_token or (monitor.cancel_token if monitor else CancellationToken())
    monitor = monitor or Monitor(settings, cancel_token=cancel_token)

    logger.info("Worker started. Interval=%ss", settings.check_interval_seconds)
    try:
        monitor.start()
        while not cancel_token.cancelled:
            try:
                monitor.check()
            except BusyError as e:
                logger.info("Site is busy, skipping notification (%s)", e)
                _notify_busy(settings, e)
            except Exception as e:
                monitor.stats.failed_checks += 1
                # Traceback is not useful here; the loop keeps going.
                logger.error("Check #%d failed (%s: %s)", monitor.stats.checks, type(e).__name__, e)
                if is_session_expired_error(e):
                    monitor.recover_session()
                else:
                    if monitor.session is not None and monitor.session.driver is not None:
                        save_debug_snapshot(monitor.session.driver)
                    send_status_message(settings, format_error_message(e, f"Check #{monitor.stats.checks}"))

            if cancel_token.cancelled:
                break
            logger.info("Next check in %s seconds...", settings.check_interval_seconds)
            if cancel_token.wait(settings.check_interval_seconds):
                break
    finally:
        monitor.close()
        logger.info(
            "Stopped after %d checks (%d improvements, best %s, runtime %s)",
            monitor.stats.checks,
            monitor.stats.improvements_found,
            monitor.stats.best_found or "none",
            monitor.stats.runtime_text(),
        )

    return monitor.stats


def install_signal_handlers(cancel_token: CancellationToken) -> None:
    """SIGINT/SIGTERM request a graceful stop; a second signal exits at once."""

    def handle_signal(signum: int, frame: object) -> None:
        if cancel_token.cancelled:
            logger.warning("Second signal %s received, exiting immediately", signum)
            raise KeyboardInterrupt
        logger.info("Received signal %s, finishing current step...", signum)
        cancel_token.cancel()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
