from __future__ import annotations

import datetime as dt
import logging
from html import escape
from typing import Callable

from visascheduler.config import Settings
from visascheduler.domain import BookingCandidate, RunStats
from visascheduler.telegram_notifier import send_telegram_message

logger = logging.getLogger(__name__)


def _now() -> str:
    return dt.datetime.now().strftime("%d-%m-%Y %H:%M:%S")


def _e(value: object) -> str:
    return escape(str(value)) if value is not None else "-"


def format_improvement_message(candidate: BookingCandidate, check_number: int = 0) -> str:
    lines = [
        "<b>🏆 NEW EARLIER APPOINTMENT FOUND! 🏆</b>",
        "",
        f"📍 <b>Consulate:</b> {_e(candidate.primary_location)}",
        f"📅 <b>Consulate Date:</b> {_e(candidate.primary_date)}",
        f"⏰ <b>Consulate Time:</b> {_e(candidate.primary_time)}",
        f"🏢 <b>CASV:</b> {_e(candidate.companion_location)}",
        f"📅 <b>CASV Date:</b> {_e(candidate.companion_date)}",
        f"⏰ <b>CASV Time:</b> {_e(candidate.companion_time)}",
        "",
    ]
    if candidate.baseline is not None:
        lines.append(f"📌 <b>Current appointment:</b> {_e(candidate.baseline)}")
    if candidate.previous_best is not None:
        lines.append(f"📈 <b>Previous best date:</b> {_e(candidate.previous_best)}")
    else:
        lines.append("🎯 <b>This is the first appointment found!</b>")
    lines += [
        "",
        f"⏰ <b>Found at:</b> {_now()}",
        f"🔄 <b>Check #:</b> {check_number}",
    ]
    return "\n".join(lines)


def format_startup_message(settings: Settings, *, mode: str) -> str:
    return "\n".join(
        [
            "<b>🚀 VISA SCHEDULER STARTED</b>",
            "",
            f"📍 <b>Consulate:</b> {_e(settings.consulate)}",
            f"📅 <b>Max Date:</b> {_e(settings.max_date)}",
            f"🔄 <b>Mode:</b> {_e(mode)} (interval {settings.check_interval_seconds}s, headless={settings.headless})",
            f"⏰ <b>Started at:</b> {_now()}",
        ]
    )


def format_shutdown_message(reason: str, stats: RunStats | None = None) -> str:
    lines = [
        "<b>🛑 VISA SCHEDULER STOPPED</b>",
        "",
        f"📝 <b>Reason:</b> {_e(reason)}",
        f"⏰ <b>Stopped at:</b> {_now()}",
    ]
    if stats is not None:
        lines += ["", format_summary(stats)]
    return "\n".join(lines)


def format_error_message(exc: BaseException, context: str) -> str:
    return "\n".join(
        [
            "<b>⚠️ VISA SCHEDULER ERROR</b>",
            "",
            f"🔴 <b>Context:</b> {_e(context)}",
            f"📝 <b>Error:</b> {_e(type(exc).__name__)}: {_e(exc)}",
            f"⏰ <b>Occurred at:</b> {_now()}",
        ]
    )


def format_session_timeout_message() -> str:
    return "\n".join(
        [
            "<b>🔐 SESSION TIMEOUT</b>",
            "",
            "The login session has expired, re-authenticating.",
            f"⏰ <b>Occurred at:</b> {_now()}",
        ]
    )


def format_summary(stats: RunStats) -> str:
    return "\n".join(
        [
            "<b>📊 SUMMARY</b>",
            f"🔄 <b>Total checks:</b> {stats.checks}",
            f"❌ <b>Failed checks:</b> {stats.failed_checks}",
            f"📅 <b>Improvements found:</b> {stats.improvements_found}",
            f"🏆 <b>Best date:</b> {_e(stats.best_found) if stats.best_found else 'None found'}",
            f"⏱ <b>Runtime:</b> {stats.runtime_text()}",
        ]
    )


def _recipients(settings: Settings) -> list[str]:
    recipients = list(settings.telegram_chat_ids)
    admin = settings.telegram_admin_chat_id
    if admin and admin not in recipients:
        recipients.append(admin)
    return recipients


def broadcast_telegram(settings: Settings, text: str, *, admin_only: bool = False) -> None:
    if not settings.telegram_enabled:
        logger.info("Telegram notifications disabled, skipping message")
        return

    if admin_only:
        recipients = [settings.telegram_admin_chat_id] if settings.telegram_admin_chat_id else []
    else:
        recipients = _recipients(settings)

    errors: list[tuple[str, Exception]] = []
    for chat_id in recipients:
        try:
            send_telegram_message(
                bot_token=settings.telegram_bot_token,
                chat_id=chat_id,
                text=text,
            )
        except Exception as e:
            # Best-effort: don't stop sending to other chat_ids.
            logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
            errors.append((chat_id, e))

    if errors:
        failed = ", ".join([cid for cid, _ in errors])
        raise RuntimeError(f"Failed to send telegram message to some recipients: {failed}")


def send_status_message(settings: Settings, text: str) -> None:
    """Best-effort status message; never raises."""
    try:
        broadcast_telegram(settings, text)
    except Exception:
        logger.warning("Failed to send Telegram status message", exc_info=True)


class TelegramSink:
    """``NotificationSink`` that alerts every configured chat."""

    def __init__(self, settings: Settings, *, check_number: Callable[[], int] | None = None) -> None:
        self._settings = settings
        self._check_number = check_number or (lambda: 0)

    def publish(self, candidate: BookingCandidate) -> bool:
        if not self._settings.telegram_enabled:
            logger.info("Telegram notifications disabled, not publishing %s", candidate.primary_date)
            return False

        try:
            broadcast_telegram(self._settings, format_improvement_message(candidate, self._check_number()))
        except Exception as e:
            logger.warning("Failed to publish appointment notification (%s: %s)", type(e).__name__, e)
            return False

        logger.info("Telegram notification sent.")
        return True
