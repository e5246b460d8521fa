from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from visascheduler.dates import to_key
from visascheduler.domain import DateKey, InvalidDateFormatError

# Value of <option> in #appointments_consulate_appointment_facility_id
CONSULATE_FACILITY_IDS = {
    "Brasília": "54",
    "Porto Alegre": "128",
    "Recife": "57",
    "Rio de Janeiro": "55",
    "São Paulo": "56",
}

# Consulates without their own CASV are served by the Brasília one.
CASV_FACILITY_IDS = {
    "Brasília": "58",
    "Porto Alegre": "58",
    "Recife": "58",
    "Rio de Janeiro": "59",
    "São Paulo": "60",
}

CASV_LOCATION_NAMES = {
    "58": "Brasília ASC",
    "59": "Rio de Janeiro ASC",
    "60": "São Paulo ASC Unidade Vila Mariana",
}


def _parse_telegram_chat_ids(raw: str) -> tuple[str, ...]:
    # TELEGRAM_CHAT_ID supports a single value or a comma-separated list.
    # Examples:
    #   TELEGRAM_CHAT_ID=123456789
    #   TELEGRAM_CHAT_ID=123456789,-1001234567890
    parts = [p.strip() for p in raw.split(",")]
    parts = [p for p in parts if p]

    seen: set[str] = set()
    result: list[str] = []
    for p in parts:
        _validate_chat_id("TELEGRAM_CHAT_ID", p)
        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    if not result:
        raise RuntimeError("TELEGRAM_CHAT_ID is empty. Provide at least one chat id.")

    return tuple(result)


def _validate_chat_id(name: str, value: str) -> None:
    # Telegram allows numeric IDs; groups/supergroups can be negative.
    try:
        int(value)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {value!r}. Expected integer chat id.") from e

    if value == "0":
        raise RuntimeError(f"Invalid {name} value: '0' is not a valid chat id")


@dataclass(frozen=True)
class Settings:
    visa_username: str
    visa_password: str
    country_code: str
    schedule_id: str
    consulate: str
    max_date: DateKey

    telegram_bot_token: str | None = None
    telegram_chat_ids: tuple[str, ...] = ()
    telegram_admin_chat_id: str | None = None

    # Manual baseline when the groups page can't be read.
    current_appointment_date: DateKey | None = None

    check_interval_seconds: int = 30
    headless: bool = True

    # How many times the session bootstrap (browser + login + page) is retried.
    check_retry_attempts: int = 3

    # Calendar search
    max_months_to_check: int = 12
    max_companion_months_to_check: int = 12
    companion_date_tolerance_days: int = 2

    # Browser pacing, seconds
    page_load_timeout_seconds: float = 30
    element_wait_timeout_seconds: float = 10
    action_delay_seconds: float = 1.0
    selection_delay_seconds: float = 2.0
    calendar_delay_seconds: float = 2.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_ids)

    @property
    def consulate_facility_id(self) -> str:
        return CONSULATE_FACILITY_IDS[self.consulate]

    @property
    def casv_facility_id(self) -> str:
        return CASV_FACILITY_IDS[self.consulate]

    @property
    def casv_location_name(self) -> str:
        return CASV_LOCATION_NAMES.get(self.casv_facility_id, "Unknown ASC")


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected number of seconds.") from e
    if value < 0:
        raise RuntimeError(f"{name} must be >= 0")
    return value


def _date(name: str, raw: str) -> DateKey:
    try:
        key = to_key(raw)
        key.to_date()
    except (InvalidDateFormatError, ValueError) as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected DD-MM-YYYY.") from e
    return key


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    headless_raw = os.getenv("HEADLESS", "1").strip().lower()
    headless = headless_raw not in {"0", "false", "no"}

    consulate = os.getenv("VISA_CONSULATE", "Brasília").strip()
    if consulate not in CONSULATE_FACILITY_IDS:
        known = ", ".join(CONSULATE_FACILITY_IDS)
        raise RuntimeError(f"Unknown consulate: {consulate!r}. Known: {known}")

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or None
    chat_ids_raw = os.getenv("TELEGRAM_CHAT_ID")
    telegram_chat_ids: tuple[str, ...] = ()
    if chat_ids_raw is not None:
        telegram_chat_ids = _parse_telegram_chat_ids(chat_ids_raw)
    if telegram_bot_token and not telegram_chat_ids:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is set but TELEGRAM_CHAT_ID is missing")

    admin_chat_id = (os.getenv("TELEGRAM_ADMIN_CHAT_ID") or "").strip() or None
    if admin_chat_id is not None:
        _validate_chat_id("TELEGRAM_ADMIN_CHAT_ID", admin_chat_id)

    current_raw = (os.getenv("VISA_CURRENT_APPOINTMENT_DATE") or "").strip()
    current_appointment_date = _date("VISA_CURRENT_APPOINTMENT_DATE", current_raw) if current_raw else None

    return Settings(
        visa_username=_require("VISA_USERNAME"),
        visa_password=_require("VISA_PASSWORD"),
        country_code=os.getenv("COUNTRY_CODE", "pt-br"),
        schedule_id=_require("SCHEDULE_ID"),
        consulate=consulate,
        max_date=_date("VISA_MAX_DATE", _require("VISA_MAX_DATE")),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_ids=telegram_chat_ids,
        telegram_admin_chat_id=admin_chat_id,
        current_appointment_date=current_appointment_date,
        check_interval_seconds=_int("CHECK_INTERVAL_SECONDS", 30, minimum=1),
        headless=headless,
        check_retry_attempts=_int("CHECK_RETRY_ATTEMPTS", 3, minimum=1),
        max_months_to_check=_int("MAX_MONTHS_TO_CHECK", 12, minimum=1),
        max_companion_months_to_check=_int("MAX_COMPANION_MONTHS_TO_CHECK", 12, minimum=1),
        companion_date_tolerance_days=_int("COMPANION_DATE_TOLERANCE_DAYS", 2, minimum=0),
        page_load_timeout_seconds=_float("PAGE_LOAD_TIMEOUT_SECONDS", 30),
        element_wait_timeout_seconds=_float("ELEMENT_WAIT_TIMEOUT_SECONDS", 10),
        action_delay_seconds=_float("ACTION_DELAY_SECONDS", 1.0),
        selection_delay_seconds=_float("SELECTION_DELAY_SECONDS", 2.0),
        calendar_delay_seconds=_float("CALENDAR_DELAY_SECONDS", 2.0),
    )
