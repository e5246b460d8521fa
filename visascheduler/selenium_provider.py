from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Iterator

from selenium import webdriver
from selenium.common.exceptions import (
    ElementClickInterceptedException,
    ElementNotInteractableException,
    InvalidSessionIdException,
    NoSuchElementException,
    NoSuchWindowException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from visascheduler.dates import parse_localized_date
from visascheduler.domain import (
    BusyError,
    ElementTimeoutError,
    ExistingAppointment,
    InvalidDateFormatError,
    PageDriverError,
    TimeOption,
)
from visascheduler.interfaces import CellInfo

logger = logging.getLogger(__name__)

BASE_URL = "https://ais.usvisa-info.com"

# Tried in order until one is clickable.
NEXT_MONTH_SELECTORS = (
    ".ui-datepicker-next",
    "a[data-handler='next']",
    ".next-month",
    ".calendar-next",
    ".datepicker-next",
)

CALENDAR_HEADER_SELECTOR = ".ui-datepicker-title"
CALENDAR_GROUP_SELECTOR = ".ui-datepicker-group"

# The browser session itself is gone; nothing on the page can be retried.
_FATAL_SESSION_ERRORS = (InvalidSessionIdException, NoSuchWindowException)

BUSY_MARKERS = (
    ("sistema ocupado", "tente novamente mais tarde"),
    ("system is busy", "try again later"),
)

SESSION_EXPIRED_MARKERS = ("login", "sign_in", "authentication", "unauthorized", "session")

CONSULAR_APPOINTMENT_SELECTOR = ".consular-appt"

# "Agendamento consular: 29 Agosto, 2025, 10:30 Brasília Horário local at ..."
_APPOINTMENT_RE = re.compile(
    r"(?P<day>\d{1,2})\s+(?P<month>[^\W\d_]+),?\s*(?P<year>\d{4}),?\s*(?P<time>\d{1,2}:\d{2})?\s*(?P<location>.*)",
    re.UNICODE,
)


def build_sign_in_url(country_code: str) -> str:
    # e.g. pt-br
    return f"{BASE_URL}/{country_code}/niv/users/sign_in"


def build_appointments_url(country_code: str, schedule_id: str) -> str:
    return f"{BASE_URL}/{country_code}/niv/schedule/{schedule_id}/appointment"


def build_groups_url(country_code: str, group_id: str) -> str:
    return f"{BASE_URL}/{country_code}/niv/groups/{group_id}"


def extract_group_id(url: str) -> str | None:
    m = re.search(r"/groups/(\d+)", url, re.IGNORECASE)
    return m.group(1) if m else None


def is_session_expired_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in SESSION_EXPIRED_MARKERS)


def parse_existing_appointment(text: str) -> ExistingAppointment | None:
    """Parse the appointment summary line shown on the groups page."""
    if not text:
        return None

    body = text.split(":", 1)[1] if ":" in text.split(",", 1)[0] else text
    m = _APPOINTMENT_RE.search(body.strip())
    if not m:
        return None

    try:
        date = parse_localized_date(m.group("day"), m.group("month"), m.group("year"))
    except InvalidDateFormatError:
        return None

    location = re.sub(r"hor[aá]rio local.*$", "", m.group("location") or "", flags=re.IGNORECASE).strip()
    return ExistingAppointment(date=date, time=m.group("time"), location=location or None)


def start_driver(*, headless: bool, page_load_timeout: float = 30) -> webdriver.Chrome:
    options = Options()
    # Keep it close to a real browser. Headless can be toggled via env.
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--window-size=1200,900")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-features=Translate,BackForwardCache")
    options.add_argument("--disable-background-networking")
    options.add_argument("--disable-background-timer-throttling")
    options.add_argument("--disable-renderer-backgrounding")
    options.add_argument(
        "--user-agent=Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"
    )

    service = Service(ChromeDriverManager().install())
    driver = webdriver.Chrome(service=service, options=options)
    driver.set_page_load_timeout(page_load_timeout)
    return driver


def log_in(driver: webdriver.Chrome, *, sign_in_url: str, username: str, password: str, wait_seconds: float = 30) -> None:
    driver.get(sign_in_url)

    # Captcha can appear; we only wait for the form.
    wait = WebDriverWait(driver, wait_seconds)
    wait.until(EC.presence_of_element_located((By.ID, "user_email")))

    user_box = driver.find_element(By.ID, "user_email")
    user_box.clear()
    user_box.send_keys(username)

    password_box = driver.find_element(By.ID, "user_password")
    password_box.clear()
    password_box.send_keys(password)

    # The policy checkbox is hidden behind a styled label; a JS click always lands.
    policy = driver.find_element(By.ID, "policy_confirmed")
    driver.execute_script("arguments[0].click();", policy)

    driver.find_element(By.CSS_SELECTOR, "input[name='commit']").click()

    try:
        wait.until(EC.url_changes(sign_in_url))
    except TimeoutException as e:
        if "sign_in" in driver.current_url:
            raise RuntimeError("Login failed - still on sign_in page (possible captcha or invalid credentials)") from e
        raise


def _busy_message_present(driver: webdriver.Chrome) -> bool:
    # Matched by substring so we don't depend on the banner markup.
    text = driver.page_source.lower()
    return any(all(part in text for part in marker) for marker in BUSY_MARKERS)


def open_appointments_page(driver: webdriver.Chrome, *, appointments_url: str, wait_seconds: float = 30) -> None:
    driver.get(appointments_url)
    if "sign_in" in driver.current_url:
        raise RuntimeError("Redirected to sign_in page: session expired")

    if _busy_message_present(driver):
        raise BusyError("Site answered 'system busy' on the appointment page")

    try:
        WebDriverWait(driver, wait_seconds).until(
            EC.presence_of_element_located((By.ID, "appointments_consulate_appointment_facility_id"))
        )
    except TimeoutException as e:
        raise RuntimeError("Appointment form did not load (consulate facility select missing)") from e


def reload_appointments_page(driver: webdriver.Chrome, *, wait_seconds: float = 30) -> None:
    driver.refresh()
    if "sign_in" in driver.current_url:
        raise RuntimeError("Redirected to sign_in page after reload: session expired")
    if _busy_message_present(driver):
        raise BusyError("Site answered 'system busy' after reload")
    try:
        WebDriverWait(driver, wait_seconds).until(
            EC.presence_of_element_located((By.ID, "appointments_consulate_appointment_facility_id"))
        )
    except TimeoutException as e:
        raise RuntimeError("Appointment form did not load after reload") from e


def read_existing_appointment(driver: webdriver.Chrome, *, country_code: str, wait_seconds: float = 10) -> ExistingAppointment | None:
    """Look up the consular appointment the account already holds, if any."""
    group_id = extract_group_id(driver.current_url)
    if group_id is None:
        logger.warning("Could not extract group id from %s; skipping existing appointment lookup", driver.current_url)
        return None

    driver.get(build_groups_url(country_code, group_id))
    try:
        el = WebDriverWait(driver, wait_seconds).until(
            EC.presence_of_element_located((By.CSS_SELECTOR, CONSULAR_APPOINTMENT_SELECTOR))
        )
    except TimeoutException:
        logger.info("No existing consular appointment on groups page")
        return None

    appointment = parse_existing_appointment(el.text)
    if appointment is None:
        logger.warning("Could not parse existing appointment text: %r", el.text)
    return appointment


class SeleniumPageDriver:
    """``PageDriver`` on top of a live Chrome session.

    Per-element Selenium failures are translated to ``PageDriverError`` so
    the core can treat them as recoverable. A dead browser session
    (``InvalidSessionIdException``, closed window) still escapes.

    The datepicker on this site can render several months side by side
    (``.ui-datepicker-group``). Cells and header are read from the first
    group only, so every cell is stamped with its own month.
    """

    def __init__(self, driver: webdriver.Chrome, *, wait_seconds: float = 10) -> None:
        self._driver = driver
        self._wait_seconds = wait_seconds

    @contextmanager
    def _ui_errors(self, what: str) -> Iterator[None]:
        try:
            yield
        except _FATAL_SESSION_ERRORS:
            raise
        except WebDriverException as e:
            raise PageDriverError(f"{what} failed ({type(e).__name__}: {(e.msg or '').strip()})") from e

    def _wait(self, seconds: float | None = None) -> WebDriverWait:
        return WebDriverWait(self._driver, self._wait_seconds if seconds is None else seconds)

    def _find(self, selector: str):
        try:
            return self._wait().until(EC.presence_of_element_located((By.CSS_SELECTOR, selector)))
        except TimeoutException as e:
            raise ElementTimeoutError(f"Element {selector!r} not found within {self._wait_seconds}s") from e

    def _calendar_root(self):
        groups = self._driver.find_elements(By.CSS_SELECTOR, CALENDAR_GROUP_SELECTOR)
        return groups[0] if groups else self._driver

    def _cells(self, selector: str) -> list:
        return self._calendar_root().find_elements(By.CSS_SELECTOR, selector)

    def read_cells(self, selector: str) -> list[CellInfo]:
        with self._ui_errors(f"Reading {selector!r}"):
            return [
                CellInfo(
                    ref=i,
                    text=(el.text or "").strip(),
                    classes=frozenset((el.get_attribute("class") or "").split()),
                )
                for i, el in enumerate(self._cells(selector))
            ]

    def click_cell(self, selector: str, ref: int) -> None:
        with self._ui_errors(f"Clicking cell #{ref} of {selector!r}"):
            elements = self._cells(selector)
            if ref >= len(elements):
                raise PageDriverError(f"Cell #{ref} of {selector!r} no longer exists")
            target = elements[ref]
            anchor = target.find_elements(By.TAG_NAME, "a")
            (anchor[0] if anchor else target).click()

    def click(self, selector: str) -> None:
        el = self._find(selector)
        with self._ui_errors(f"Clicking {selector!r}"):
            try:
                el.click()
            except (ElementClickInterceptedException, ElementNotInteractableException, StaleElementReferenceException):
                # Overlays sometimes swallow the native click; fall back to JS.
                self._driver.execute_script("arguments[0].click();", el)

    def read_field_value(self, selector: str) -> str | None:
        with self._ui_errors(f"Reading {selector!r}"):
            elements = self._driver.find_elements(By.CSS_SELECTOR, selector)
            if not elements:
                return None
            return elements[0].get_attribute("value") or None

    def set_field_value(self, selector: str, value: str) -> None:
        el = self._find(selector)
        with self._ui_errors(f"Setting {selector!r}"):
            self._driver.execute_script("arguments[0].value = arguments[1];", el, value)

    def advance_month(self) -> bool:
        for selector in NEXT_MONTH_SELECTORS:
            try:
                button = self._wait(2).until(EC.element_to_be_clickable((By.CSS_SELECTOR, selector)))
                button.click()
                return True
            except _FATAL_SESSION_ERRORS:
                raise
            except WebDriverException:
                continue
        return False

    def read_header_text(self) -> str:
        with self._ui_errors("Reading calendar header"):
            elements = self._calendar_root().find_elements(By.CSS_SELECTOR, CALENDAR_HEADER_SELECTOR)
            if not elements:
                raise PageDriverError("Calendar header not found")
            return elements[0].text

    def select_dropdown_value(self, selector: str, value: str) -> None:
        wait = self._wait()
        try:
            wait.until(EC.element_to_be_clickable((By.CSS_SELECTOR, selector)))
            select_el = self._driver.find_element(By.CSS_SELECTOR, selector)
            select = Select(select_el)

            def _has_option(_: object) -> bool:
                return any(o.get_attribute("value") == value for o in select.options)

            wait.until(_has_option)
        except TimeoutException as e:
            raise ElementTimeoutError(f"Option {value!r} of {selector!r} not available") from e

        try:
            if select.first_selected_option.get_attribute("value") == value:
                return
        except NoSuchElementException:
            pass

        with self._ui_errors(f"Selecting {value!r} in {selector!r}"):
            select.select_by_value(value)
            self._driver.execute_script(
                "arguments[0].dispatchEvent(new Event('change', {bubbles: true}));",
                select_el,
            )

    def read_options_list(self, selector: str) -> list[TimeOption]:
        option_selector = f"{selector} option"
        try:
            # Options are fetched by XHR after a date is picked.
            self._wait().until(
                lambda d: any(o.get_attribute("value") for o in d.find_elements(By.CSS_SELECTOR, option_selector))
            )
        except TimeoutException:
            return []

        with self._ui_errors(f"Reading options of {selector!r}"):
            return [
                TimeOption(
                    value=o.get_attribute("value") or "",
                    text=(o.text or "").strip(),
                    disabled=not o.is_enabled(),
                )
                for o in self._driver.find_elements(By.CSS_SELECTOR, option_selector)
            ]


def save_debug_snapshot(driver: webdriver.Chrome, prefix: str = "debug_appointments") -> None:
    ts = int(time.time())
    try:
        driver.save_screenshot(f"{prefix}_{ts}.png")
        with open(f"{prefix}_{ts}.html", "w", encoding="utf-8") as f:
            f.write(driver.page_source)
    except WebDriverException:
        logger.warning("Could not save debug snapshot", exc_info=True)
