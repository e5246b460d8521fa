from __future__ import annotations

import html
import re

import httpx

TELEGRAM_API = "https://api.telegram.org"

# Bot API hard limit for sendMessage text.
MAX_MESSAGE_LENGTH = 4096

_TAG_RE = re.compile(r"<[^>]*>")


class TelegramApiError(RuntimeError):
    def __init__(self, chat_id: str, description: str, retry_after: int | None = None) -> None:
        self.chat_id = chat_id
        self.description = description
        self.retry_after = retry_after
        suffix = f" (retry after {retry_after}s)" if retry_after else ""
        super().__init__(f"Telegram API error for chat {chat_id}: {description}{suffix}")


def send_telegram_message(
    *,
    bot_token: str,
    chat_id: str,
    text: str,
    parse_mode: str | None = "HTML",
    timeout_seconds: float = 20.0,
) -> None:
    if len(text) > MAX_MESSAGE_LENGTH:
        if parse_mode == "HTML":
            # A cut can land inside a tag; send the overlong text as plain text.
            text = html.unescape(_TAG_RE.sub("", text))
            parse_mode = None
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[: MAX_MESSAGE_LENGTH - 1] + "…"

    payload: dict[str, object] = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }
    if parse_mode:
        payload["parse_mode"] = parse_mode

    with httpx.Client(base_url=TELEGRAM_API, timeout=timeout_seconds) as client:
        r = client.post(f"/bot{bot_token}/sendMessage", json=payload)

    # Telegram puts the reason in the JSON body for 4xx answers too.
    try:
        data = r.json()
    except ValueError:
        r.raise_for_status()
        raise TelegramApiError(chat_id, f"non-JSON response ({r.status_code})")

    if not data.get("ok", False):
        retry_after = (data.get("parameters") or {}).get("retry_after")
        raise TelegramApiError(chat_id, data.get("description") or f"HTTP {r.status_code}", retry_after)
