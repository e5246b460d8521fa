"""Smoke/integration test for Telegram delivery.

This test talks to the real Telegram API and is skipped unless both
TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are set. With a comma-separated
TELEGRAM_CHAT_ID only the first id is used, to avoid spamming.

Run:
    TELEGRAM_BOT_TOKEN=123 TELEGRAM_CHAT_ID=123 python -m pytest -q -m telegram
"""

from __future__ import annotations

import os

import pytest

from visascheduler.telegram_notifier import send_telegram_message


pytestmark = pytest.mark.telegram


def _first_chat_id(raw: str) -> str:
    return raw.split(",", 1)[0].strip()


@pytest.mark.skipif(
    not os.getenv("TELEGRAM_BOT_TOKEN") or not os.getenv("TELEGRAM_CHAT_ID"),
    reason="Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID to run Telegram smoke test",
)
def test_telegram_message_delivery_smoke() -> None:
    send_telegram_message(
        bot_token=os.environ["TELEGRAM_BOT_TOKEN"],
        chat_id=_first_chat_id(os.environ["TELEGRAM_CHAT_ID"]),
        text="<b>Visa scheduler</b>: Telegram smoke test (pytest)",
    )
