# File: notifications/telegram.py

import os

import requests

# ────────────────────────────────────────────────────────────────────────────────
# Telegram Notification Utility Module
#
# Sends messages via Telegram Bot API.  Bot token and chat ID are read from
# TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID.
#
# Reference: https://core.telegram.org/bots/api#sendmessage
# ────────────────────────────────────────────────────────────────────────────────

TELEGRAM_API_BASE = "https://api.telegram.org"

_ICONS = {
    "ORPHAN_EVENT": "🧩",
    "VALIDATION_REJECTED": "🚫",
    "SCHEMA_MISMATCH": "⚠️",
    "TASK_BLOCKED": "⛔",
}


def send_telegram_message(text: str, bot_token: str = None, chat_id: str = None) -> None:
    """
    Send a text message to a Telegram chat.
    Raises RuntimeError if the bot is not configured or the HTTP call fails.
    """
    bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN", "")
    chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID", "")
    if not bot_token or not chat_id:
        raise RuntimeError("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID is not set")

    url = f"{TELEGRAM_API_BASE}/bot{bot_token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text}

    response = requests.get(url, params=payload, timeout=10)
    if not response.ok:
        raise RuntimeError(
            f"Failed to send Telegram message: {response.status_code} {response.text}"
        )


def format_alert(record: dict) -> str:
    icon = _ICONS.get(record["kind"], "❗")
    lines = [f"{icon} {record['kind']}: {record['reason']}"]
    if record.get("task_id"):
        lines.append(f"task: {record['task_id']}")
    if record.get("dataset"):
        lines.append(f"dataset: {record['dataset']}")
    return "\n".join(lines)


def telegram_sink(bot_token: str = None, chat_id: str = None):
    """Alert sink for AlertChannel that forwards each record to Telegram."""

    def _sink(record: dict) -> None:
        send_telegram_message(format_alert(record), bot_token=bot_token, chat_id=chat_id)

    return _sink
