from unittest import mock

import pytest

from notifications.alerts import AlertChannel
from notifications.telegram import format_alert, send_telegram_message, telegram_sink


def test_send_telegram_message_calls_bot_api():
    with mock.patch("notifications.telegram.requests.get") as get:
        get.return_value = mock.Mock(ok=True)
        send_telegram_message("hello", bot_token="TOKEN", chat_id="42")

    url = get.call_args.args[0]
    assert url == "https://api.telegram.org/botTOKEN/sendMessage"
    assert get.call_args.kwargs["params"] == {"chat_id": "42", "text": "hello"}


def test_send_telegram_message_raises_on_http_error():
    with mock.patch("notifications.telegram.requests.get") as get:
        get.return_value = mock.Mock(ok=False, status_code=400, text="chat not found")
        with pytest.raises(RuntimeError, match="400"):
            send_telegram_message("hello", bot_token="TOKEN", chat_id="42")


def test_send_telegram_message_needs_configuration(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
    with pytest.raises(RuntimeError):
        send_telegram_message("hello")


def test_alert_channel_forwards_records_to_telegram():
    channel = AlertChannel([telegram_sink("TOKEN", "42")])
    with mock.patch("notifications.telegram.requests.get") as get:
        get.return_value = mock.Mock(ok=True)
        record = channel.emit("TASK_BLOCKED", "merge_dim_user@20260201 blocked", task_id="merge_dim_user")

    assert record["kind"] == "TASK_BLOCKED"
    text = get.call_args.kwargs["params"]["text"]
    assert text == format_alert(record)
    assert text.startswith("⛔ TASK_BLOCKED")
    assert "task: merge_dim_user" in text


def test_broken_sink_does_not_break_emit():
    seen = []

    def broken(record):
        raise ConnectionError("offline")

    channel = AlertChannel([broken, seen.append])
    channel.emit("ORPHAN_EVENT", "no current row", dataset="users")

    assert [r["kind"] for r in seen] == ["ORPHAN_EVENT"]
    assert len(channel.emitted) == 1
