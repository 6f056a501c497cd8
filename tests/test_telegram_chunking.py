from __future__ import annotations

import json

import httpx
import pytest

from endpoint_checks.errors import ChannelDeliveryError
from endpoint_checks.notify.telegram import (
    TELEGRAM_MAX_MESSAGE_LEN,
    TelegramChannel,
    TelegramConfig,
    redact_telegram_response,
    split_telegram_message,
)


def test_split_telegram_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = split_telegram_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_telegram_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = split_telegram_message(text)
    assert len(parts) == 2
    assert len(parts[0]) <= TELEGRAM_MAX_MESSAGE_LEN
    assert len(parts[1]) <= TELEGRAM_MAX_MESSAGE_LEN


def test_split_telegram_message_keeps_lines_whole() -> None:
    lines = [f"endpoint-{i:03d} is DOWN: connection refused" for i in range(60)]
    parts = split_telegram_message("\n".join(lines), max_len=200)
    assert len(parts) > 1
    assert all(len(p) <= 200 for p in parts)
    rejoined = [line for p in parts for line in p.split("\n")]
    assert rejoined == lines


def test_split_telegram_message_blank_input() -> None:
    assert split_telegram_message("  \n\n ") == [""]


def test_redact_telegram_response_drops_echoed_message() -> None:
    reply = {
        "ok": True,
        "result": {"message_id": 7, "chat": {"id": 42}, "text": "api is DOWN"},
    }
    assert json.loads(redact_telegram_response(reply)) == {"ok": True, "message_id": 7}

    failed = {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"}
    assert json.loads(redact_telegram_response(failed)) == {
        "ok": False,
        "error_code": 400,
        "description": "Bad Request: chat not found",
    }


@pytest.mark.asyncio
async def test_telegram_channel_sends_title_and_message() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(seen)}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    channel = TelegramChannel(TelegramConfig(bot_token="123:abc", chat_id="42"), client=client)
    await channel.send("api is DOWN", "Reason: timeout")
    assert seen == [{"chat_id": "42", "text": "api is DOWN\n\nReason: timeout"}]


@pytest.mark.asyncio
async def test_telegram_failure_redacts_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    channel = TelegramChannel(TelegramConfig(bot_token="123:secret", chat_id="42"), client=client)
    with pytest.raises(ChannelDeliveryError) as excinfo:
        await channel.send("t", "m")
    assert "123:secret" not in str(excinfo.value)
    assert "<redacted>" in str(excinfo.value)
