from __future__ import annotations

import json
from dataclasses import dataclass

import httpx
import structlog

from endpoint_checks.errors import ChannelDeliveryError


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base: str = TELEGRAM_API_BASE
    timeout_seconds: float = 15.0


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """
    Pack whole lines into chunks of at most `max_len` characters.

    Lines are never split unless a single line is longer than `max_len`, in
    which case it is hard-wrapped. Chunks that would be blank are dropped.
    """
    body = (text or "").strip()
    if not body:
        return [""]

    limit = max(1, int(max_len))
    chunks: list[str] = []
    buf: list[str] = []
    size = 0
    for line in body.split("\n"):
        for start in range(0, max(len(line), 1), limit):
            piece = line[start : start + limit]
            needed = size + 1 + len(piece) if buf else len(piece)
            if buf and needed > limit:
                chunks.append("\n".join(buf))
                buf, needed = [], len(piece)
            buf.append(piece)
            size = needed
    chunks.append("\n".join(buf))
    return [c.strip() for c in chunks if c.strip()] or [""]


_REPLY_STATUS_FIELDS = ("error_code", "error", "description")


def redact_telegram_response(data: dict) -> str:
    """Bot API reply reduced to status fields and the message id; the echoed chat and text never reach logs."""
    summary: dict = {"ok": data.get("ok")}
    result = data.get("result")
    if isinstance(result, dict):
        summary["message_id"] = result.get("message_id")
    summary.update({k: data[k] for k in _REPLY_STATUS_FIELDS if data.get(k)})
    return json.dumps(summary, ensure_ascii=False)


async def send_telegram_message(client: httpx.AsyncClient, config: TelegramConfig, text: str) -> tuple[bool, dict]:
    url = f"{config.api_base.rstrip('/')}/bot{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text}
    try:
        resp = await client.post(url, json=payload, timeout=config.timeout_seconds)
        data = resp.json()
        if not isinstance(data, dict):
            return False, {"ok": False, "error": f"unexpected response (HTTP {resp.status_code})"}
        return bool(data.get("ok")), data
    except (httpx.HTTPError, ValueError) as e:
        msg = f"{type(e).__name__}: {e}"
        if config.bot_token:
            msg = msg.replace(config.bot_token, "<redacted>")
        return False, {"ok": False, "error": msg}


class TelegramChannel:
    """Telegram bot notifier. Long messages are split into chunks."""

    name = "telegram"

    def __init__(self, config: TelegramConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    async def send(self, title: str, message: str) -> None:
        text = f"{title}\n\n{message}".strip()
        if self._client is not None:
            await self._send_chunked(self._client, text)
            return
        async with httpx.AsyncClient() as client:
            await self._send_chunked(client, text)

    async def _send_chunked(self, client: httpx.AsyncClient, text: str) -> None:
        for part in split_telegram_message(text):
            ok, resp = await send_telegram_message(client, self.config, part)
            if not ok:
                raise ChannelDeliveryError(self.name, redact_telegram_response(resp))
            logger.debug("Telegram chunk sent", telegram=redact_telegram_response(resp))
