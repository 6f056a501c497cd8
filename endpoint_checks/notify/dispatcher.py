from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

import structlog

from endpoint_checks.errors import ChannelDeliveryError
from endpoint_checks.models import AlertEvent, ProbeResult, Status
from endpoint_checks.notify.base import Channel


logger = structlog.get_logger(__name__)

_STATUS_MARK = {
    Status.UP: "UP ✅",
    Status.DOWN: "DOWN ❌",
    Status.DEGRADED: "DEGRADED ⚠️",
    Status.UNKNOWN: "UNKNOWN",
}


def _format_ms(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{int(round(float(value)))}ms"
    except (TypeError, ValueError):
        return "n/a"


def render_alert(event: AlertEvent, *, result: ProbeResult | None = None) -> AlertEvent:
    """Fill in the event's title and message."""
    endpoint = event.endpoint_key.split("/", 1)[-1]
    title = f"{event.service}: {endpoint} is {_STATUS_MARK[event.current]}"

    lines = [
        f"Service: {event.service}",
        f"Endpoint: {endpoint}",
        f"Status: {event.previous.value.upper()} -> {event.current.value.upper()}",
    ]
    if event.reason and event.current is not Status.UP:
        lines.append(f"Reason: {event.reason}")
    if result is not None:
        if result.status_code is not None:
            lines.append(f"HTTP: {result.status_code} ({_format_ms(result.latency_ms)})")
        if result.attempts > 1:
            lines.append(f"Attempts: {result.attempts}")
        if result.cert_expires_at is not None:
            lines.append(f"Certificate expires: {result.cert_expires_at.strftime('%Y-%m-%d')}")
    lines.append(f"Time: {event.at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}")

    return replace(event, title=title, message="\n".join(lines).strip())


@dataclass(frozen=True)
class DispatchOutcome:
    event: AlertEvent
    delivered: tuple[str, ...] = ()
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class Dispatcher:
    """
    Best-effort fan-out of alert events to every configured channel.

    A failing channel is logged and recorded in the outcome; it never stops
    delivery on the other channels and never raises.
    """

    def __init__(self, channels: Sequence[Channel] = ()) -> None:
        self.channels = tuple(channels)

    async def _send_one(self, channel: Channel, title: str, message: str) -> None:
        try:
            await channel.send(title, message)
        except ChannelDeliveryError:
            raise
        except Exception as exc:
            raise ChannelDeliveryError(channel.name, f"{type(exc).__name__}: {exc}") from exc

    async def dispatch(self, event: AlertEvent) -> DispatchOutcome:
        if not event.title:
            event = render_alert(event)
        if not self.channels:
            return DispatchOutcome(event=event)

        results = await asyncio.gather(
            *(self._send_one(ch, event.title, event.message) for ch in self.channels),
            return_exceptions=True,
        )

        delivered: list[str] = []
        failed: dict[str, str] = {}
        for channel, res in zip(self.channels, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                failed[channel.name] = str(res)
                logger.warning(
                    "Alert delivery failed",
                    channel=channel.name,
                    endpoint=event.endpoint_key,
                    error=str(res),
                )
            else:
                delivered.append(channel.name)

        logger.info(
            "Alert dispatched",
            endpoint=event.endpoint_key,
            transition=f"{event.previous.value}->{event.current.value}",
            delivered=delivered,
            failed=sorted(failed),
        )
        return DispatchOutcome(event=event, delivered=tuple(delivered), failed=failed)

    async def dispatch_all(self, events: Iterable[AlertEvent]) -> list[DispatchOutcome]:
        return [await self.dispatch(event) for event in events]
