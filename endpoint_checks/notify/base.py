from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Channel(Protocol):
    """
    A notification transport.

    `send` returns normally on delivery and raises ChannelDeliveryError
    otherwise. A single send must not depend on state left by an earlier
    one, so one instance can serve concurrent sends. Run-level bookkeeping
    that only ever accumulates (CIFailureChannel.fired) is allowed.
    """

    name: str

    async def send(self, title: str, message: str) -> None: ...
