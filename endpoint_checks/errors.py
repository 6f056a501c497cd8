from __future__ import annotations


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class TransportError(MonitorError):
    """Connect, DNS or timeout failure. Retryable."""


class ProtocolError(MonitorError):
    """Non-retryable response class (4xx) or a broken TLS chain."""


class ConfigurationError(MonitorError):
    """Malformed configuration. Fatal at load time."""


class UnresolvedPlaceholder(ConfigurationError):
    def __init__(self, name: str, template: str | None = None) -> None:
        self.name = name
        self.template = template
        msg = f"environment value {name!r} is not set and no default was given"
        if template:
            msg += f" (template={template!r})"
        super().__init__(msg)


class ChannelDeliveryError(MonitorError):
    """A notification channel failed to deliver. Logged, never fatal."""

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class WebhookError(ChannelDeliveryError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        retryable: bool = False,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.retryable = retryable
        super().__init__("webhook", message)
