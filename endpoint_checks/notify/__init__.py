from endpoint_checks.notify.base import Channel
from endpoint_checks.notify.ci import CIFailureChannel
from endpoint_checks.notify.dispatcher import Dispatcher, DispatchOutcome, render_alert
from endpoint_checks.notify.email import EmailChannel, EmailSettings
from endpoint_checks.notify.telegram import TelegramChannel, TelegramConfig
from endpoint_checks.notify.webhook import CustomPayloadSettings, WebhookChannel, WebhookSettings

__all__ = [
    "Channel",
    "CIFailureChannel",
    "CustomPayloadSettings",
    "Dispatcher",
    "DispatchOutcome",
    "EmailChannel",
    "EmailSettings",
    "TelegramChannel",
    "TelegramConfig",
    "WebhookChannel",
    "WebhookSettings",
    "render_alert",
]
