from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import structlog

from endpoint_checks.errors import ChannelDeliveryError, ConfigurationError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailSettings:
    smtp_host: str
    smtp_port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str = ""
    recipients: tuple[str, ...] = field(default_factory=tuple)
    # "starttls" | "ssl" | "none"
    security: str = "starttls"
    timeout_seconds: float = 20.0
    subject_prefix: str = ""


class EmailChannel:
    """SMTP notifier. The blocking smtplib session runs in a worker thread."""

    name = "email"

    def __init__(self, settings: EmailSettings) -> None:
        if not settings.smtp_host:
            raise ConfigurationError("email channel requires smtp_host")
        if not settings.recipients:
            raise ConfigurationError("email channel requires at least one recipient")
        if settings.security not in {"starttls", "ssl", "none"}:
            raise ConfigurationError(f"unknown email security mode {settings.security!r}")
        self.settings = settings

    def build_message(self, title: str, message: str) -> EmailMessage:
        s = self.settings
        msg = EmailMessage()
        msg["Subject"] = f"{s.subject_prefix}{title}"
        msg["From"] = s.sender or (s.username or "")
        msg["To"] = ", ".join(s.recipients)
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid()
        msg.set_content(message)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        s = self.settings
        if s.security == "ssl":
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(
                s.smtp_host, s.smtp_port, timeout=s.timeout_seconds, context=ssl.create_default_context()
            )
        else:
            smtp = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.timeout_seconds)
        with smtp:
            if s.security == "starttls":
                smtp.starttls(context=ssl.create_default_context())
            if s.username and s.password:
                smtp.login(s.username, s.password)
            smtp.send_message(msg, to_addrs=list(s.recipients))

    async def send(self, title: str, message: str) -> None:
        msg = self.build_message(title, message)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(self.name, f"{type(exc).__name__}: {exc}") from exc
        logger.info("Email alert sent", recipients=len(self.settings.recipients))
