from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone

import pytest

from endpoint_checks.errors import ChannelDeliveryError, ConfigurationError
from endpoint_checks.notify import EmailChannel, EmailSettings
from endpoint_checks.tls import is_tls_failure, parse_cert_not_after, tls_host_port_from_url


def test_tls_host_port_from_url() -> None:
    assert tls_host_port_from_url("https://example.com/health") == ("example.com", 443)
    assert tls_host_port_from_url("https://example.com:8443/") == ("example.com", 8443)
    assert tls_host_port_from_url("http://example.com/") is None
    assert tls_host_port_from_url("https://example.com:notaport/") is None


def test_parse_cert_not_after() -> None:
    assert parse_cert_not_after({"notAfter": "Feb  6 12:00:00 2026 GMT"}) == datetime(
        2026, 2, 6, 12, 0, tzinfo=timezone.utc
    )
    assert parse_cert_not_after({"notAfter": "garbage"}) is None
    assert parse_cert_not_after({}) is None


def test_is_tls_failure_walks_the_cause_chain() -> None:
    try:
        try:
            raise ssl.SSLCertVerificationError("certificate verify failed")
        except ssl.SSLError as inner:
            raise ConnectionError("connect failed") from inner
    except ConnectionError as exc:
        assert is_tls_failure(exc) is True
    assert is_tls_failure(ConnectionRefusedError("refused")) is False


class _FakeSMTP:
    instances: list[_FakeSMTP] = []
    fail_with: Exception | None = None

    def __init__(self, host: str, port: int, timeout: float = 0) -> None:
        self.host = host
        self.port = port
        self.calls: list[str] = []
        self.sent = []
        _FakeSMTP.instances.append(self)

    def __enter__(self) -> _FakeSMTP:
        return self

    def __exit__(self, *exc) -> None:
        self.calls.append("quit")

    def starttls(self, context=None) -> None:
        self.calls.append("starttls")

    def login(self, user: str, password: str) -> None:
        self.calls.append(f"login:{user}")

    def send_message(self, msg, to_addrs=None) -> None:
        if _FakeSMTP.fail_with is not None:
            raise _FakeSMTP.fail_with
        self.sent.append((msg, to_addrs))


@pytest.fixture()
def fake_smtp(monkeypatch: pytest.MonkeyPatch) -> type[_FakeSMTP]:
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP


def _settings(**kwargs) -> EmailSettings:
    kwargs.setdefault("smtp_host", "smtp.example.com")
    kwargs.setdefault("recipients", ("ops@example.com",))
    return EmailSettings(username="monitor", password="pw", sender="monitor@example.com", **kwargs)


@pytest.mark.asyncio
async def test_email_channel_sends_via_starttls(fake_smtp: type[_FakeSMTP]) -> None:
    channel = EmailChannel(_settings(subject_prefix="[uptime] "))
    await channel.send("api is DOWN", "Reason: timeout")

    (smtp,) = fake_smtp.instances
    assert smtp.calls == ["starttls", "login:monitor", "quit"]
    msg, to_addrs = smtp.sent[0]
    assert msg["Subject"] == "[uptime] api is DOWN"
    assert msg["From"] == "monitor@example.com"
    assert to_addrs == ["ops@example.com"]
    assert msg.get_content().strip() == "Reason: timeout"


@pytest.mark.asyncio
async def test_email_failure_is_a_channel_error(fake_smtp: type[_FakeSMTP]) -> None:
    fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"ops@example.com": (550, b"no such user")})
    with pytest.raises(ChannelDeliveryError) as excinfo:
        await EmailChannel(_settings()).send("t", "m")
    assert excinfo.value.channel == "email"


def test_email_settings_are_validated() -> None:
    with pytest.raises(ConfigurationError):
        EmailChannel(_settings(recipients=()))
    with pytest.raises(ConfigurationError):
        EmailChannel(_settings(security="tls13"))
