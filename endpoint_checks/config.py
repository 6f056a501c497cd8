"""Configuration loading: YAML file -> validated models -> immutable specs and channels."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from endpoint_checks.errors import ConfigurationError
from endpoint_checks.models import EndpointSpec, ServiceSpec
from endpoint_checks.notify.base import Channel
from endpoint_checks.notify.ci import CIFailureChannel
from endpoint_checks.notify.email import EmailChannel, EmailSettings
from endpoint_checks.notify.telegram import TelegramChannel
from endpoint_checks.notify.telegram import TelegramConfig as TelegramSettings
from endpoint_checks.notify.webhook import CustomPayloadSettings, WebhookChannel, WebhookSettings
from endpoint_checks.params import ResolveContext, find_unresolvable, resolve
from endpoint_checks.probe import build_request
from endpoint_checks.status import DebouncePolicy


DEFAULT_CONFIG_PATH = "config.yaml"
NOTIFICATION_METHODS = {"webhook", "email", "telegram", "ci"}


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CustomPayloadConfig(_Model):
    template: Optional[str] = Field(default=None, description="Payload template ({{.Field}} syntax)")
    content_type: Optional[str] = Field(default=None, description="Content-Type override")
    fields: dict[str, str] = Field(default_factory=dict, description="Extra fields merged into the payload data")
    title_field: Optional[str] = Field(default=None, description="Also expose the title under this name")
    message_field: Optional[str] = Field(default=None, description="Also expose the message under this name")
    include_title: bool = Field(default=True, description="Emit title_field")
    include_message: bool = Field(default=True, description="Emit message_field")
    include: Optional[list[str]] = Field(default=None, description="Fields emitted when no template is given")


class WebhookConfig(_Model):
    url: str = Field(default="", description="Target URL; falls back to WEBHOOK_URL")
    method: str = Field(default="POST", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    auth_type: Optional[str] = Field(default=None, description="bearer | basic | apikey")
    auth_token: Optional[str] = Field(default=None, description="Bearer token or API key")
    auth_username: Optional[str] = Field(default=None, description="Basic auth user")
    auth_password: Optional[str] = Field(default=None, description="Basic auth password")
    auth_header: Optional[str] = Field(default=None, description="API key header name (default X-API-Key)")
    format: Optional[str] = Field(default=None, description="slack | discord | teams | mattermost")
    template: Optional[str] = Field(default=None, description="Raw payload template")
    content_type: Optional[str] = Field(default=None, description="Content-Type for non-JSON templates")
    custom_payload: Optional[CustomPayloadConfig] = Field(default=None, description="Custom payload settings")
    retries: int = Field(default=0, ge=0, description="Retries after the first attempt")
    retry_delay_seconds: float = Field(default=0.5, ge=0, description="Delay multiplier between retries")
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    skip_tls_verify: bool = Field(default=False, description="Disable TLS verification")


class EmailConfig(_Model):
    smtp_host: str = Field(description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    username: Optional[str] = Field(default=None, description="SMTP user")
    password: Optional[str] = Field(default=None, description="SMTP password")
    sender: str = Field(default="", description="From address")
    to: list[str] = Field(default_factory=list, description="Recipients")
    security: str = Field(default="starttls", description="starttls | ssl | none")
    subject_prefix: str = Field(default="", description="Prefix for every subject")


class TelegramConfig(_Model):
    bot_token: str = Field(default="{{env(TELEGRAM_BOT_TOKEN)}}", description="Bot token")
    chat_id: str = Field(default="{{env(TELEGRAM_CHAT_ID)}}", description="Target chat")


class NotificationsConfig(_Model):
    enabled: bool = Field(default=True, description="Master switch for alert delivery")
    methods: list[str] = Field(default_factory=list, description="Enabled channels")
    webhook: Optional[WebhookConfig] = None
    email: Optional[EmailConfig] = None
    telegram: Optional[TelegramConfig] = None

    @field_validator("methods")
    @classmethod
    def _known_methods(cls, value: list[str]) -> list[str]:
        out = [str(m).strip().lower() for m in value]
        unknown = [m for m in out if m not in NOTIFICATION_METHODS]
        if unknown:
            raise ValueError(f"unknown notification methods: {', '.join(unknown)}")
        return out


class AlertingConfig(_Model):
    down_after_failures: int = Field(default=3, ge=1, description="Matching failures before DOWN/DEGRADED")
    up_after_successes: int = Field(default=1, ge=1, description="Successes before UP")
    alert_on_first_failure: bool = Field(default=True, description="Alert when a new endpoint starts broken")


class EndpointConfig(_Model):
    url: str = Field(description="URL template")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="Port override")
    method: str = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers (templates allowed)")
    body: Optional[str] = Field(default=None, description="Request body template")
    status_code: Optional[Union[int, list[int]]] = Field(default=None, description="Expected status code(s)")
    response_regex: Optional[str] = Field(default=None, description="Pattern the body must match")
    timeout: Optional[float] = Field(default=None, gt=0, description="Probe deadline in seconds")
    max_retry_times: Optional[int] = Field(default=None, ge=0, description="Retries after the first attempt")
    ssl_check: bool = Field(default=True, description="Check certificate expiry on https")
    cert_notify_days: Optional[float] = Field(default=None, ge=0, description="Certificate warning threshold")
    follow_redirects: bool = Field(default=True, description="Follow redirects")


class ServiceConfig(_Model):
    name: str = Field(min_length=1, description="Service name")
    endpoints: list[EndpointConfig] = Field(min_length=1, description="Endpoints of the service")
    timeout: Optional[float] = Field(default=None, gt=0, description="Service-wide timeout override")
    max_retry_times: Optional[int] = Field(default=None, ge=0, description="Service-wide retry override")


class MonitorConfig(_Model):
    """Top-level configuration."""

    timeout: float = Field(default=5.0, gt=0, description="Default probe deadline in seconds")
    max_retry_times: int = Field(default=2, ge=0, description="Default retries per probe")
    max_log_days: float = Field(default=3.0, gt=0, description="History retention in days")
    cert_notify_days: float = Field(default=7.0, ge=0, description="Default certificate warning threshold")
    display_num: int = Field(default=72, ge=1, description="Recent statuses shown per endpoint in reports")
    history_max_entries: int = Field(default=2000, ge=1, description="History cap per endpoint")
    concurrency: int = Field(default=10, ge=1, description="Simultaneous probes")
    interval_seconds: float = Field(default=300.0, gt=0, description="Delay between cycles in loop mode")
    cycle_deadline_seconds: Optional[float] = Field(default=None, gt=0, description="Global deadline per cycle")
    backoff_base_seconds: float = Field(default=0.5, ge=0, description="Retry backoff base")
    backoff_cap_seconds: float = Field(default=8.0, ge=0, description="Retry backoff cap")
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    services: list[ServiceConfig] = Field(min_length=1, description="Monitored services")


def default_config_path() -> Path:
    return Path(os.getenv("PONGHUB_CONFIG") or DEFAULT_CONFIG_PATH)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_config(data: Any, *, env_lookup: Callable[[str], str | None] = os.getenv) -> MonitorConfig:
    if not isinstance(data, dict):
        raise ConfigurationError("Config YAML must be a mapping")
    try:
        config = MonitorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {_format_validation_error(exc)}") from exc
    _check_services(config, env_lookup=env_lookup)
    return config


def load_config(path: Path | str, *, env_lookup: Callable[[str], str | None] = os.getenv) -> MonitorConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"config file is not valid YAML: {exc}") from exc
    return parse_config(data, env_lookup=env_lookup)


def _expected_status(raw: int | list[int] | None) -> tuple[int, ...]:
    if raw is None:
        return ()
    if isinstance(raw, int):
        return (raw,)
    return tuple(int(c) for c in raw)


def _endpoint_spec(config: MonitorConfig, svc: ServiceConfig, ep: EndpointConfig) -> EndpointSpec:
    timeout = ep.timeout or svc.timeout or config.timeout
    if ep.max_retry_times is not None:
        retries = ep.max_retry_times
    elif svc.max_retry_times is not None:
        retries = svc.max_retry_times
    else:
        retries = config.max_retry_times
    return EndpointSpec(
        service=svc.name,
        url=ep.url,
        port=ep.port,
        method=ep.method.upper(),
        headers=dict(ep.headers),
        body=ep.body,
        expected_status=_expected_status(ep.status_code),
        body_pattern=ep.response_regex,
        timeout_seconds=float(timeout),
        retries=int(retries),
        ssl_check=ep.ssl_check,
        cert_warning_days=float(ep.cert_notify_days if ep.cert_notify_days is not None else config.cert_notify_days),
        follow_redirects=ep.follow_redirects,
    )


def build_services(config: MonitorConfig) -> tuple[ServiceSpec, ...]:
    return tuple(
        ServiceSpec(name=svc.name, endpoints=tuple(_endpoint_spec(config, svc, ep) for ep in svc.endpoints))
        for svc in config.services
    )


def _check_services(config: MonitorConfig, *, env_lookup: Callable[[str], str | None]) -> None:
    seen_services: set[str] = set()
    for service in build_services(config):
        if service.name in seen_services:
            raise ConfigurationError(f"Duplicate service name: {service.name}")
        seen_services.add(service.name)

        seen_keys: set[str] = set()
        for spec in service.endpoints:
            if spec.key in seen_keys:
                raise ConfigurationError(f"Duplicate endpoint in service {service.name!r}: {spec.url}")
            seen_keys.add(spec.key)

            templates = [spec.url, *spec.headers.keys(), *spec.headers.values()]
            if spec.body is not None:
                templates.append(spec.body)
            for template in templates:
                missing = find_unresolvable(template, env_lookup)
                if missing:
                    raise ConfigurationError(
                        f"{spec.key}: environment values not set: {', '.join(missing)}"
                    )
            # Raises ConfigurationError for a URL that does not resolve to http(s).
            build_request(spec, ResolveContext(env_lookup=env_lookup))

            if spec.body_pattern:
                try:
                    re.compile(spec.body_pattern)
                except re.error as exc:
                    raise ConfigurationError(f"{spec.key}: invalid response_regex: {exc}") from exc


def debounce_policy(config: MonitorConfig) -> DebouncePolicy:
    a = config.alerting
    return DebouncePolicy(
        down_after=a.down_after_failures,
        up_after=a.up_after_successes,
        alert_on_first_failure=a.alert_on_first_failure,
    )


def history_retention(config: MonitorConfig) -> timedelta:
    return timedelta(days=float(config.max_log_days))


def _webhook_settings(cfg: WebhookConfig) -> WebhookSettings:
    custom = None
    if cfg.custom_payload is not None:
        cp = cfg.custom_payload
        custom = CustomPayloadSettings(
            template=cp.template,
            content_type=cp.content_type,
            fields=dict(cp.fields),
            title_field=cp.title_field,
            message_field=cp.message_field,
            include_title=cp.include_title,
            include_message=cp.include_message,
            include=tuple(cp.include) if cp.include is not None else None,
        )
    return WebhookSettings(
        url=cfg.url,
        method=cfg.method,
        headers=dict(cfg.headers),
        auth_type=cfg.auth_type,
        auth_token=cfg.auth_token,
        auth_username=cfg.auth_username,
        auth_password=cfg.auth_password,
        auth_header=cfg.auth_header,
        format=cfg.format,
        template=cfg.template,
        content_type=cfg.content_type,
        custom_payload=custom,
        retries=cfg.retries,
        retry_delay_seconds=cfg.retry_delay_seconds,
        timeout_seconds=cfg.timeout,
        skip_tls_verify=cfg.skip_tls_verify,
    )


def build_channels(
    config: MonitorConfig,
    *,
    client: httpx.AsyncClient | None = None,
    env_lookup: Callable[[str], str | None] = os.getenv,
) -> list[Channel]:
    """Instantiate every enabled channel. Raises ConfigurationError for incomplete channel settings."""
    notifications = config.notifications
    if not notifications.enabled:
        return []

    ctx = ResolveContext(env_lookup=env_lookup)
    channels: list[Channel] = []
    for method in dict.fromkeys(notifications.methods):
        if method == "webhook":
            webhook_cfg = notifications.webhook or WebhookConfig()
            # The shared client verifies TLS, so an unverified webhook opens its own per send.
            webhook_client = None if webhook_cfg.skip_tls_verify else client
            channels.append(
                WebhookChannel(_webhook_settings(webhook_cfg), client=webhook_client, env_lookup=env_lookup)
            )
        elif method == "email":
            if notifications.email is None:
                raise ConfigurationError("notifications.methods includes email but notifications.email is missing")
            e = notifications.email
            channels.append(
                EmailChannel(
                    EmailSettings(
                        smtp_host=resolve(e.smtp_host, ctx),
                        smtp_port=e.smtp_port,
                        username=resolve(e.username, ctx) if e.username else None,
                        password=resolve(e.password, ctx) if e.password else None,
                        sender=resolve(e.sender, ctx),
                        recipients=tuple(e.to),
                        security=e.security,
                        subject_prefix=e.subject_prefix,
                    )
                )
            )
        elif method == "telegram":
            t = notifications.telegram or TelegramConfig()
            bot_token = resolve(t.bot_token, ctx)
            chat_id = resolve(t.chat_id, ctx)
            channels.append(TelegramChannel(TelegramSettings(bot_token=bot_token, chat_id=chat_id), client=client))
        elif method == "ci":
            channels.append(CIFailureChannel())
    return channels
