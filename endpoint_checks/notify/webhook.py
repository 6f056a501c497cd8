from __future__ import annotations

import asyncio
import base64
import json
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx
import structlog

from endpoint_checks.errors import ConfigurationError, WebhookError
from endpoint_checks.params import RFC3339_FORMAT, ResolveContext, resolve


logger = structlog.get_logger(__name__)

DEFAULT_SERVICE_NAME = "ponghub"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_DELAY_SECONDS = 0.5
MAX_ERROR_BODY_CHARS = 4000

AUTH_TYPES = {"bearer", "basic", "apikey"}
PRESET_FORMATS = {"slack", "discord", "teams", "mattermost"}
BASE_FIELDS = ("title", "message", "Title", "Message", "timestamp", "service")

# `{{.Name}}`, `{{ .Name }}` and `{{jsonEscape .Name}}`.
_TEMPLATE_VAR_RE = re.compile(r"\{\{\s*(jsonEscape\s+)?\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TEMPLATE_ACTION_RE = re.compile(r"\{\{.*?\}\}", re.S)


@dataclass(frozen=True)
class CustomPayloadSettings:
    template: str | None = None
    content_type: str | None = None
    # Extra named fields merged into the template data.
    fields: dict[str, str] = field(default_factory=dict)
    title_field: str | None = None
    message_field: str | None = None
    include_title: bool = True
    include_message: bool = True
    # Fields emitted when no template is given; None means every field.
    include: tuple[str, ...] | None = None


@dataclass(frozen=True)
class WebhookSettings:
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    auth_type: str | None = None
    auth_token: str | None = None
    auth_username: str | None = None
    auth_password: str | None = None
    auth_header: str | None = None
    format: str | None = None
    template: str | None = None
    content_type: str | None = None
    custom_payload: CustomPayloadSettings | None = None
    retries: int = 0
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    skip_tls_verify: bool = False
    service: str = DEFAULT_SERVICE_NAME


@dataclass(frozen=True)
class WebhookPayload:
    # Parsed JSON document, or the plain text for non-JSON bodies.
    document: Any
    body: bytes
    content_type: str


def _compact_json(doc: Any) -> bytes:
    return json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _json_escape(value: Any) -> str:
    return json.dumps(str(value), ensure_ascii=False)[1:-1]


def template_variables(template: str) -> list[str]:
    """Names referenced by `template`; raises ConfigurationError for unsupported actions."""
    names: list[str] = []
    for action in _TEMPLATE_ACTION_RE.finditer(template):
        m = _TEMPLATE_VAR_RE.fullmatch(action.group(0))
        if not m:
            raise ConfigurationError(f"unsupported webhook template action {action.group(0)!r}")
        if m.group(2) not in names:
            names.append(m.group(2))
    return names


def render_template(template: str, data: dict[str, Any], *, escape: bool) -> str:
    def _sub(m: re.Match[str]) -> str:
        value = data.get(m.group(2), "")
        if escape or m.group(1):
            return _json_escape(value)
        return str(value)

    return _TEMPLATE_VAR_RE.sub(_sub, template)


def _template_payload(template: str, data: dict[str, Any], content_type: str | None) -> WebhookPayload:
    # JSON-escaped rendering first: if it parses, send it verbatim.
    rendered = render_template(template, data, escape=True)
    try:
        doc = json.loads(rendered)
    except ValueError:
        doc = None
    if not isinstance(doc, (dict, list)):
        plain = render_template(template, data, escape=False)
        return WebhookPayload(document=plain, body=plain.encode("utf-8"), content_type=content_type or "text/plain")
    return WebhookPayload(document=doc, body=rendered.encode("utf-8"), content_type=content_type or "application/json")


class PayloadBuilder(Protocol):
    def build(self, data: dict[str, Any]) -> WebhookPayload: ...


class DefaultPayloadBuilder:
    def build(self, data: dict[str, Any]) -> WebhookPayload:
        doc = {
            "title": data["title"],
            "message": data["message"],
            "timestamp": data["timestamp"],
            "service": data["service"],
        }
        return WebhookPayload(document=doc, body=_compact_json(doc), content_type="application/json")


class TemplatePayloadBuilder:
    def __init__(self, template: str, *, content_type: str | None = None) -> None:
        unknown = [n for n in template_variables(template) if n not in BASE_FIELDS]
        if unknown:
            raise ConfigurationError(f"webhook template references unknown fields: {', '.join(unknown)}")
        self.template = template
        self.content_type = content_type

    def build(self, data: dict[str, Any]) -> WebhookPayload:
        payload = _template_payload(self.template, data, None)
        if isinstance(payload.document, str) and self.content_type:
            return WebhookPayload(document=payload.document, body=payload.body, content_type=self.content_type)
        return payload


class PresetPayloadBuilder:
    def __init__(self, fmt: str) -> None:
        name = (fmt or "").strip().lower()
        if name not in PRESET_FORMATS:
            raise ConfigurationError(f"unknown webhook format {fmt!r} (expected one of {sorted(PRESET_FORMATS)})")
        self.format = name

    def build(self, data: dict[str, Any]) -> WebhookPayload:
        doc = getattr(self, f"_{self.format}")(data)
        return WebhookPayload(document=doc, body=_compact_json(doc), content_type="application/json")

    @staticmethod
    def _slack(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "text": f"*{data['title']}*",
            "attachments": [
                {
                    "color": "danger",
                    "text": data["message"],
                    "ts": int(data["_now"].timestamp()),
                    "fields": [{"title": "Service", "value": data["service"], "short": True}],
                }
            ],
        }

    @staticmethod
    def _discord(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "embeds": [
                {
                    "title": data["title"],
                    "description": data["message"],
                    "color": 0xFF0000,
                    "timestamp": data["timestamp"],
                    "fields": [{"name": "Service", "value": data["service"], "inline": True}],
                }
            ]
        }

    @staticmethod
    def _teams(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": "FF0000",
            "summary": data["title"],
            "sections": [
                {
                    "activityTitle": data["title"],
                    "activityText": data["message"],
                    "facts": [
                        {"name": "Service", "value": data["service"]},
                        {"name": "Timestamp", "value": data["timestamp"]},
                    ],
                }
            ],
        }

    @staticmethod
    def _mattermost(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "text": (
                f"## {data['title']}\n\n{data['message']}\n\n"
                f"**Service:** {data['service']}\n**Time:** {data['timestamp']}"
            )
        }


class CustomPayloadBuilder:
    """
    Custom fields, field renames and an optional template.

    The set of fields a template may reference is declared up front (base
    fields, custom fields, renamed fields) and checked at construction, so a
    typo fails at load time instead of silently dropping data.
    """

    def __init__(self, settings: CustomPayloadSettings) -> None:
        self.settings = settings
        declared = list(BASE_FIELDS) + list(settings.fields)
        if settings.title_field and settings.include_title:
            declared.append(settings.title_field)
        if settings.message_field and settings.include_message:
            declared.append(settings.message_field)
        self.declared = tuple(dict.fromkeys(declared))

        if settings.template:
            referenced = template_variables(settings.template)
            unknown = [n for n in referenced if n not in self.declared]
            if unknown:
                raise ConfigurationError(
                    f"webhook custom template references undeclared fields: {', '.join(unknown)}"
                )
        if settings.include is not None:
            unknown = [n for n in settings.include if n not in self.declared]
            if unknown:
                raise ConfigurationError(f"webhook custom payload includes undeclared fields: {', '.join(unknown)}")

    def _enhanced(self, data: dict[str, Any]) -> dict[str, Any]:
        s = self.settings
        enhanced = {k: data[k] for k in BASE_FIELDS}
        enhanced.update(s.fields)
        if s.title_field and s.include_title:
            enhanced[s.title_field] = data["title"]
        if s.message_field and s.include_message:
            enhanced[s.message_field] = data["message"]
        return enhanced

    def build(self, data: dict[str, Any]) -> WebhookPayload:
        enhanced = self._enhanced(data)
        if self.settings.template:
            return _template_payload(self.settings.template, enhanced, self.settings.content_type)

        if self.settings.include is not None:
            doc = {name: enhanced[name] for name in self.settings.include}
        else:
            doc = enhanced
        return WebhookPayload(
            document=doc,
            body=_compact_json(doc),
            content_type=self.settings.content_type or "application/json",
        )


def select_payload_builder(settings: WebhookSettings) -> PayloadBuilder:
    if settings.custom_payload is not None:
        return CustomPayloadBuilder(settings.custom_payload)
    if settings.template:
        return TemplatePayloadBuilder(settings.template, content_type=settings.content_type)
    if settings.format:
        return PresetPayloadBuilder(settings.format)
    return DefaultPayloadBuilder()


def auth_headers(settings: WebhookSettings) -> dict[str, str]:
    auth_type = (settings.auth_type or "").strip().lower()
    if not auth_type:
        return {}
    if auth_type not in AUTH_TYPES:
        raise ConfigurationError(f"unknown webhook auth_type {settings.auth_type!r}")
    if auth_type == "bearer":
        if not settings.auth_token:
            raise ConfigurationError("webhook auth_type=bearer requires auth_token")
        return {"Authorization": f"Bearer {settings.auth_token}"}
    if auth_type == "basic":
        if not settings.auth_username or not settings.auth_password:
            raise ConfigurationError("webhook auth_type=basic requires auth_username and auth_password")
        raw = f"{settings.auth_username}:{settings.auth_password}".encode("utf-8")
        return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
    if not settings.auth_token:
        raise ConfigurationError("webhook auth_type=apikey requires auth_token")
    return {(settings.auth_header or "X-API-Key"): settings.auth_token}


def _resolve_secret(value: str | None, ctx: ResolveContext) -> str | None:
    if value is None:
        return None
    return resolve(value, ctx)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookChannel:
    """Generic webhook notifier."""

    name = "webhook"

    def __init__(
        self,
        settings: WebhookSettings,
        *,
        client: httpx.AsyncClient | None = None,
        env_lookup: Callable[[str], str | None] = os.getenv,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        # Secrets may be given as {{env(NAME)}} placeholders.
        ctx = ResolveContext(env_lookup=env_lookup)
        settings = replace(
            settings,
            url=_resolve_secret(settings.url, ctx) or "",
            auth_token=_resolve_secret(settings.auth_token, ctx),
            auth_username=_resolve_secret(settings.auth_username, ctx),
            auth_password=_resolve_secret(settings.auth_password, ctx),
        )
        self.settings = settings
        self._builder = select_payload_builder(settings)
        self._auth = auth_headers(settings)
        self._client = client
        self._env_lookup = env_lookup
        self._clock = clock
        self._sleep = sleep

    def _url(self) -> str:
        return self.settings.url or (self._env_lookup("WEBHOOK_URL") or "")

    def _data(self, title: str, message: str) -> dict[str, Any]:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return {
            "title": title,
            "message": message,
            "Title": title,
            "Message": message,
            "timestamp": now.astimezone(timezone.utc).strftime(RFC3339_FORMAT),
            "service": self.settings.service,
            "_now": now,
        }

    def build_payload(self, title: str, message: str) -> WebhookPayload:
        return self._builder.build(self._data(title, message))

    def build_headers(self, payload: WebhookPayload) -> dict[str, str]:
        headers = dict(self.settings.headers)
        headers.update(self._auth)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = payload.content_type
        return headers

    async def send(self, title: str, message: str) -> None:
        url = self._url()
        if not url:
            raise WebhookError("webhook URL not configured")

        payload = self.build_payload(title, message)
        headers = self.build_headers(payload)
        method = (self.settings.method or "POST").upper()

        if self._client is not None:
            await self._send_with_retry(self._client, method, url, headers, payload)
            return
        async with httpx.AsyncClient(verify=not self.settings.skip_tls_verify) as client:
            await self._send_with_retry(client, method, url, headers, payload)

    async def _send_with_retry(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: WebhookPayload,
    ) -> None:
        attempts = 1 + max(0, int(self.settings.retries))
        last: WebhookError | None = None
        for attempt in range(attempts):
            if attempt > 0:
                await self._sleep(max(0.0, float(self.settings.retry_delay_seconds)) * attempt)
            try:
                resp = await client.request(
                    method,
                    url,
                    content=payload.body,
                    headers=headers,
                    timeout=float(self.settings.timeout_seconds),
                )
            except httpx.HTTPError as exc:
                last = WebhookError(
                    f"request failed: {type(exc).__name__}: {exc}",
                    retryable=isinstance(exc, httpx.TransportError),
                )
                logger.warning("Webhook attempt failed", attempt=attempt + 1, attempts=attempts, error=str(last))
                continue

            if 200 <= resp.status_code < 300:
                logger.info("Webhook delivered", status_code=resp.status_code, attempt=attempt + 1)
                return

            body = resp.text
            retryable = resp.status_code >= 500 or resp.status_code in (408, 429)
            last = WebhookError(
                f"HTTP {resp.status_code}: {body[:MAX_ERROR_BODY_CHARS]}",
                status_code=resp.status_code,
                body=body,
                retryable=retryable,
            )
            logger.warning(
                "Webhook attempt rejected",
                attempt=attempt + 1,
                attempts=attempts,
                status_code=resp.status_code,
                retryable=retryable,
            )

        if last is None:
            raise WebhookError("no delivery attempt was made")
        raise last
