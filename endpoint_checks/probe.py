from __future__ import annotations

import asyncio
import enum
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from endpoint_checks.errors import ConfigurationError, MonitorError, ProtocolError
from endpoint_checks.models import MAX_BODY_BYTES, EndpointSpec, ProbeResult
from endpoint_checks.params import ResolveContext, resolve
from endpoint_checks.tls import (
    cert_expiry_from_response,
    fetch_certificate_expiry,
    is_tls_failure,
    tls_host_port_from_url,
)


logger = structlog.get_logger(__name__)

DEFAULT_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_BACKOFF_CAP_SECONDS = 8.0


class AttemptState(str, enum.Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRY_WAIT = "retry_wait"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeRequest:
    method: str
    url: str
    headers: dict[str, str]
    content: str | None
    want_cert: bool


@dataclass(frozen=True)
class AttemptOutcome:
    status_code: int | None = None
    body: str = ""
    latency_ms: float | None = None
    cert_expires_at: datetime | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_port(url: str, port: int | None) -> str:
    if port is None:
        return url
    parts = urlsplit(url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    userinfo = ""
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        userinfo += "@"
    return urlunsplit((parts.scheme, f"{userinfo}{host}:{int(port)}", parts.path, parts.query, parts.fragment))


def _check_url(url: str) -> None:
    try:
        parts = urlsplit(url)
        _ = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"invalid url {url!r}: {exc}") from exc
    if (parts.scheme or "").lower() not in {"http", "https"}:
        raise ConfigurationError(f"invalid url {url!r}: scheme must be http or https")
    if not parts.hostname:
        raise ConfigurationError(f"invalid url {url!r}: missing host")


def build_request(spec: EndpointSpec, ctx: ResolveContext) -> ProbeRequest:
    """Resolve the endpoint's templates into one concrete request."""
    url = _apply_port(resolve(spec.url, ctx), spec.port)
    _check_url(url)
    headers = {resolve(k, ctx): resolve(v, ctx) for k, v in spec.headers.items()}
    content = resolve(spec.body, ctx) if spec.body is not None else None
    want_cert = bool(spec.ssl_check) and tls_host_port_from_url(url) is not None
    return ProbeRequest(
        method=spec.method.upper(),
        url=url,
        headers=headers,
        content=content,
        want_cert=want_cert,
    )


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    return min(float(cap), float(base) * (2 ** max(0, int(attempt))))


async def _read_bounded(resp: httpx.Response, limit: int = MAX_BODY_BYTES) -> str:
    chunks: list[bytes] = []
    size = 0
    async for chunk in resp.aiter_bytes():
        chunks.append(chunk)
        size += len(chunk)
        if size >= limit:
            break
    raw = b"".join(chunks)[:limit]
    # `encoding` falls back to utf-8 when the declared charset is not a known codec.
    return raw.decode(resp.encoding or "utf-8", errors="replace")


class Prober:
    """
    Runs one probe per endpoint: resolve, request, retry with backoff.

    The endpoint timeout is a hard deadline covering every attempt and every
    backoff wait. Instances hold no per-probe state, so many probes may run on
    one Prober concurrently.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        wall_clock: Callable[[], datetime] = _utcnow,
        env_lookup: Callable[[str], str | None] = os.getenv,
    ) -> None:
        self._client = client
        self._backoff_base = float(backoff_base)
        self._backoff_cap = float(backoff_cap)
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock
        self._env_lookup = env_lookup

    async def probe(self, spec: EndpointSpec) -> ProbeResult:
        started_at = self._wall_clock()
        deadline = self._clock() + max(0.0, float(spec.timeout_seconds))

        ctx = ResolveContext(env_lookup=self._env_lookup, clock=self._wall_clock)
        try:
            request = build_request(spec, ctx)
        except ConfigurationError as exc:
            logger.warning("Endpoint request could not be built", endpoint=spec.key, error=str(exc))
            return ProbeResult(
                endpoint_key=spec.key,
                url=spec.url,
                started_at=started_at,
                error=f"configuration_error: {exc}",
                error_kind="configuration",
            )
        for warning in ctx.warnings:
            logger.warning("Placeholder left unresolved", endpoint=spec.key, warning=warning)

        max_attempts = 1 + max(0, int(spec.retries))
        attempts = 0
        outcome = AttemptOutcome(error="probe deadline exceeded before first attempt", error_kind="timeout")
        state = AttemptState.IDLE

        while state not in (AttemptState.SUCCESS, AttemptState.FAILED):
            if state in (AttemptState.IDLE, AttemptState.ATTEMPTING):
                remaining = deadline - self._clock()
                if remaining <= 0:
                    state = AttemptState.FAILED
                    continue
                attempts += 1
                outcome = await self._attempt(request, remaining, spec)
                if not outcome.retryable:
                    state = AttemptState.FAILED if outcome.error_kind else AttemptState.SUCCESS
                elif attempts >= max_attempts:
                    state = AttemptState.FAILED
                else:
                    state = AttemptState.RETRY_WAIT

            elif state is AttemptState.RETRY_WAIT:
                delay = backoff_delay(attempts - 1, base=self._backoff_base, cap=self._backoff_cap)
                remaining = deadline - self._clock()
                if delay >= remaining:
                    logger.info(
                        "Retry skipped, probe budget exhausted",
                        endpoint=spec.key,
                        attempts=attempts,
                        delay_seconds=round(delay, 3),
                        remaining_seconds=round(max(0.0, remaining), 3),
                    )
                    state = AttemptState.FAILED
                    continue
                logger.debug(
                    "Retrying probe",
                    endpoint=spec.key,
                    attempt=attempts,
                    status_code=outcome.status_code,
                    error=outcome.error,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)
                state = AttemptState.ATTEMPTING

        return ProbeResult(
            endpoint_key=spec.key,
            url=request.url,
            started_at=started_at,
            latency_ms=outcome.latency_ms,
            status_code=outcome.status_code,
            body=outcome.body,
            cert_expires_at=outcome.cert_expires_at,
            error=outcome.error,
            error_kind=outcome.error_kind,
            attempts=attempts,
        )

    async def _attempt(self, request: ProbeRequest, budget: float, spec: EndpointSpec) -> AttemptOutcome:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self._send(request, budget, spec=spec, started=started),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            return AttemptOutcome(
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=f"timeout: no response within {budget:.2f}s",
                error_kind="timeout",
                retryable=True,
            )
        except httpx.TimeoutException as exc:
            return AttemptOutcome(
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=f"timeout: {type(exc).__name__}: {exc}",
                error_kind="timeout",
                retryable=True,
            )
        except httpx.TransportError as exc:
            elapsed = round((time.perf_counter() - started) * 1000.0, 3)
            if is_tls_failure(exc):
                return AttemptOutcome(
                    latency_ms=elapsed,
                    error=f"tls_error: {type(exc).__name__}: {exc}",
                    error_kind="protocol",
                )
            return AttemptOutcome(
                latency_ms=elapsed,
                error=f"transport_error: {type(exc).__name__}: {exc}",
                error_kind="transport",
                retryable=True,
            )
        except ProtocolError as exc:
            return AttemptOutcome(
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=str(exc),
                error_kind="protocol",
            )
        except MonitorError as exc:
            # TransportError from the fallback certificate handshake.
            return AttemptOutcome(
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=str(exc),
                error_kind="transport",
                retryable=True,
            )
        except httpx.HTTPError as exc:
            return AttemptOutcome(
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=f"http_error: {type(exc).__name__}: {exc}",
                error_kind="transport",
            )

    async def _send(
        self,
        request: ProbeRequest,
        budget: float,
        *,
        spec: EndpointSpec,
        started: float,
    ) -> AttemptOutcome:
        cert_expires_at = None
        async with self._client.stream(
            request.method,
            request.url,
            headers=request.headers,
            content=request.content,
            follow_redirects=spec.follow_redirects,
            timeout=budget,
        ) as resp:
            if request.want_cert:
                cert_expires_at = cert_expiry_from_response(resp)
            body = await _read_bounded(resp)
            status_code = resp.status_code
            final_url = str(resp.url)
        latency_ms = round((time.perf_counter() - started) * 1000.0, 3)

        if request.want_cert and cert_expires_at is None:
            target = tls_host_port_from_url(final_url) or tls_host_port_from_url(request.url)
            if target is not None:
                host, port = target
                remaining = max(0.1, budget - (time.perf_counter() - started))
                cert_expires_at = await fetch_certificate_expiry(host, port, timeout_seconds=remaining)

        retryable = status_code >= 500 and not spec.status_expected(status_code)
        return AttemptOutcome(
            status_code=status_code,
            body=body,
            latency_ms=latency_ms,
            cert_expires_at=cert_expires_at,
            retryable=retryable,
        )
