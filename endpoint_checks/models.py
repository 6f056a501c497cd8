from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


MAX_BODY_BYTES = 64 * 1024
BODY_SNIPPET_CHARS = 512


class Verdict(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"

    @property
    def severity(self) -> int:
        return _VERDICT_SEVERITY[self]

    @classmethod
    def worst(cls, verdicts: list[Verdict]) -> Verdict:
        if not verdicts:
            return cls.HEALTHY
        return max(verdicts, key=lambda v: v.severity)


_VERDICT_SEVERITY = {Verdict.HEALTHY: 0, Verdict.DEGRADED: 1, Verdict.DOWN: 2}


class Status(str, enum.Enum):
    UNKNOWN = "unknown"
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


VERDICT_TO_STATUS = {
    Verdict.HEALTHY: Status.UP,
    Verdict.DEGRADED: Status.DEGRADED,
    Verdict.DOWN: Status.DOWN,
}


@dataclass(frozen=True)
class EndpointSpec:
    service: str
    url: str
    port: int | None = None
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    # Empty means "any 2xx".
    expected_status: tuple[int, ...] = ()
    body_pattern: str | None = None
    timeout_seconds: float = 10.0
    retries: int = 0
    ssl_check: bool = True
    cert_warning_days: float = 7.0
    follow_redirects: bool = True

    @property
    def key(self) -> str:
        if self.port is not None:
            return f"{self.service}/{self.url}@{self.port}"
        return f"{self.service}/{self.url}"

    def status_expected(self, status_code: int) -> bool:
        if self.expected_status:
            return status_code in self.expected_status
        return 200 <= status_code < 300


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    endpoints: tuple[EndpointSpec, ...] = ()


@dataclass(frozen=True)
class ProbeResult:
    endpoint_key: str
    url: str
    started_at: datetime
    latency_ms: float | None = None
    status_code: int | None = None
    body: str = ""
    cert_expires_at: datetime | None = None
    error: str | None = None
    # transport | protocol | timeout | configuration
    error_kind: str | None = None
    attempts: int = 0

    @property
    def body_snippet(self) -> str:
        return self.body[:BODY_SNIPPET_CHARS]

    @property
    def failed(self) -> bool:
        return self.error_kind is not None


@dataclass(frozen=True)
class VerdictResult:
    verdict: Verdict
    reason: str


@dataclass
class EndpointStatus:
    status: Status = Status.UNKNOWN
    fail_streak: int = 0
    success_streak: int = 0
    # Non-healthy verdict currently being counted by fail_streak.
    pending: Verdict | None = None
    last_transition_at: datetime | None = None


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    verdict: Verdict
    latency_ms: float | None = None
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class AlertEvent:
    endpoint_key: str
    service: str
    previous: Status
    current: Status
    at: datetime
    reason: str = ""
    title: str = ""
    message: str = ""


@dataclass(frozen=True)
class EndpointSnapshot:
    spec: EndpointSpec
    status: Status
    result: ProbeResult
    verdict: VerdictResult
    fail_streak: int = 0
    success_streak: int = 0
    last_transition_at: datetime | None = None


@dataclass(frozen=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime
    snapshots: tuple[EndpointSnapshot, ...]
    history_updates: tuple[tuple[str, HistoryEntry], ...]
    alerts: tuple[AlertEvent, ...]
    details: dict[str, Any] = field(default_factory=dict)

    def snapshot_for(self, key: str) -> EndpointSnapshot | None:
        for snap in self.snapshots:
            if snap.spec.key == key:
                return snap
        return None
