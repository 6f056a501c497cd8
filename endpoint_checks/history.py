from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import structlog

from endpoint_checks.models import HistoryEntry, Verdict


logger = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 2000

# Sample encoding for the on-disk history (compact, stable schema):
# [ts, verdict, latency_ms, status_code, error]
#
# - ts: float unix timestamp (seconds)
# - verdict: "healthy" | "degraded" | "down"
# - latency_ms: float | None
# - status_code: int | None
# - error: str | None
Sample = list[Any]

_UP_VERDICTS = {Verdict.HEALTHY, Verdict.DEGRADED}


@dataclass(frozen=True)
class HistorySummary:
    total: int
    uptime_ratio: float | None
    avg_latency_ms: float | None
    p95_latency_ms: float | None
    last_statuses: tuple[Verdict, ...]


def _ts(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def entry_to_sample(entry: HistoryEntry) -> Sample:
    return [
        _ts(entry.timestamp),
        entry.verdict.value,
        float(entry.latency_ms) if entry.latency_ms is not None else None,
        int(entry.status_code) if entry.status_code is not None else None,
        entry.error,
    ]


def sample_to_entry(item: Any) -> HistoryEntry | None:
    if not isinstance(item, list) or len(item) < 2:
        return None
    try:
        ts = float(item[0])
        verdict = Verdict(str(item[1]))
    except (TypeError, ValueError):
        return None

    latency_ms = None
    if len(item) >= 3 and item[2] is not None:
        try:
            latency_ms = float(item[2])
        except (TypeError, ValueError):
            latency_ms = None

    status_code = None
    if len(item) >= 4 and item[3] is not None:
        try:
            status_code = int(item[3])
        except (TypeError, ValueError):
            status_code = None

    error = None
    if len(item) >= 5 and item[4] is not None:
        error = str(item[4])

    return HistoryEntry(
        timestamp=datetime.fromtimestamp(ts, tz=timezone.utc),
        verdict=verdict,
        latency_ms=latency_ms,
        status_code=status_code,
        error=error,
    )


def compute_uptime_ratio(items: Iterable[HistoryEntry]) -> tuple[int, float | None]:
    """Returns (total, up_ratio_or_None_if_total_0). DEGRADED counts as up."""
    total = 0
    up = 0
    for entry in items:
        total += 1
        if entry.verdict in _UP_VERDICTS:
            up += 1
    if total <= 0:
        return 0, None
    return total, up / float(total)


def _percentile(sorted_values: list[float], p: float) -> float | None:
    if not sorted_values:
        return None
    p = float(p)
    if p <= 0:
        return float(sorted_values[0])
    if p >= 100:
        return float(sorted_values[-1])
    # Nearest-rank method.
    k = int(round((p / 100.0) * (len(sorted_values) - 1)))
    k = max(0, min(k, len(sorted_values) - 1))
    return float(sorted_values[k])


def latency_percentile_ms(items: Iterable[HistoryEntry], *, percentile: float) -> float | None:
    values = sorted(float(e.latency_ms) for e in items if e.latency_ms is not None)
    return _percentile(values, percentile)


class HistoryBook:
    """
    Bounded, time-ordered outcome log per endpoint.

    Appends are O(1); once `max_entries` is reached the oldest entry is
    evicted. Entries older than an endpoint's newest entry are refused so the
    sequence stays strictly time-ordered.
    """

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES, retention: timedelta | None = None) -> None:
        self.max_entries = max(1, int(max_entries))
        self.retention = retention
        self._entries: dict[str, deque[HistoryEntry]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def entries(self, key: str) -> list[HistoryEntry]:
        return list(self._entries.get(key) or ())

    def items(self) -> dict[str, list[HistoryEntry]]:
        return {key: list(items) for key, items in self._entries.items()}

    def append(self, key: str, entry: HistoryEntry) -> bool:
        if not key:
            return False
        items = self._entries.get(key)
        if items is None:
            items = deque(maxlen=self.max_entries)
            self._entries[key] = items
        elif items and _ts(entry.timestamp) <= _ts(items[-1].timestamp):
            logger.warning(
                "History entry out of order, dropped",
                endpoint=key,
                entry_ts=entry.timestamp.isoformat(),
                last_ts=items[-1].timestamp.isoformat(),
            )
            return False
        items.append(entry)
        return True

    def prune(self, *, before: datetime) -> int:
        """Drop entries older than `before`. Returns how many were removed."""
        cutoff = _ts(before)
        removed = 0
        for key in list(self._entries):
            items = self._entries[key]
            while items and _ts(items[0].timestamp) < cutoff:
                items.popleft()
                removed += 1
            if not items:
                del self._entries[key]
        return removed

    def prune_expired(self, *, now: datetime) -> int:
        if self.retention is None:
            return 0
        return self.prune(before=now - self.retention)

    def retain_only(self, keys: Iterable[str]) -> None:
        wanted = set(keys)
        for key in list(self._entries):
            if key not in wanted:
                del self._entries[key]

    def window(self, key: str, *, since: datetime) -> list[HistoryEntry]:
        cutoff = _ts(since)
        return [e for e in self._entries.get(key) or () if _ts(e.timestamp) >= cutoff]

    def summarize(
        self,
        key: str,
        window: timedelta | None = None,
        *,
        now: datetime | None = None,
        last_n: int = 10,
    ) -> HistorySummary:
        items = list(self._entries.get(key) or ())
        if window is not None and items:
            ref = now or items[-1].timestamp
            items = self.window(key, since=ref - window)

        total, uptime_ratio = compute_uptime_ratio(items)
        latencies = [float(e.latency_ms) for e in items if e.latency_ms is not None]
        avg_latency = (sum(latencies) / len(latencies)) if latencies else None
        last = tuple(e.verdict for e in items[-max(0, int(last_n)):]) if last_n > 0 else ()
        return HistorySummary(
            total=total,
            uptime_ratio=uptime_ratio,
            avg_latency_ms=round(avg_latency, 3) if avg_latency is not None else None,
            p95_latency_ms=latency_percentile_ms(items, percentile=95.0),
            last_statuses=last,
        )

    def to_json(self) -> dict[str, list[Sample]]:
        return {key: [entry_to_sample(e) for e in items] for key, items in self._entries.items()}

    @classmethod
    def from_json(
        cls,
        raw: Any,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retention: timedelta | None = None,
    ) -> HistoryBook:
        """
        Best-effort decode for persisted history.
        Ignores invalid entries to be robust to partial writes or older formats.
        """
        book = cls(max_entries=max_entries, retention=retention)
        if not isinstance(raw, dict):
            return book

        for key, items in raw.items():
            if not isinstance(key, str) or not key or not isinstance(items, list):
                continue
            entries = [e for e in (sample_to_entry(item) for item in items) if e is not None]
            entries.sort(key=lambda e: _ts(e.timestamp))
            for entry in entries:
                book.append(key, entry)
        return book
