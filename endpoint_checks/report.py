from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from endpoint_checks.history import HistoryBook
from endpoint_checks.models import CycleReport, EndpointSnapshot, Verdict
from endpoint_checks.store import write_json_atomic


DEFAULT_DISPLAY_NUM = 72


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _endpoint_data(snap: EndpointSnapshot, history: HistoryBook, *, display_num: int) -> dict[str, Any]:
    spec = snap.spec
    result = snap.result
    summary = history.summarize(spec.key, last_n=display_num)
    return {
        "key": spec.key,
        "url": spec.url,
        "method": spec.method,
        "status": snap.status.value,
        "verdict": snap.verdict.verdict.value,
        "reason": snap.verdict.reason,
        "http_status": result.status_code,
        "latency_ms": round(result.latency_ms, 3) if result.latency_ms is not None else None,
        "attempts": result.attempts,
        "checked_at": _iso(result.started_at),
        "cert_expires_at": _iso(result.cert_expires_at),
        "last_transition_at": _iso(snap.last_transition_at),
        "fail_streak": snap.fail_streak,
        "body_snippet": result.body_snippet if snap.verdict.verdict is not Verdict.HEALTHY else None,
        "uptime_ratio": summary.uptime_ratio,
        "avg_latency_ms": summary.avg_latency_ms,
        "p95_latency_ms": summary.p95_latency_ms,
        "recent": [v.value for v in summary.last_statuses],
    }


def build_report_data(
    report: CycleReport,
    history: HistoryBook,
    *,
    display_num: int = DEFAULT_DISPLAY_NUM,
) -> dict[str, Any]:
    """JSON-serialisable view of one cycle, grouped by service in configuration order."""
    services: dict[str, list[dict[str, Any]]] = {}
    for snap in report.snapshots:
        services.setdefault(snap.spec.service, []).append(
            _endpoint_data(snap, history, display_num=display_num)
        )

    return {
        "started_at": _iso(report.started_at),
        "finished_at": _iso(report.finished_at),
        "services": [{"name": name, "endpoints": endpoints} for name, endpoints in services.items()],
        "details": dict(report.details),
        "alerts": [
            {
                "endpoint": a.endpoint_key,
                "service": a.service,
                "previous": a.previous.value,
                "current": a.current.value,
                "at": _iso(a.at),
                "title": a.title,
            }
            for a in report.alerts
        ],
    }


def write_report_data(
    path: Path | str,
    report: CycleReport,
    history: HistoryBook,
    *,
    display_num: int = DEFAULT_DISPLAY_NUM,
) -> dict[str, Any]:
    data = build_report_data(report, history, display_num=display_num)
    write_json_atomic(Path(path), data)
    return data
