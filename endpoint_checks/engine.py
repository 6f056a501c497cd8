from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Sequence

import structlog

from endpoint_checks.history import HistoryBook
from endpoint_checks.models import (
    AlertEvent,
    CycleReport,
    EndpointSnapshot,
    EndpointSpec,
    HistoryEntry,
    ProbeResult,
    ServiceSpec,
    VerdictResult,
)
from endpoint_checks.notify.dispatcher import Dispatcher, render_alert
from endpoint_checks.probe import Prober
from endpoint_checks.status import StatusBoard
from endpoint_checks.validate import validate


logger = structlog.get_logger(__name__)

DEFAULT_CONCURRENCY = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_summary(result: ProbeResult) -> str | None:
    if result.error:
        return result.error[:300]
    return None


class Monitor:
    """
    One run cycle: probe every endpoint, fold verdicts, record history, alert.

    Probes run on a bounded pool of worker tasks. Completed results go through
    a single collector, the only code that touches the StatusBoard and the
    HistoryBook, in the order the probes finished.
    """

    def __init__(
        self,
        services: Sequence[ServiceSpec],
        prober: Prober,
        *,
        board: StatusBoard | None = None,
        history: HistoryBook | None = None,
        dispatcher: Dispatcher | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        cycle_deadline_seconds: float | None = None,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.services = tuple(services)
        self.prober = prober
        self.board = board or StatusBoard()
        self.history = history or HistoryBook()
        self.dispatcher = dispatcher
        self.concurrency = max(1, int(concurrency))
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self._wall_clock = wall_clock

    @property
    def endpoints(self) -> list[EndpointSpec]:
        return [ep for svc in self.services for ep in svc.endpoints]

    async def run_cycle(self) -> CycleReport:
        started_at = self._wall_clock()
        specs = self.endpoints

        jobs: asyncio.Queue[EndpointSpec] = asyncio.Queue()
        for spec in specs:
            jobs.put_nowait(spec)
        completed: asyncio.Queue[tuple[EndpointSpec, ProbeResult] | None] = asyncio.Queue()
        in_flight: dict[str, datetime] = {}

        snapshots: dict[str, EndpointSnapshot] = {}
        updates: list[tuple[str, HistoryEntry]] = []
        alerts: list[AlertEvent] = []

        async def _worker() -> None:
            while True:
                try:
                    spec = jobs.get_nowait()
                except asyncio.QueueEmpty:
                    return
                in_flight[spec.key] = self._wall_clock()
                try:
                    result = await self.prober.probe(spec)
                except Exception as exc:
                    logger.exception("Probe crashed", endpoint=spec.key)
                    result = ProbeResult(
                        endpoint_key=spec.key,
                        url=spec.url,
                        started_at=in_flight[spec.key],
                        error=f"probe_error: {type(exc).__name__}: {exc}",
                        error_kind="transport",
                    )
                finally:
                    in_flight.pop(spec.key, None)
                completed.put_nowait((spec, result))

        async def _collector() -> None:
            while True:
                item = await completed.get()
                if item is None:
                    return
                spec, result = item
                self._collect(spec, result, snapshots=snapshots, updates=updates, alerts=alerts)

        collector = asyncio.create_task(_collector())
        workers = [asyncio.create_task(_worker()) for _ in range(min(self.concurrency, max(1, len(specs))))]

        _done, pending = await asyncio.wait(workers, timeout=self.cycle_deadline_seconds)
        if pending:
            logger.warning(
                "Cycle deadline reached, cancelling probes",
                deadline_seconds=self.cycle_deadline_seconds,
                in_flight=sorted(in_flight),
                queued=jobs.qsize(),
            )
            interrupted = dict(in_flight)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        else:
            interrupted = {}

        completed.put_nowait(None)
        await collector

        now = self._wall_clock()
        for spec in specs:
            if spec.key in snapshots:
                continue
            probe_started = interrupted.get(spec.key)
            if probe_started is not None:
                msg = "timeout: cycle deadline exceeded while probing"
            else:
                msg = "timeout: cycle deadline exceeded before probe started"
            result = ProbeResult(
                endpoint_key=spec.key,
                url=spec.url,
                started_at=probe_started or now,
                error=msg,
                error_kind="timeout",
            )
            self._collect(spec, result, snapshots=snapshots, updates=updates, alerts=alerts)

        finished_at = self._wall_clock()
        self.history.prune_expired(now=finished_at)

        if self.dispatcher is not None and alerts:
            await self.dispatcher.dispatch_all(alerts)

        report = CycleReport(
            started_at=started_at,
            finished_at=finished_at,
            snapshots=tuple(snapshots[spec.key] for spec in specs),
            history_updates=tuple(updates),
            alerts=tuple(alerts),
            details={"concurrency": self.concurrency, "endpoints": len(specs)},
        )
        logger.info(
            "Cycle complete",
            endpoints=len(specs),
            alerts=len(alerts),
            elapsed_seconds=round((finished_at - started_at).total_seconds(), 3),
        )
        return report

    def _collect(
        self,
        spec: EndpointSpec,
        result: ProbeResult,
        *,
        snapshots: dict[str, EndpointSnapshot],
        updates: list[tuple[str, HistoryEntry]],
        alerts: list[AlertEvent],
    ) -> None:
        verdict: VerdictResult = validate(result, spec)
        entry = HistoryEntry(
            timestamp=result.started_at,
            verdict=verdict.verdict,
            latency_ms=result.latency_ms,
            status_code=result.status_code,
            error=_error_summary(result) if result.failed else (verdict.reason if verdict.reason != "ok" else None),
        )
        if self.history.append(spec.key, entry):
            updates.append((spec.key, entry))

        transition = self.board.apply(spec.key, verdict.verdict, at=entry.timestamp)
        state = self.board.get(spec.key)

        if transition is not None:
            logger.info(
                "Status changed",
                endpoint=spec.key,
                previous=transition.previous.value,
                current=transition.current.value,
                reason=verdict.reason,
                alertable=transition.alertable,
            )
            if transition.alertable:
                event = AlertEvent(
                    endpoint_key=spec.key,
                    service=spec.service,
                    previous=transition.previous,
                    current=transition.current,
                    at=transition.at,
                    reason=verdict.reason,
                )
                alerts.append(render_alert(event, result=result))

        snapshots[spec.key] = EndpointSnapshot(
            spec=spec,
            status=state.status,
            result=result,
            verdict=verdict,
            fail_streak=state.fail_streak,
            success_streak=state.success_streak,
            last_transition_at=state.last_transition_at,
        )
