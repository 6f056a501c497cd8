from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from endpoint_checks.engine import Monitor
from endpoint_checks.history import HistoryBook
from endpoint_checks.models import EndpointSpec, ProbeResult, ServiceSpec, Status, Verdict
from endpoint_checks.notify import Dispatcher
from endpoint_checks.probe import Prober
from endpoint_checks.status import DebouncePolicy, StatusBoard


class _Collecting:
    name = "collect"

    def __init__(self) -> None:
        self.titles: list[str] = []

    async def send(self, title: str, message: str) -> None:
        self.titles.append(title)


class _TickingClock:
    """Wall clock that advances one second per call so history stays strictly ordered."""

    def __init__(self) -> None:
        self.now = datetime(2026, 6, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _StubProber:
    def __init__(self, outcomes: dict[str, int | None], clock: _TickingClock, delay: float = 0.0) -> None:
        self.outcomes = outcomes
        self.clock = clock
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def probe(self, spec: EndpointSpec) -> ProbeResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            code = self.outcomes[spec.url]
            if code is None:
                raise RuntimeError("boom")
            return ProbeResult(
                endpoint_key=spec.key,
                url=spec.url,
                started_at=self.clock(),
                latency_ms=1.0,
                status_code=code,
                attempts=1,
            )
        finally:
            self.active -= 1


def _services(urls: list[str]) -> list[ServiceSpec]:
    return [ServiceSpec(name="svc", endpoints=tuple(EndpointSpec(service="svc", url=u, ssl_check=False) for u in urls))]


@pytest.mark.asyncio
async def test_every_endpoint_reported_once_in_config_order() -> None:
    clock = _TickingClock()
    urls = [f"http://h{i}.local/" for i in range(8)]
    prober = _StubProber({u: 200 for u in urls}, clock, delay=0.01)
    monitor = Monitor(_services(urls), prober, concurrency=3, wall_clock=clock)

    report = await monitor.run_cycle()
    assert [s.spec.url for s in report.snapshots] == urls
    assert all(s.verdict.verdict is Verdict.HEALTHY for s in report.snapshots)
    assert len(report.history_updates) == 8
    assert prober.max_active <= 3


@pytest.mark.asyncio
async def test_crashing_probe_becomes_down_verdict() -> None:
    clock = _TickingClock()
    urls = ["http://ok.local/", "http://crash.local/"]
    prober = _StubProber({urls[0]: 200, urls[1]: None}, clock)
    monitor = Monitor(_services(urls), prober, wall_clock=clock)

    report = await monitor.run_cycle()
    crashed = report.snapshot_for("svc/http://crash.local/")
    assert crashed is not None
    assert crashed.verdict.verdict is Verdict.DOWN
    assert "probe_error: RuntimeError: boom" in crashed.verdict.reason
    assert report.snapshot_for("svc/http://ok.local/").verdict.verdict is Verdict.HEALTHY


@pytest.mark.asyncio
async def test_cycle_deadline_synthesises_timeouts() -> None:
    clock = _TickingClock()
    urls = [f"http://slow{i}.local/" for i in range(4)]
    prober = _StubProber({u: 200 for u in urls}, clock, delay=5.0)
    monitor = Monitor(_services(urls), prober, concurrency=2, cycle_deadline_seconds=0.2, wall_clock=clock)

    report = await monitor.run_cycle()
    assert len(report.snapshots) == 4
    reasons = [s.verdict.reason for s in report.snapshots]
    assert all(s.result.error_kind == "timeout" for s in report.snapshots)
    assert sum("while probing" in r for r in reasons) == 2
    assert sum("before probe started" in r for r in reasons) == 2


@pytest.mark.asyncio
async def test_alerts_follow_debounce_across_cycles() -> None:
    clock = _TickingClock()
    url = "http://flappy.local/"
    outcomes = {url: 200}
    channel = _Collecting()
    monitor = Monitor(
        _services([url]),
        _StubProber(outcomes, clock),
        board=StatusBoard(DebouncePolicy(down_after=2)),
        history=HistoryBook(),
        dispatcher=Dispatcher([channel]),
        wall_clock=clock,
    )

    first = await monitor.run_cycle()
    assert first.alerts == ()
    assert first.snapshots[0].status is Status.UP

    outcomes[url] = 503
    second = await monitor.run_cycle()
    assert second.alerts == ()
    third = await monitor.run_cycle()
    assert len(third.alerts) == 1
    assert third.alerts[0].current is Status.DOWN
    fourth = await monitor.run_cycle()
    assert fourth.alerts == ()

    outcomes[url] = 200
    fifth = await monitor.run_cycle()
    assert [a.current for a in fifth.alerts] == [Status.UP]
    assert channel.titles == [
        "svc: http://flappy.local/ is DOWN ❌",
        "svc: http://flappy.local/ is UP ✅",
    ]
    assert len(monitor.history.entries(f"svc/{url}")) == 5


@pytest.mark.asyncio
async def test_cycle_against_local_server(local_server_base_url: str) -> None:
    services = [
        ServiceSpec(
            name="local",
            endpoints=(
                EndpointSpec(service="local", url=f"{local_server_base_url}/ok", body_pattern="pong"),
                EndpointSpec(service="local", url=f"{local_server_base_url}/missing"),
            ),
        )
    ]
    async with httpx.AsyncClient() as client:
        monitor = Monitor(services, Prober(client), board=StatusBoard(DebouncePolicy(down_after=1)))
        report = await monitor.run_cycle()

    ok, missing = report.snapshots
    assert ok.status is Status.UP
    assert missing.status is Status.DOWN
    assert [a.endpoint_key for a in report.alerts] == [missing.spec.key]
