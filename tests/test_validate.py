from __future__ import annotations

from datetime import datetime, timedelta, timezone

from endpoint_checks.models import EndpointSpec, ProbeResult, Verdict
from endpoint_checks.validate import validate


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _result(url: str = "http://example.com/", **kwargs) -> ProbeResult:
    kwargs.setdefault("status_code", 200)
    kwargs.setdefault("attempts", 1)
    return ProbeResult(endpoint_key=f"svc/{url}", url=url, started_at=NOW, **kwargs)


def test_2xx_is_healthy_by_default() -> None:
    spec = EndpointSpec(service="svc", url="http://example.com/")
    assert validate(_result(status_code=204), spec).verdict is Verdict.HEALTHY
    assert validate(_result(status_code=301), spec).verdict is Verdict.DOWN


def test_expected_status_list() -> None:
    spec = EndpointSpec(service="svc", url="http://example.com/", expected_status=(200, 401))
    assert validate(_result(status_code=401), spec).verdict is Verdict.HEALTHY
    verdict = validate(_result(status_code=204), spec)
    assert verdict.verdict is Verdict.DOWN
    assert verdict.reason == "unexpected status 204 (expected 200,401)"


def test_execution_error_reports_attempts() -> None:
    spec = EndpointSpec(service="svc", url="http://example.com/")
    result = _result(status_code=None, error="transport_error: ConnectError: refused", error_kind="transport", attempts=3)
    verdict = validate(result, spec)
    assert verdict.verdict is Verdict.DOWN
    assert verdict.reason == "transport_error: ConnectError: refused (after 3 attempts)"


def test_cert_near_expiry_is_degraded() -> None:
    url = "https://example.com/"
    spec = EndpointSpec(service="svc", url=url, cert_warning_days=14)
    soon = _result(url, cert_expires_at=NOW + timedelta(days=3))
    later = _result(url, cert_expires_at=NOW + timedelta(days=90))
    verdict = validate(soon, spec)
    assert verdict.verdict is Verdict.DEGRADED
    assert "certificate expires in 3.0 days" in verdict.reason
    assert validate(later, spec).verdict is Verdict.HEALTHY


def test_missing_cert_is_degraded_only_when_checked() -> None:
    url = "https://example.com/"
    assert validate(_result(url), EndpointSpec(service="svc", url=url)).verdict is Verdict.DEGRADED
    assert validate(_result(url), EndpointSpec(service="svc", url=url, ssl_check=False)).verdict is Verdict.HEALTHY


def test_worst_verdict_wins_and_reasons_are_joined() -> None:
    url = "https://example.com/"
    spec = EndpointSpec(service="svc", url=url, body_pattern="ready", cert_warning_days=30)
    result = _result(url, body="starting", cert_expires_at=NOW + timedelta(days=1))
    verdict = validate(result, spec)
    assert verdict.verdict is Verdict.DOWN
    assert "certificate expires" in verdict.reason
    assert "body does not match" in verdict.reason


def test_validate_is_deterministic() -> None:
    spec = EndpointSpec(service="svc", url="http://example.com/", body_pattern=r"\d+ items")
    result = _result(body="found 12 items")
    assert validate(result, spec) == validate(result, spec)
