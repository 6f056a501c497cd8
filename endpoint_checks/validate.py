from __future__ import annotations

import re
from functools import lru_cache

from endpoint_checks.models import EndpointSpec, ProbeResult, Verdict, VerdictResult
from endpoint_checks.tls import tls_host_port_from_url


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.S)


def _expected_label(spec: EndpointSpec) -> str:
    if spec.expected_status:
        return ",".join(str(c) for c in spec.expected_status)
    return "2xx"


def validate(result: ProbeResult, spec: EndpointSpec) -> VerdictResult:
    """
    Classify one probe result.

    Execution errors short-circuit to DOWN. Otherwise status, certificate and
    body checks are all evaluated and the worst verdict wins.
    """
    if result.failed:
        reason = result.error or f"{result.error_kind}_error"
        if result.attempts > 1:
            reason = f"{reason} (after {result.attempts} attempts)"
        return VerdictResult(Verdict.DOWN, reason)

    failures: list[tuple[Verdict, str]] = []

    if result.status_code is None:
        failures.append((Verdict.DOWN, "no status code observed"))
    elif not spec.status_expected(result.status_code):
        msg = f"unexpected status {result.status_code} (expected {_expected_label(spec)})"
        if result.attempts > 1:
            msg += f" after {result.attempts} attempts"
        failures.append((Verdict.DOWN, msg))

    if spec.ssl_check and tls_host_port_from_url(result.url) is not None:
        if result.cert_expires_at is None:
            failures.append((Verdict.DEGRADED, "certificate expiry unavailable"))
        else:
            days_left = (result.cert_expires_at - result.started_at).total_seconds() / 86400.0
            if days_left < float(spec.cert_warning_days):
                failures.append(
                    (
                        Verdict.DEGRADED,
                        f"certificate expires in {days_left:.1f} days (threshold {float(spec.cert_warning_days):g})",
                    )
                )

    if spec.body_pattern:
        if not _compile(spec.body_pattern).search(result.body or ""):
            failures.append((Verdict.DOWN, f"body does not match {spec.body_pattern!r}"))

    if not failures:
        return VerdictResult(Verdict.HEALTHY, "ok")

    verdict = Verdict.worst([v for v, _ in failures])
    return VerdictResult(verdict, "; ".join(msg for _, msg in failures))
