from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

import structlog

from endpoint_checks.models import VERDICT_TO_STATUS, EndpointStatus, HistoryEntry, Status, Verdict


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DebouncePolicy:
    # Consecutive matching non-healthy verdicts before DOWN/DEGRADED is declared.
    down_after: int = 3
    # Consecutive healthy verdicts before UP is declared.
    up_after: int = 1
    # Whether UNKNOWN -> DOWN/DEGRADED (a new endpoint that is broken from the start) alerts.
    alert_on_first_failure: bool = True


@dataclass(frozen=True)
class Transition:
    previous: Status
    current: Status
    at: datetime
    alertable: bool


def apply_verdict(
    state: EndpointStatus,
    verdict: Verdict,
    *,
    policy: DebouncePolicy,
    at: datetime,
) -> Transition | None:
    """
    Fold one verdict into `state` in place.

    Returns a Transition only when the visible status changes, so a run of
    identical verdicts after the change never emits again.
    """
    down_after = max(1, int(policy.down_after))
    up_after = max(1, int(policy.up_after))

    target: Status | None = None
    if verdict is Verdict.HEALTHY:
        state.success_streak += 1
        state.fail_streak = 0
        state.pending = None
        if state.success_streak >= up_after:
            target = Status.UP
    else:
        if state.pending is verdict:
            state.fail_streak += 1
        else:
            state.pending = verdict
            state.fail_streak = 1
        state.success_streak = 0
        if state.fail_streak >= down_after:
            target = VERDICT_TO_STATUS[verdict]

    if target is None or target is state.status:
        return None

    previous = state.status
    state.status = target
    state.last_transition_at = at

    if previous is Status.UNKNOWN:
        alertable = target is not Status.UP and bool(policy.alert_on_first_failure)
    else:
        alertable = True
    return Transition(previous=previous, current=target, at=at, alertable=alertable)


class StatusBoard:
    """Per-endpoint EndpointStatus arena, keyed by endpoint key."""

    def __init__(self, policy: DebouncePolicy | None = None) -> None:
        self.policy = policy or DebouncePolicy()
        self._states: dict[str, EndpointStatus] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._states

    def get(self, key: str) -> EndpointStatus:
        state = self._states.get(key)
        if state is None:
            state = EndpointStatus()
            self._states[key] = state
        return state

    def apply(self, key: str, verdict: Verdict, *, at: datetime) -> Transition | None:
        return apply_verdict(self.get(key), verdict, policy=self.policy, at=at)

    def rehydrate(self, entries_by_key: Mapping[str, Iterable[HistoryEntry]]) -> None:
        """Rebuild statuses by replaying persisted history. Emits nothing."""
        for key, entries in entries_by_key.items():
            state = EndpointStatus()
            for entry in entries:
                apply_verdict(state, entry.verdict, policy=self.policy, at=entry.timestamp)
            self._states[key] = state
            logger.debug("Status rehydrated", endpoint=key, status=state.status.value)
