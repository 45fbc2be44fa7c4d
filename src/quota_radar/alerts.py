"""Per-model quota alert state machine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from quota_radar.config import Config
from quota_radar.models import QuotaModel, Snapshot

log = structlog.get_logger()


class AlertState(Enum):
    """Alert state of one model. Ordered by severity."""

    NORMAL = "normal"
    WARNED = "warned"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


_SEVERITY = {
    AlertState.NORMAL: 0,
    AlertState.WARNED: 1,
    AlertState.CRITICAL: 2,
    AlertState.EXHAUSTED: 3,
}


@dataclass(frozen=True)
class AlertTransition:
    """A model moving from one alert state to another."""

    model_id: str
    label: str
    previous: AlertState
    current: AlertState
    percentage: float | None
    countdown: str

    @property
    def is_recovery(self) -> bool:
        return self.current is AlertState.NORMAL


def classify(percentage: float | None, warning: int, critical: int) -> AlertState:
    """Alert state a percentage would put a model in, ignoring history."""
    if percentage is None or percentage > warning:
        return AlertState.NORMAL
    if percentage <= 0:
        return AlertState.EXHAUSTED
    if percentage <= critical:
        return AlertState.CRITICAL
    return AlertState.WARNED


def next_state(
    previous: AlertState, percentage: float | None, warning: int, critical: int
) -> AlertState:
    """Advance the state machine.

    Escalation is immediate. A model only steps back down by recovering
    above the warning threshold, which resets it to NORMAL; partial refills
    that stay below warning keep the more severe state so nothing re-alerts.
    """
    candidate = classify(percentage, warning, critical)
    if candidate is AlertState.NORMAL:
        return AlertState.NORMAL
    if _SEVERITY[candidate] > _SEVERITY[previous]:
        return candidate
    return previous


class AlertTracker:
    """Tracks alert state for every model and reports transitions.

    State is tracked regardless of the notifications setting so that turning
    notifications on does not replay old alerts. The notify callback only
    fires while notifications are enabled.
    """

    def __init__(
        self,
        config: Config,
        notify: Callable[[AlertTransition], None] | None = None,
    ):
        self.config = config
        self.notify = notify
        self._states: dict[str, AlertState] = {}

    def state_of(self, model_id: str) -> AlertState:
        return self._states.get(model_id, AlertState.NORMAL)

    def _advance(self, model: QuotaModel) -> AlertTransition | None:
        thresholds = self.config.thresholds
        previous = self.state_of(model.model_id)
        current = next_state(
            previous, model.remaining_percentage, thresholds.warning, thresholds.critical
        )
        self._states[model.model_id] = current
        if current is previous:
            return None
        return AlertTransition(
            model_id=model.model_id,
            label=model.name,
            previous=previous,
            current=current,
            percentage=model.remaining_percentage,
            countdown=model.countdown,
        )

    def update(self, snapshot: Snapshot) -> list[AlertTransition]:
        """Feed a snapshot through the state machine. Returns the transitions."""
        if not snapshot.is_connected:
            return []

        transitions = []
        seen = set()
        for model in snapshot.models:
            seen.add(model.model_id)
            transition = self._advance(model)
            if transition is not None:
                transitions.append(transition)

        # Models the server stopped reporting start fresh if they return
        for model_id in set(self._states) - seen:
            del self._states[model_id]

        for transition in transitions:
            log.info(
                "alert_transition",
                model_id=transition.model_id,
                previous=transition.previous.value,
                current=transition.current.value,
                percentage=transition.percentage,
            )
            if self.config.notifications.enabled and self.notify is not None:
                self.notify(transition)

        return transitions

    def reset(self) -> None:
        """Forget all alert state."""
        self._states.clear()
