from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import List, Optional

from .exceptions import TorControlError
from .logging_utils import get_logger
from .statistics_manager import MetricsSink, NullMetricsSink
from .tor_status import StatusReader, StatusSnapshot
from .webhook_notifier import EventDetails, EventKind, NotificationEvent


class ReadinessTracker:
    """Remember the last health class and report transitions.

    The first observation only establishes a baseline.
    """

    def __init__(self) -> None:
        self._healthy: Optional[bool] = None
        self.lock = threading.Lock()

    @property
    def healthy(self) -> Optional[bool]:
        with self.lock:
            return self._healthy

    def observe(self, healthy: bool) -> bool:
        """Record the current class; return True iff it differs from the stored one."""

        with self.lock:
            previous = self._healthy
            self._healthy = healthy
            return previous is not None and previous != healthy


@dataclass(frozen=True)
class HealthOutcome:
    healthy: bool
    snapshot: Optional[StatusSnapshot] = None
    error: str = ""
    events: List[NotificationEvent] = field(default_factory=list)


class HealthEvaluator:
    """Classify Tor's state and decide which notifications fire.

    Unhealthy checks produce exactly one event: ``health_changed`` on the
    transition, ``bootstrap_failed`` while it persists. Healthy checks only
    produce ``health_changed`` on the transition back.
    """

    def __init__(
        self,
        reader: StatusReader,
        tracker: Optional[ReadinessTracker] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self._reader = reader
        self._tracker = tracker or ReadinessTracker()
        self._metrics = metrics or NullMetricsSink()
        self._logger = get_logger("health")

    @property
    def tracker(self) -> ReadinessTracker:
        return self._tracker

    async def evaluate(self) -> HealthOutcome:
        try:
            snapshot = await self._reader.get_status()
        except TorControlError as error:
            self._metrics.set_tor_ready(False)
            failure = EventDetails(error=str(error))
            return self._classify(False, None, str(error), "Tor bootstrap failed", failure)

        self._metrics.observe_tor_status(snapshot)
        if snapshot.ready:
            return self._classify(True, snapshot, "", "", None)

        incomplete = EventDetails(bootstrap=snapshot.bootstrap_phase, circuits=snapshot.num_circuits)
        return self._classify(False, snapshot, "", "Tor bootstrap incomplete", incomplete)

    def _classify(
        self,
        healthy: bool,
        snapshot: Optional[StatusSnapshot],
        error: str,
        failure_message: str,
        failure_details: Optional[EventDetails],
    ) -> HealthOutcome:
        events: List[NotificationEvent] = []
        if self._tracker.observe(healthy):
            state = "healthy" if healthy else "unhealthy"
            self._logger.warning("Tor health status changed to %s", state)
            events.append(
                NotificationEvent(
                    EventKind.HEALTH_CHANGED,
                    f"Tor health status changed to {state}",
                    EventDetails(healthy=healthy),
                )
            )
        elif not healthy and failure_details is not None:
            events.append(NotificationEvent(EventKind.BOOTSTRAP_FAILED, failure_message, failure_details))
        return HealthOutcome(healthy=healthy, snapshot=snapshot, error=error, events=events)
