from __future__ import annotations

from typing import List, Union

import pytest

from tor_health_sidecar.exceptions import TorConnectionError
from tor_health_sidecar.health_tracker import HealthEvaluator, ReadinessTracker
from tor_health_sidecar.statistics_manager import StatisticsManager
from tor_health_sidecar.tor_status import StatusSnapshot
from tor_health_sidecar.webhook_notifier import EventKind


class ScriptedReader:
    def __init__(self, script: List[Union[StatusSnapshot, Exception]]) -> None:
        self._script = list(script)

    async def get_status(self) -> StatusSnapshot:
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


HEALTHY = StatusSnapshot(bootstrap_phase=100, circuit_established=True, num_circuits=4)
BOOTSTRAPPING = StatusSnapshot(bootstrap_phase=45, num_circuits=1)
LINK_DOWN = TorConnectionError("failed to connect to tor control port 127.0.0.1:9051")


def test_tracker_first_observation_is_baseline():
    tracker = ReadinessTracker()
    assert tracker.healthy is None
    assert tracker.observe(False) is False
    assert tracker.healthy is False


def test_tracker_reports_only_transitions():
    tracker = ReadinessTracker()
    observations = [True, True, False, False, True]
    assert [tracker.observe(value) for value in observations] == [False, False, True, False, True]


async def _run(script):
    evaluator = HealthEvaluator(ScriptedReader(script))
    return [await evaluator.evaluate() for _ in script]


@pytest.mark.asyncio
async def test_steadily_healthy_emits_nothing():
    outcomes = await _run([HEALTHY] * 5)
    assert all(outcome.healthy for outcome in outcomes)
    assert all(outcome.events == [] for outcome in outcomes)


@pytest.mark.asyncio
async def test_one_health_changed_per_boundary_crossing():
    outcomes = await _run([HEALTHY, BOOTSTRAPPING, BOOTSTRAPPING, HEALTHY, HEALTHY])
    kinds = [[event.kind for event in outcome.events] for outcome in outcomes]
    assert kinds == [
        [],
        [EventKind.HEALTH_CHANGED],
        [EventKind.BOOTSTRAP_FAILED],
        [EventKind.HEALTH_CHANGED],
        [],
    ]
    assert outcomes[1].events[0].details.healthy is False
    assert outcomes[1].events[0].message == "Tor health status changed to unhealthy"
    assert outcomes[3].events[0].details.healthy is True


@pytest.mark.asyncio
async def test_every_unhealthy_check_emits_exactly_one_event():
    outcomes = await _run([BOOTSTRAPPING, LINK_DOWN, BOOTSTRAPPING, LINK_DOWN])
    assert all(not outcome.healthy for outcome in outcomes)
    assert all(len(outcome.events) == 1 for outcome in outcomes)
    assert all(outcome.events[0].kind is EventKind.BOOTSTRAP_FAILED for outcome in outcomes)


@pytest.mark.asyncio
async def test_bootstrap_failed_carries_the_cause():
    outcomes = await _run([BOOTSTRAPPING, LINK_DOWN])

    incomplete = outcomes[0].events[0]
    assert incomplete.message == "Tor bootstrap incomplete"
    assert incomplete.details.bootstrap == 45
    assert incomplete.details.circuits == 1

    failed = outcomes[1].events[0]
    assert failed.message == "Tor bootstrap failed"
    assert "127.0.0.1:9051" in failed.details.error
    assert failed.details.bootstrap is None
    assert outcomes[1].error == str(LINK_DOWN)


@pytest.mark.asyncio
@pytest.mark.parametrize("bootstrap, healthy", [(99, False), (100, True), (101, True)])
async def test_classification_threshold(bootstrap, healthy):
    evaluator = HealthEvaluator(ScriptedReader([StatusSnapshot(bootstrap_phase=bootstrap)]))
    outcome = await evaluator.evaluate()
    assert outcome.healthy is healthy


@pytest.mark.asyncio
async def test_evaluator_updates_readiness_metrics():
    metrics = StatisticsManager()
    evaluator = HealthEvaluator(ScriptedReader([HEALTHY, LINK_DOWN]), metrics=metrics)

    await evaluator.evaluate()
    assert metrics.get_value("torarr_tor_ready") == 1
    assert metrics.get_value("torarr_tor_bootstrap_percent") == 100

    await evaluator.evaluate()
    assert metrics.get_value("torarr_tor_ready") == 0
