"""Tests for the rollout phase state machine."""
import asyncio
import random

import pytest

from cohortlab.models.metrics import MetricsSnapshot
from cohortlab.models.rollout import PhaseCriteria, RolloutStatus
from cohortlab.services.engine import ExperimentationEngine
from cohortlab.services.errors import (
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)
from cohortlab.services.metrics import MetricsProvider
from cohortlab.services.rollouts import criteria_met

HEALTHY = {"success_rate": 0.99, "error_rate": 0.01, "latency": 120}
FAILING = {"success_rate": 0.80, "error_rate": 0.10, "latency": 120}


def plan_config(**overrides):
    config = {
        "id": "plan_1",
        "name": "New checkout",
        "feature": "flag_checkout",
        "phases": [
            {"name": "canary", "percentage": 10, "duration": 1},
            {"name": "early", "percentage": 25, "duration": 1},
            {"name": "full", "percentage": 100, "duration": 1},
        ],
        "rollback_conditions": [
            {"metric": "errorRate", "operator": "gt", "threshold": 0.05, "severity": "critical"},
        ],
    }
    config.update(overrides)
    return config


@pytest.fixture
def rollout_engine(engine):
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    engine.create_rollout_plan(plan_config())
    return engine


class FailingMetrics(MetricsProvider):
    async def get_current_metrics(self, entity_id):
        raise CollaboratorFailure("metrics service down")


class BrokenMetrics(MetricsProvider):
    async def get_current_metrics(self, entity_id):
        raise RuntimeError("unexpected client error")


@pytest.mark.asyncio
async def test_start_sets_first_phase(rollout_engine):
    plan = await rollout_engine.start_rollout("plan_1")

    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_phase == 0
    assert plan.current_percentage == 10
    flag = rollout_engine.flags.get_flag("flag_checkout")
    assert flag.enabled is True
    assert flag.rollout_percentage == 10
    assert rollout_engine.rollouts.has_pending_timer("plan_1")

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_healthy_metrics_advance_to_completion(rollout_engine, metrics):
    """Phases [10, 25, 100] advance on healthy metrics and complete."""
    metrics.set_metrics("plan_1", HEALTHY)
    await rollout_engine.start_rollout("plan_1")
    manager = rollout_engine.rollouts

    plan = await manager.evaluate_phase_transition("plan_1")
    assert plan.current_percentage == 25

    plan = await manager.evaluate_phase_transition("plan_1")
    assert plan.current_percentage == 100
    assert plan.status == RolloutStatus.ACTIVE

    plan = await manager.evaluate_phase_transition("plan_1")
    assert plan.status == RolloutStatus.COMPLETED
    assert plan.actual_completion is not None
    assert not manager.has_pending_timer("plan_1")

    flag = rollout_engine.flags.get_flag("flag_checkout")
    assert flag.enabled is True
    assert flag.rollout_percentage == 100

    reasons = [t.reason for t in plan.metrics.phase_transitions]
    assert reasons == ["rollout_started", "criteria_met", "criteria_met", "rollout_complete"]

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_timers_drive_phases(store, metrics):
    """Scheduled evaluations walk the plan to completion without manual calls."""
    engine = ExperimentationEngine(
        store=store,
        metrics=metrics,
        phase_time_unit_seconds=0.01,
        rng=random.Random(7),
    )
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    engine.create_rollout_plan(plan_config())
    metrics.set_metrics("plan_1", HEALTHY)

    await engine.start_rollout("plan_1")
    for _ in range(200):
        if engine.get_rollout_status("plan_1").status == RolloutStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)

    assert engine.get_rollout_status("plan_1").status == RolloutStatus.COMPLETED
    await engine.stop()


@pytest.mark.asyncio
async def test_critical_breach_rolls_back(rollout_engine, metrics):
    """errorRate 0.10 against a critical errorRate > 0.05 trigger reverts immediately."""
    metrics.set_metrics("plan_1", FAILING)
    await rollout_engine.start_rollout("plan_1")

    plan = await rollout_engine.rollouts.evaluate_phase_transition("plan_1")

    assert plan.status == RolloutStatus.ROLLED_BACK
    assert plan.current_percentage == 0
    assert plan.metrics.rollbacks_triggered == 1
    flag = rollout_engine.flags.get_flag("flag_checkout")
    assert flag.enabled is False
    assert flag.rollout_percentage == 0
    assert not rollout_engine.rollouts.has_pending_timer("plan_1")

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_unmet_criteria_without_breach_pauses(rollout_engine, metrics):
    metrics.set_metrics("plan_1", {"success_rate": 0.90, "error_rate": 0.02, "latency": 100})
    await rollout_engine.start_rollout("plan_1")

    plan = await rollout_engine.rollouts.evaluate_phase_transition("plan_1")

    assert plan.status == RolloutStatus.PAUSED
    assert plan.current_percentage == 10
    assert not rollout_engine.rollouts.has_pending_timer("plan_1")

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_metrics_failure_leaves_phase_unchanged(store):
    engine = ExperimentationEngine(store=store, metrics=FailingMetrics())
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    engine.create_rollout_plan(plan_config())
    await engine.start_rollout("plan_1")

    plan = await engine.rollouts.evaluate_phase_transition("plan_1")

    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_phase == 0
    assert engine.rollouts.has_pending_timer("plan_1")

    await engine.stop()


@pytest.mark.asyncio
async def test_unexpected_metrics_error_keeps_polling(store):
    """Any provider error is treated as missing data and retried on the next interval."""
    engine = ExperimentationEngine(
        store=store,
        metrics=BrokenMetrics(),
        phase_time_unit_seconds=0.01,
        metrics_retry_seconds=0.01,
    )
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    engine.create_rollout_plan(plan_config())

    await engine.start_rollout("plan_1")
    await asyncio.sleep(0.1)

    plan = engine.get_rollout_status("plan_1")
    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_phase == 0
    assert engine.rollouts.has_pending_timer("plan_1")

    await engine.stop()


@pytest.mark.asyncio
async def test_missing_metrics_leaves_phase_unchanged(rollout_engine):
    await rollout_engine.start_rollout("plan_1")

    plan = await rollout_engine.rollouts.evaluate_phase_transition("plan_1")

    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_phase == 0

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_pause_and_resume(rollout_engine, metrics):
    metrics.set_metrics("plan_1", HEALTHY)
    await rollout_engine.start_rollout("plan_1")

    plan = await rollout_engine.pause_rollout("plan_1")
    assert plan.status == RolloutStatus.PAUSED
    assert not rollout_engine.rollouts.has_pending_timer("plan_1")

    # Evaluations are ignored while paused
    plan = await rollout_engine.rollouts.evaluate_phase_transition("plan_1")
    assert plan.current_phase == 0

    plan = await rollout_engine.resume_rollout("plan_1")
    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_percentage == 10
    assert rollout_engine.rollouts.has_pending_timer("plan_1")

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_rollback_is_terminal(rollout_engine):
    await rollout_engine.start_rollout("plan_1")

    plan = await rollout_engine.rollback_rollout("plan_1", "manual abort")
    assert plan.status == RolloutStatus.ROLLED_BACK

    plan = await rollout_engine.resume_rollout("plan_1")
    assert plan.status == RolloutStatus.ROLLED_BACK
    plan = await rollout_engine.pause_rollout("plan_1")
    assert plan.status == RolloutStatus.ROLLED_BACK

    # Second rollback is a no-op
    plan = await rollout_engine.rollback_rollout("plan_1", "again")
    assert plan.metrics.rollbacks_triggered == 1
    assert await rollout_engine.rollouts.force_rollback("plan_1", "again") is False

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_concurrent_rollbacks_apply_once(rollout_engine):
    await rollout_engine.start_rollout("plan_1")

    results = await asyncio.gather(*[
        rollout_engine.rollouts.force_rollback("plan_1", f"trigger {i}") for i in range(5)
    ])

    assert results.count(True) == 1
    assert rollout_engine.get_rollout_status("plan_1").metrics.rollbacks_triggered == 1

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_lifecycle_errors(rollout_engine):
    with pytest.raises(InvalidTransitionError):
        await rollout_engine.pause_rollout("plan_1")
    with pytest.raises(InvalidTransitionError):
        await rollout_engine.rollback_rollout("plan_1", "not started")

    await rollout_engine.start_rollout("plan_1")
    with pytest.raises(InvalidTransitionError):
        await rollout_engine.start_rollout("plan_1")
    with pytest.raises(NotFoundError):
        await rollout_engine.start_rollout("missing")

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_mirrored_experiment_follows_plan(rollout_engine):
    await rollout_engine.start_rollout("plan_1")
    experiment = rollout_engine.experiments.get_experiment("rollout-plan_1")

    assert experiment.status.value == "active"
    assert experiment.control.id == "control"
    assert experiment.variant("treatment").weight == 10

    await rollout_engine.rollback_rollout("plan_1", "abort")
    assert rollout_engine.experiments.get_experiment("rollout-plan_1").status.value == "completed"

    await rollout_engine.stop()


def test_percentages_must_not_decrease(engine):
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    with pytest.raises(ConfigurationError):
        engine.create_rollout_plan(plan_config(phases=[
            {"name": "a", "percentage": 50, "duration": 1},
            {"name": "b", "percentage": 20, "duration": 1},
        ]))
    with pytest.raises(ConfigurationError):
        engine.create_rollout_plan(plan_config(phases=[]))


def test_plan_needs_existing_flag(engine):
    with pytest.raises(ConfigurationError):
        engine.create_rollout_plan(plan_config(feature="missing_flag"))


def test_status_is_a_snapshot(rollout_engine):
    snapshot = rollout_engine.get_rollout_status("plan_1")
    snapshot.current_percentage = 99

    assert rollout_engine.get_rollout_status("plan_1").current_percentage == 0


@pytest.mark.asyncio
async def test_list_active_rollouts(rollout_engine):
    assert rollout_engine.list_active_rollouts() == []

    await rollout_engine.start_rollout("plan_1")
    assert [p.id for p in rollout_engine.list_active_rollouts()] == ["plan_1"]

    await rollout_engine.pause_rollout("plan_1")
    assert rollout_engine.list_active_rollouts() == []

    await rollout_engine.stop()


@pytest.mark.asyncio
async def test_restore_rearms_active_plan(store, metrics):
    engine = ExperimentationEngine(store=store, metrics=metrics)
    engine.create_feature_flag({"id": "flag_checkout", "name": "new_checkout"})
    engine.create_rollout_plan(plan_config())
    await engine.start_rollout("plan_1")
    await engine.stop()

    restored = ExperimentationEngine(store=store, metrics=metrics)
    await restored.start(monitor=False)

    plan = restored.get_rollout_status("plan_1")
    assert plan.status == RolloutStatus.ACTIVE
    assert plan.current_percentage == 10
    assert restored.rollouts.has_pending_timer("plan_1")
    assert restored.flags.get_flag("flag_checkout").rollout_percentage == 10

    await restored.stop()


def test_criteria_met_checks_every_bound():
    criteria = PhaseCriteria(
        min_success_rate=0.95,
        max_error_rate=0.05,
        max_latency_increase=200,
        min_user_satisfaction=4.0,
        custom_metrics={"conversion": {"min": 0.1}},
    )
    healthy = MetricsSnapshot(
        success_rate=0.99, error_rate=0.01, latency=100, user_satisfaction=4.5, custom={"conversion": 0.2}
    )

    assert criteria_met(criteria, healthy) is True
    assert criteria_met(criteria, healthy.model_copy(update={"latency": 300})) is False
    assert criteria_met(criteria, healthy.model_copy(update={"user_satisfaction": None})) is False
    assert criteria_met(criteria, healthy.model_copy(update={"custom": {}})) is False
    assert criteria_met(criteria, healthy.model_copy(update={"custom": {"conversion": 0.05}})) is False
