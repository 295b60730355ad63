"""Tests for experimentation service."""
import threading
from unittest.mock import patch

import pytest

from cohortlab.models.experiment import ExperimentStatus, assignment_key
from cohortlab.services.engine import ExperimentationEngine
from cohortlab.services.errors import (
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)
from cohortlab.services.store import ASSIGNMENT_PREFIX, MemoryRecordStore


def experiment_config(**overrides):
    config = {
        "id": "test_exp",
        "name": "Test experiment",
        "variants": [
            {"id": "control", "name": "Control", "weight": 50, "is_control": True},
            {"id": "treatment", "name": "Treatment", "weight": 50},
        ],
        "allocation": {"type": "deterministic", "seed": "test_exp"},
    }
    config.update(overrides)
    return config


@pytest.fixture
def active_experiment(engine):
    engine.create_experiment(experiment_config())
    engine.start_experiment("test_exp")
    return "test_exp"


def test_deterministic_variant_assignment(engine, active_experiment):
    """Test that variant assignment is deterministic."""
    variant1 = engine.get_assignment(active_experiment, "user_123")
    variant2 = engine.get_assignment(active_experiment, "user_123")
    variant3 = engine.get_assignment(active_experiment, "user_123")

    assert variant1 == variant2 == variant3, "Variant assignment should be deterministic"


def test_deterministic_assignment_survives_new_engine():
    """Two independent engines bucket the same user identically."""
    first = ExperimentationEngine()
    second = ExperimentationEngine()
    for eng in (first, second):
        eng.create_experiment(experiment_config())
        eng.start_experiment("test_exp")

    for i in range(200):
        user_id = f"user_{i}"
        assert first.get_assignment("test_exp", user_id) == second.get_assignment("test_exp", user_id)


def test_random_assignment_is_sticky(engine):
    engine.create_experiment(experiment_config(allocation={"type": "random"}))
    engine.start_experiment("test_exp")

    first = {f"user_{i}": engine.get_assignment("test_exp", f"user_{i}") for i in range(100)}
    second = {f"user_{i}": engine.get_assignment("test_exp", f"user_{i}") for i in range(100)}

    assert first == second


def test_concurrent_assignment_records_one_variant(engine, store):
    """Threads racing on the same user all get the variant that was stored."""
    engine.create_experiment(experiment_config(allocation={"type": "random"}))
    engine.start_experiment("test_exp")
    barrier = threading.Barrier(16)
    results = []

    def assign():
        barrier.wait()
        results.append(engine.get_assignment("test_exp", "user_1"))

    threads = [threading.Thread(target=assign) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 16
    assert len(set(results)) == 1
    stored = store.scan_prefix(ASSIGNMENT_PREFIX)
    assert len(stored) == 1
    assert stored[0]["variant_id"] == results[0]


def test_assignment_locks_do_not_grow_with_users(engine, active_experiment):
    locks = list(engine.experiments._key_locks)

    for i in range(500):
        engine.get_assignment(active_experiment, f"user_{i}")
    engine.stop_experiment(active_experiment)

    assert engine.experiments._key_locks == locks


def test_variant_distribution(engine, active_experiment):
    """1000 users on a 50/50 experiment split 45-55%."""
    assignments = {}
    for i in range(1000):
        variant = engine.get_assignment(active_experiment, f"user_{i}")
        assignments[variant] = assignments.get(variant, 0) + 1

    control_pct = assignments.get("control", 0) / 1000 * 100
    assert 45 <= control_pct <= 55, f"Control should be ~50%, got {control_pct}%"


@pytest.mark.parametrize("allocation", ["deterministic", "random"])
def test_weights_are_conserved(engine, allocation):
    """Observed shares stay within 5 points of the configured weights over 10,000 users."""
    engine.create_experiment(experiment_config(
        variants=[
            {"id": "control", "name": "Control", "weight": 50, "is_control": True},
            {"id": "a", "name": "A", "weight": 30},
            {"id": "b", "name": "B", "weight": 20},
        ],
        allocation={"type": allocation, "seed": "weights"},
    ))
    engine.start_experiment("test_exp")

    counts = {"control": 0, "a": 0, "b": 0}
    for i in range(10000):
        counts[engine.get_assignment("test_exp", f"user_{i}")] += 1

    assert abs(counts["control"] / 100 - 50) <= 5
    assert abs(counts["a"] / 100 - 30) <= 5
    assert abs(counts["b"] / 100 - 20) <= 5


def test_zero_weight_variant_never_assigned(engine):
    engine.create_experiment(experiment_config(variants=[
        {"id": "control", "name": "Control", "weight": 100, "is_control": True},
        {"id": "off", "name": "Off", "weight": 0},
    ]))
    engine.start_experiment("test_exp")

    variants = {engine.get_assignment("test_exp", f"user_{i}") for i in range(500)}
    assert variants == {"control"}


def test_inactive_experiment_returns_none(engine):
    """Draft experiments assign nobody."""
    engine.create_experiment(experiment_config())

    assert engine.get_assignment("test_exp", "user_123") is None


def test_unknown_experiment_raises(engine):
    with pytest.raises(NotFoundError):
        engine.get_assignment("missing", "user_123")


def test_audience_percentage_zero_excludes_everyone(engine):
    engine.create_experiment(experiment_config(target_audience={"percentage": 0}))
    engine.start_experiment("test_exp")

    assert all(engine.get_assignment("test_exp", f"user_{i}") is None for i in range(50))


def test_audience_criteria_must_match(engine):
    engine.create_experiment(experiment_config(target_audience={
        "criteria": {"platform": "mobile", "location": ["US", "CA"]},
    }))
    engine.start_experiment("test_exp")

    assert engine.get_assignment("test_exp", "user_1", {"platform": "desktop", "location": "US"}) is None
    assert engine.get_assignment("test_exp", "user_2", {"platform": "mobile", "location": "FR"}) is None
    assert engine.get_assignment("test_exp", "user_3", {"platform": "mobile", "location": "CA"}) is not None


def test_user_type_all_matches_any_context(engine):
    engine.create_experiment(experiment_config(target_audience={"criteria": {"user_type": "all"}}))
    engine.start_experiment("test_exp")

    assert engine.get_assignment("test_exp", "user_1", {}) is not None


def test_exclusions(engine):
    engine.create_experiment(experiment_config(target_audience={"exclusions": ["user_blocked", "is_employee"]}))
    engine.start_experiment("test_exp")

    assert engine.get_assignment("test_exp", "user_blocked") is None
    assert engine.get_assignment("test_exp", "user_2", {"is_employee": True}) is None
    assert engine.get_assignment("test_exp", "user_3", {"is_employee": False}) is not None


def test_ineligible_user_is_not_cached(engine):
    """A user outside the audience gets a fresh check on the next call."""
    engine.create_experiment(experiment_config(target_audience={"criteria": {"platform": "mobile"}}))
    engine.start_experiment("test_exp")

    assert engine.get_assignment("test_exp", "user_1", {"platform": "desktop"}) is None
    assert engine.get_assignment("test_exp", "user_1", {"platform": "mobile"}) is not None


@pytest.mark.parametrize("variants", [
    [],
    [
        {"id": "control", "name": "Control", "weight": 50, "is_control": True},
        {"id": "treatment", "name": "Treatment", "weight": 40},
    ],
    [
        {"id": "control", "name": "Control", "weight": 50, "is_control": True},
        {"id": "treatment", "name": "Treatment", "weight": 50, "is_control": True},
    ],
    [
        {"id": "same", "name": "Control", "weight": 50, "is_control": True},
        {"id": "same", "name": "Treatment", "weight": 50},
    ],
])
def test_invalid_experiments_rejected(engine, variants):
    with pytest.raises(ConfigurationError):
        engine.create_experiment(experiment_config(variants=variants))


def test_gradual_allocation_requires_control(engine):
    with pytest.raises(ConfigurationError):
        engine.create_experiment(experiment_config(
            variants=[
                {"id": "a", "name": "A", "weight": 50},
                {"id": "b", "name": "B", "weight": 50},
            ],
            allocation={
                "type": "gradual",
                "gradual_rollout": {"initial_percentage": 10, "increment_percentage": 10, "increment_interval": 24},
            },
        ))


def test_random_allocation_without_control_allowed(engine):
    experiment = engine.create_experiment(experiment_config(
        variants=[
            {"id": "a", "name": "A", "weight": 50},
            {"id": "b", "name": "B", "weight": 50},
        ],
        allocation={"type": "random"},
    ))

    assert experiment.control is None


def test_duplicate_experiment_rejected(engine):
    engine.create_experiment(experiment_config())
    with pytest.raises(ConfigurationError):
        engine.create_experiment(experiment_config())


def test_created_experiment_is_draft(engine):
    experiment = engine.create_experiment(experiment_config(status="active"))
    assert experiment.status == ExperimentStatus.DRAFT


def test_gradual_exposure_grows_over_time(engine, clock):
    engine.create_experiment(experiment_config(allocation={
        "type": "gradual",
        "gradual_rollout": {
            "initial_percentage": 10,
            "increment_percentage": 20,
            "increment_interval": 24,
            "max_percentage": 60,
        },
    }))
    experiment = engine.start_experiment("test_exp")
    allocator = engine.experiments.allocator

    assert allocator.current_gradual_percentage(experiment) == 10
    clock.advance(hours=49)
    assert allocator.current_gradual_percentage(experiment) == 50
    clock.advance(hours=240)
    assert allocator.current_gradual_percentage(experiment) == 60


def test_gradual_allocation_keeps_most_users_on_control_early(engine):
    engine.create_experiment(experiment_config(allocation={
        "type": "gradual",
        "gradual_rollout": {"initial_percentage": 10, "increment_percentage": 10, "increment_interval": 24},
    }))
    engine.start_experiment("test_exp")

    treatment = sum(
        1 for i in range(2000)
        if engine.get_assignment("test_exp", f"user_{i}") == "treatment"
    )
    # ~10% exposed, half of those to treatment
    assert treatment < 200


def test_track_records_event_with_assigned_variant(engine, active_experiment):
    variant = engine.get_assignment(active_experiment, "user_1")

    event = engine.track(active_experiment, "user_1", "conversion", value=12.5, metadata={"page": "checkout"})

    assert event is not None
    assert event.variant_id == variant
    assert event.value == 12.5
    assert engine.experiments.get_events(active_experiment) == [event]


def test_track_drops_unassigned_user(engine, active_experiment):
    assert engine.track(active_experiment, "stranger", "conversion") is None
    assert engine.experiments.get_events(active_experiment) == []


def test_track_unknown_experiment_raises(engine):
    with pytest.raises(NotFoundError):
        engine.track("missing", "user_1", "conversion")


def test_stop_experiment_ends_assignments(engine, active_experiment):
    for i in range(20):
        engine.get_assignment(active_experiment, f"user_{i}")
        engine.track(active_experiment, f"user_{i}", "conversion", value=1.0)

    results = engine.stop_experiment(active_experiment, reason="done")

    experiment = engine.experiments.get_experiment(active_experiment)
    assert experiment.status == ExperimentStatus.COMPLETED
    assert experiment.end_date is not None
    assert sum(results.sample_sizes.values()) == 20
    assert all(not a.is_active for a in engine.experiments.assignments.values())
    assert engine.get_assignment(active_experiment, "user_1") is None
    assert engine.track(active_experiment, "user_1", "conversion") is None


def test_stop_is_idempotent(engine, active_experiment):
    first = engine.stop_experiment(active_experiment)
    second = engine.stop_experiment(active_experiment)

    assert first == second


def test_completed_experiment_cannot_restart(engine, active_experiment):
    engine.stop_experiment(active_experiment)
    with pytest.raises(InvalidTransitionError):
        engine.start_experiment(active_experiment)


def test_reset_assignment_allows_reallocation(engine, active_experiment):
    engine.get_assignment(active_experiment, "user_1")

    assert engine.reset_assignment(active_experiment, "user_1") is True
    assert engine.reset_assignment(active_experiment, "user_1") is False
    assert engine.get_assignment(active_experiment, "user_1") is not None


def test_rollback_moves_users_to_control(engine, active_experiment):
    for i in range(100):
        engine.get_assignment(active_experiment, f"user_{i}")

    assert engine.experiments.rollback_experiment(active_experiment, "error spike") is True

    experiment = engine.experiments.get_experiment(active_experiment)
    assert experiment.status == ExperimentStatus.PAUSED
    assert {a.variant_id for a in engine.experiments.assignments.values()} == {"control"}
    assert engine.experiments.rollback_experiment(active_experiment, "again") is False


def test_failed_assignment_save_is_retried(engine, store, active_experiment):
    """A store outage still returns a variant and saves it on the next lookup."""
    key = f"{ASSIGNMENT_PREFIX}{assignment_key(active_experiment, 'user_1')}"

    with patch.object(store, "put", side_effect=CollaboratorFailure("store down")):
        variant = engine.get_assignment(active_experiment, "user_1")

    assert variant in ("control", "treatment")
    assert store.get(key) is None

    assert engine.get_assignment(active_experiment, "user_1") == variant
    assert store.get(key)["variant_id"] == variant


def test_state_restored_from_store(store, active_experiment, engine):
    variant = engine.get_assignment(active_experiment, "user_1")
    engine.track(active_experiment, "user_1", "conversion")

    restored = ExperimentationEngine(store=store)
    restored.restore()

    assert restored.experiments.get_experiment(active_experiment).status == ExperimentStatus.ACTIVE
    assert restored.get_assignment(active_experiment, "user_1") == variant
    assert len(restored.experiments.get_events(active_experiment)) == 1


def test_engines_do_not_share_state():
    first = ExperimentationEngine(store=MemoryRecordStore())
    second = ExperimentationEngine(store=MemoryRecordStore())
    first.create_experiment(experiment_config())

    with pytest.raises(NotFoundError):
        second.experiments.get_experiment("test_exp")
