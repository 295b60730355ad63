"""
Experimentation engine - the context object owning every registry.

One engine instance holds its own experiments, flags, rollout plans, timers
and safety monitor, so separate instances (one per process, one per test)
never share state.
"""
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from cohortlab.config import Settings, get_settings
from cohortlab.models.common import utcnow
from cohortlab.models.experiment import Experiment, ExperimentEvent, ExperimentResults
from cohortlab.models.flag import FeatureFlag
from cohortlab.models.rollout import RolloutPlan
from cohortlab.services.allocation import VariantAllocator
from cohortlab.services.experiments import ExperimentService
from cohortlab.services.flags import FeatureFlagService
from cohortlab.services.hashing import CohortHasher
from cohortlab.services.metrics import MetricsProvider, StaticMetricsProvider, build_metrics_provider
from cohortlab.services.rollouts import RolloutManager
from cohortlab.services.safety import SafetyMonitor
from cohortlab.services.store import MemoryRecordStore, RecordStore, build_record_store

logger = structlog.get_logger()


class ExperimentationEngine:
    """Facade over the experiment, flag, rollout and safety services."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        metrics: Optional[MetricsProvider] = None,
        hash_algorithm: str = "sha256",
        safety_interval_seconds: float = 300.0,
        phase_time_unit_seconds: float = 3600.0,
        metrics_retry_seconds: float = 300.0,
        base_context: Optional[Dict[str, Any]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or MemoryRecordStore()
        self.metrics = metrics or StaticMetricsProvider()
        self.hasher = CohortHasher(hash_algorithm)
        rng = rng or random.Random()

        self.experiments = ExperimentService(
            self.store,
            VariantAllocator(self.hasher, rng=rng, clock=clock),
            clock=clock,
        )
        self.flags = FeatureFlagService(self.store, self.hasher, base_context=base_context, rng=rng)
        self.rollouts = RolloutManager(
            self.store,
            self.flags,
            self.experiments,
            self.metrics,
            time_unit_seconds=phase_time_unit_seconds,
            metrics_retry_seconds=metrics_retry_seconds,
            clock=clock,
        )
        self.safety = SafetyMonitor(
            self.experiments,
            self.rollouts,
            self.metrics,
            interval_seconds=safety_interval_seconds,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ExperimentationEngine":
        settings = settings or get_settings()
        return cls(
            store=build_record_store(settings),
            metrics=build_metrics_provider(settings),
            hash_algorithm=settings.hash_algorithm,
            safety_interval_seconds=settings.safety_monitor_interval_seconds,
            phase_time_unit_seconds=settings.phase_time_unit_seconds,
            metrics_retry_seconds=settings.metrics_retry_seconds,
        )

    # Lifecycle

    def restore(self) -> None:
        """Reload every entity from the record store."""
        self.flags.restore()
        self.experiments.restore()
        self.rollouts.restore()

    async def start(self, restore: bool = True, monitor: bool = True) -> None:
        """Restore state, re-arm phase timers and start the safety monitor."""
        if restore:
            self.restore()
        self.rollouts.arm_timers()
        if monitor:
            self.safety.start()
        logger.info("engine_started", monitor=monitor)

    async def stop(self) -> None:
        """Cancel every background task and close collaborators."""
        await self.safety.stop()
        await self.rollouts.shutdown()
        await self.metrics.close()
        logger.info("engine_stopped")

    # Experiments

    def create_experiment(self, config: Union[Experiment, Dict[str, Any]]) -> Experiment:
        return self.experiments.create_experiment(config)

    def start_experiment(self, experiment_id: str) -> Experiment:
        return self.experiments.start_experiment(experiment_id)

    def stop_experiment(self, experiment_id: str, reason: str = "manual") -> ExperimentResults:
        return self.experiments.stop_experiment(experiment_id, reason)

    def get_assignment(
        self,
        experiment_id: str,
        user_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        return self.experiments.get_assignment(experiment_id, user_id, context)

    def reset_assignment(self, experiment_id: str, user_id: str) -> bool:
        return self.experiments.reset_assignment(experiment_id, user_id)

    def track(
        self,
        experiment_id: str,
        user_id: str,
        event_type: str,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[ExperimentEvent]:
        return self.experiments.track(experiment_id, user_id, event_type, value, metadata)

    def get_results(self, experiment_id: str) -> ExperimentResults:
        return self.experiments.get_results(experiment_id)

    # Feature flags

    def create_feature_flag(self, config: Union[FeatureFlag, Dict[str, Any]]) -> FeatureFlag:
        return self.flags.create_flag(config)

    def update_feature_flag(self, flag_id: str, **changes) -> FeatureFlag:
        return self.flags.update_flag(flag_id, **changes)

    def is_enabled(self, name: str, context: Optional[Dict[str, Any]] = None) -> bool:
        return self.flags.is_enabled(name, context)

    def get_feature_flag(self, flag_id: str) -> FeatureFlag:
        return self.flags.get_flag(flag_id)

    def list_feature_flags(self) -> List[FeatureFlag]:
        return self.flags.list_flags()

    def get_variant(self, name: str, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.flags.get_variant(name, context)

    def evaluate_flag(self, name: str, context: Optional[Dict[str, Any]] = None) -> Tuple[bool, Optional[str]]:
        return self.flags.evaluate(name, context)

    # Rollouts

    def create_rollout_plan(self, config: Union[RolloutPlan, Dict[str, Any]]) -> RolloutPlan:
        return self.rollouts.create_rollout_plan(config)

    async def start_rollout(self, plan_id: str) -> RolloutPlan:
        return await self.rollouts.start_rollout(plan_id)

    async def pause_rollout(self, plan_id: str) -> RolloutPlan:
        return await self.rollouts.pause_rollout(plan_id)

    async def resume_rollout(self, plan_id: str) -> RolloutPlan:
        return await self.rollouts.resume_rollout(plan_id)

    async def rollback_rollout(self, plan_id: str, reason: str) -> RolloutPlan:
        return await self.rollouts.rollback_rollout(plan_id, reason)

    def get_rollout_status(self, plan_id: str) -> RolloutPlan:
        return self.rollouts.get_rollout_status(plan_id)

    def list_active_rollouts(self) -> List[RolloutPlan]:
        return self.rollouts.list_active_rollouts()

    def list_rollouts(self) -> List[RolloutPlan]:
        return self.rollouts.list_rollouts()
