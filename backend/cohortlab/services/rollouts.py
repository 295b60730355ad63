"""
Rollout manager - phase state machine for progressive feature rollouts.

planned -> active <-> paused -> completed
active | paused -> rolled_back (terminal)

Each phase pins the target flag's rollout percentage. A cancellable timer per
plan evaluates the phase once its duration has elapsed; healthy metrics
advance the plan, a critical breach rolls it back, anything else pauses it for
manual review.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from cohortlab.models.common import Severity, utcnow
from cohortlab.models.experiment import (
    AllocationStrategy,
    AllocationType,
    Experiment,
    GradualRollout,
    Safeguards,
    TargetAudience,
    AudienceCriteria,
    Variant,
)
from cohortlab.models.metrics import MetricsSnapshot
from cohortlab.models.rollout import (
    PhaseCriteria,
    PhaseTransition,
    RolloutPlan,
    RolloutStatus,
)
from cohortlab.services.errors import (
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)
from cohortlab.services.experiments import ExperimentService
from cohortlab.services.flags import FeatureFlagService
from cohortlab.services.metrics import MetricsProvider
from cohortlab.services.store import ROLLOUT_PREFIX, RecordStore, Repository

logger = structlog.get_logger()


def criteria_met(criteria: PhaseCriteria, metrics: MetricsSnapshot) -> bool:
    """Check live metrics against a phase's success criteria."""
    if metrics.success_rate < criteria.min_success_rate:
        return False
    if metrics.error_rate > criteria.max_error_rate:
        return False
    if metrics.latency > criteria.max_latency_increase:
        return False
    if criteria.min_user_satisfaction is not None:
        if metrics.user_satisfaction is None or metrics.user_satisfaction < criteria.min_user_satisfaction:
            return False

    for name, bounds in criteria.custom_metrics.items():
        value = metrics.value(name)
        if value is None:
            return False
        if bounds.min is not None and value < bounds.min:
            return False
        if bounds.max is not None and value > bounds.max:
            return False

    return True


def validate_plan(plan: RolloutPlan) -> None:
    if not plan.phases:
        raise ConfigurationError("Rollout plan needs at least one phase")

    previous = 0.0
    for phase in plan.phases:
        if phase.percentage < previous:
            raise ConfigurationError(
                f"Phase percentages must be non-decreasing ({phase.name}: {phase.percentage} < {previous})"
            )
        previous = phase.percentage


class RolloutManager:
    """
    Drives rollout plans through their phases.

    Transitions and rollbacks of one plan are serialized by a per-plan lock;
    rollback is idempotent so only the first of several concurrent triggers
    takes effect.
    """

    def __init__(
        self,
        store: RecordStore,
        flags: FeatureFlagService,
        experiments: ExperimentService,
        metrics: MetricsProvider,
        time_unit_seconds: float = 3600.0,
        metrics_retry_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.flags = flags
        self.experiments = experiments
        self.metrics = metrics
        self.time_unit_seconds = time_unit_seconds
        self.metrics_retry_seconds = metrics_retry_seconds
        self.clock = clock

        self.plans: Dict[str, RolloutPlan] = {}
        self._repo = Repository(store, ROLLOUT_PREFIX, RolloutPlan)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    # Plan management

    def create_rollout_plan(self, config: Union[RolloutPlan, Dict[str, Any]]) -> RolloutPlan:
        """
        Create a rollout plan in planned status.

        Raises:
            ConfigurationError: If phases are empty or decreasing, the target
                flag does not exist, or the id is taken
        """
        try:
            plan = config if isinstance(config, RolloutPlan) else RolloutPlan.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid rollout plan: {e}") from e

        validate_plan(plan)
        if plan.id in self.plans:
            raise ConfigurationError(f"Rollout {plan.id} already exists")
        try:
            self.flags.get_flag(plan.feature)
        except NotFoundError as e:
            raise ConfigurationError(f"Rollout target flag {plan.feature} does not exist") from e

        plan = plan.model_copy(update={
            "status": RolloutStatus.PLANNED,
            "current_phase": 0,
            "current_percentage": 0.0,
        })
        self.plans[plan.id] = plan
        self._save(plan)

        logger.info(
            "rollout_created",
            rollout_id=plan.id,
            feature=plan.feature,
            phases=[phase.percentage for phase in plan.phases]
        )
        return plan

    async def start_rollout(self, plan_id: str) -> RolloutPlan:
        """Start a planned rollout at its first phase."""
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            if plan.status != RolloutStatus.PLANNED:
                raise InvalidTransitionError(f"Rollout {plan_id} is {plan.status.value}, expected planned")

            self._start_mirrored_experiment(plan)
            plan.status = RolloutStatus.ACTIVE
            plan.start_date = self.clock()

            logger.info("rollout_started", rollout_id=plan_id, feature=plan.feature)
            self._transition_to_phase(plan, 0, reason="rollout_started")
        return self.get_rollout_status(plan_id)

    async def pause_rollout(self, plan_id: str) -> RolloutPlan:
        """Pause an active rollout, keeping its phase and percentage."""
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            self._pause_locked(plan, reason="manual")
        return self.get_rollout_status(plan_id)

    async def resume_rollout(self, plan_id: str) -> RolloutPlan:
        """Resume a paused rollout; the current phase is re-evaluated after its duration."""
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            if plan.status == RolloutStatus.PLANNED:
                raise InvalidTransitionError(f"Rollout {plan_id} has not been started")
            if plan.status == RolloutStatus.PAUSED:
                plan.status = RolloutStatus.ACTIVE
                self._schedule_evaluation(plan, self._phase_delay(plan))
                self._save(plan)
                logger.info("rollout_resumed", rollout_id=plan_id, phase=plan.current_phase)
        return self.get_rollout_status(plan_id)

    async def rollback_rollout(self, plan_id: str, reason: str) -> RolloutPlan:
        """
        Roll a rollout back. Terminal and idempotent.

        Disables the target flag, zeroes its percentage and stops the
        mirrored experiment.
        """
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            if plan.status == RolloutStatus.PLANNED:
                raise InvalidTransitionError(f"Rollout {plan_id} has not been started")
            self._rollback_locked(plan, reason)
        return self.get_rollout_status(plan_id)

    async def force_rollback(self, plan_id: str, reason: str) -> bool:
        """
        Roll back if the plan is still active or paused.

        Returns:
            True if this call performed the rollback
        """
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            return self._rollback_locked(plan, reason)

    def get_rollout_status(self, plan_id: str) -> RolloutPlan:
        """Snapshot of a plan."""
        return self._get(plan_id).model_copy(deep=True)

    def list_active_rollouts(self) -> List[RolloutPlan]:
        return [p.model_copy(deep=True) for p in self.plans.values() if p.status == RolloutStatus.ACTIVE]

    def list_rollouts(self) -> List[RolloutPlan]:
        return [p.model_copy(deep=True) for p in self.plans.values()]

    # Phase evaluation

    async def evaluate_phase_transition(self, plan_id: str, expected_phase: Optional[int] = None) -> RolloutPlan:
        """
        Decide whether the current phase advances, pauses or rolls back.

        ``expected_phase`` guards against acting on a plan that already moved
        on since the evaluation was scheduled.
        """
        plan = self._get(plan_id)
        async with self._lock_for(plan_id):
            if plan.status != RolloutStatus.ACTIVE:
                return plan.model_copy(deep=True)
            if expected_phase is not None and plan.current_phase != expected_phase:
                return plan.model_copy(deep=True)

            metrics = await self._fetch_metrics(plan_id)
            if metrics is None:
                logger.warning(
                    "rollout_metrics_unavailable",
                    rollout_id=plan_id,
                    phase=plan.current_phase,
                    retry_seconds=self.metrics_retry_seconds
                )
                self._schedule_evaluation(plan, self.metrics_retry_seconds)
                return plan.model_copy(deep=True)

            self._record_metrics(plan, metrics)
            phase = plan.phases[plan.current_phase]

            if criteria_met(phase.criteria, metrics):
                self._transition_to_phase(plan, plan.current_phase + 1, reason="criteria_met", metrics=metrics)
            elif self._critical_breach(plan, metrics):
                self._rollback_locked(plan, "Phase criteria not met", metrics=metrics)
            else:
                logger.warning(
                    "rollout_phase_criteria_not_met",
                    rollout_id=plan_id,
                    phase=plan.current_phase,
                    metrics=metrics.as_dict()
                )
                self._pause_locked(plan, reason="phase_criteria_not_met")

        return self.get_rollout_status(plan_id)

    def _transition_to_phase(
        self,
        plan: RolloutPlan,
        phase_index: int,
        reason: str,
        metrics: Optional[MetricsSnapshot] = None
    ) -> None:
        if phase_index >= len(plan.phases):
            self._complete(plan, metrics)
            return

        phase = plan.phases[phase_index]
        plan.metrics.phase_transitions.append(PhaseTransition(
            from_phase=plan.current_phase,
            to_phase=phase_index,
            timestamp=self.clock(),
            reason=reason,
            metrics=metrics.as_dict() if metrics else plan.metrics.snapshot(),
        ))

        # Plan and flag change together, no await in between
        plan.current_phase = phase_index
        plan.current_percentage = phase.percentage
        self._set_flag(plan, phase.percentage, enabled=True)

        self._schedule_evaluation(plan, phase.duration * self.time_unit_seconds)
        self._save(plan)

        logger.info(
            "rollout_phase_transition",
            rollout_id=plan.id,
            phase=phase_index,
            phase_name=phase.name,
            percentage=phase.percentage,
            reason=reason
        )

    def _complete(self, plan: RolloutPlan, metrics: Optional[MetricsSnapshot]) -> None:
        plan.metrics.phase_transitions.append(PhaseTransition(
            from_phase=plan.current_phase,
            to_phase=len(plan.phases),
            timestamp=self.clock(),
            reason="rollout_complete",
            metrics=metrics.as_dict() if metrics else plan.metrics.snapshot(),
        ))
        plan.status = RolloutStatus.COMPLETED
        plan.current_percentage = 100.0
        plan.actual_completion = self.clock()
        self._set_flag(plan, 100.0, enabled=True)
        self._cancel_timer(plan.id)
        self._stop_mirrored_experiment(plan, "rollout_complete")
        self._save(plan)

        logger.info("rollout_completed", rollout_id=plan.id, feature=plan.feature)

    def _pause_locked(self, plan: RolloutPlan, reason: str) -> None:
        if plan.status == RolloutStatus.PLANNED:
            raise InvalidTransitionError(f"Rollout {plan.id} has not been started")
        if plan.status != RolloutStatus.ACTIVE:
            return

        plan.status = RolloutStatus.PAUSED
        self._cancel_timer(plan.id)
        self._save(plan)
        logger.info("rollout_paused", rollout_id=plan.id, phase=plan.current_phase, reason=reason)

    def _rollback_locked(self, plan: RolloutPlan, reason: str, metrics: Optional[MetricsSnapshot] = None) -> bool:
        if plan.status not in (RolloutStatus.ACTIVE, RolloutStatus.PAUSED):
            return False

        plan.metrics.phase_transitions.append(PhaseTransition(
            from_phase=plan.current_phase,
            to_phase=plan.current_phase,
            timestamp=self.clock(),
            reason=f"rollback: {reason}",
            metrics=metrics.as_dict() if metrics else plan.metrics.snapshot(),
        ))
        plan.status = RolloutStatus.ROLLED_BACK
        plan.current_percentage = 0.0
        plan.metrics.rollbacks_triggered += 1
        self._set_flag(plan, 0.0, enabled=False)
        self._cancel_timer(plan.id)
        self._stop_mirrored_experiment(plan, f"rollback: {reason}")
        self._save(plan)

        logger.warning(
            "rollout_rolled_back",
            rollout_id=plan.id,
            feature=plan.feature,
            phase=plan.current_phase,
            reason=reason
        )
        return True

    def _critical_breach(self, plan: RolloutPlan, metrics: MetricsSnapshot) -> bool:
        return any(
            condition.severity == Severity.CRITICAL and condition.is_breached(metrics.value(condition.metric))
            for condition in plan.rollback_conditions
        )

    async def _fetch_metrics(self, plan_id: str) -> Optional[MetricsSnapshot]:
        try:
            return await self.metrics.get_current_metrics(plan_id)
        except CollaboratorFailure as e:
            logger.warning("rollout_metrics_fetch_failed", rollout_id=plan_id, error=str(e))
            return None
        except Exception as e:
            logger.error(
                "rollout_metrics_fetch_failed",
                rollout_id=plan_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return None

    @staticmethod
    def _record_metrics(plan: RolloutPlan, metrics: MetricsSnapshot) -> None:
        plan.metrics.error_rate = metrics.error_rate
        plan.metrics.success_rate = metrics.success_rate
        plan.metrics.latency = metrics.latency
        if metrics.user_satisfaction is not None:
            plan.metrics.user_satisfaction = metrics.user_satisfaction

    # Mirrored experiment

    def _start_mirrored_experiment(self, plan: RolloutPlan) -> None:
        experiment_id = plan.experiment_id
        if experiment_id not in self.experiments.experiments:
            self.experiments.create_experiment(self._mirrored_experiment(plan))
        self.experiments.start_experiment(experiment_id)

    def _stop_mirrored_experiment(self, plan: RolloutPlan, reason: str) -> None:
        try:
            self.experiments.stop_experiment(plan.experiment_id, reason)
        except NotFoundError:
            logger.warning("rollout_experiment_missing", rollout_id=plan.id)

    @staticmethod
    def _mirrored_experiment(plan: RolloutPlan) -> Experiment:
        first = plan.phases[0].percentage

        def threshold_for(metric: str, default: float) -> float:
            for condition in plan.rollback_conditions:
                if condition.metric in (metric, _camel(metric)):
                    return condition.threshold
            return default

        return Experiment(
            id=plan.experiment_id,
            name=f"Rollout: {plan.name}",
            description=f"A/B test for gradual rollout of {plan.feature}",
            variants=[
                Variant(
                    id="control",
                    name="Control (Old Version)",
                    weight=100 - first,
                    config={"features": {plan.feature: False}},
                    is_control=True,
                ),
                Variant(
                    id="treatment",
                    name="Treatment (New Feature)",
                    weight=first,
                    config={"features": {plan.feature: True}},
                ),
            ],
            target_audience=TargetAudience(
                criteria=AudienceCriteria(user_type="beta" if plan.strategy.target_audience == "beta" else "all"),
                percentage=100,
            ),
            allocation=AllocationStrategy(
                type=AllocationType.GRADUAL,
                gradual_rollout=GradualRollout(
                    initial_percentage=first,
                    increment_percentage=10,
                    increment_interval=24,
                    max_percentage=100,
                ),
            ),
            primary_metric="conversion",
            secondary_metrics=["engagement", "satisfaction"],
            safeguards=Safeguards(
                max_error_rate=threshold_for("error_rate", 0.1),
                max_latency_increase=threshold_for("latency", 500),
            ),
            rollback_triggers=[condition.model_copy() for condition in plan.rollback_conditions],
        )

    # Timers

    def _schedule_evaluation(self, plan: RolloutPlan, delay: float) -> None:
        self._cancel_timer(plan.id)
        self._timers[plan.id] = asyncio.create_task(
            self._run_timer(plan.id, plan.current_phase, delay),
            name=f"rollout-timer-{plan.id}",
        )

    async def _run_timer(self, plan_id: str, phase_index: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(plan_id) is asyncio.current_task():
            del self._timers[plan_id]
        try:
            await self.evaluate_phase_transition(plan_id, expected_phase=phase_index)
        except Exception as e:
            logger.error(
                "rollout_evaluation_failed",
                rollout_id=plan_id,
                error=str(e),
                error_type=type(e).__name__
            )

    def _cancel_timer(self, plan_id: str) -> None:
        task = self._timers.pop(plan_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def has_pending_timer(self, plan_id: str) -> bool:
        task = self._timers.get(plan_id)
        return task is not None and not task.done()

    def _phase_delay(self, plan: RolloutPlan) -> float:
        return plan.phases[plan.current_phase].duration * self.time_unit_seconds

    def arm_timers(self) -> None:
        """Re-schedule evaluations of active plans for their remaining phase time."""
        now = self.clock()
        for plan in self.plans.values():
            if plan.status != RolloutStatus.ACTIVE or plan.id in self._timers:
                continue
            if plan.metrics.phase_transitions:
                since = plan.metrics.phase_transitions[-1].timestamp
            else:
                since = plan.start_date or now
            elapsed = (now - since).total_seconds()
            self._schedule_evaluation(plan, max(0.0, self._phase_delay(plan) - elapsed))

    async def shutdown(self) -> None:
        """Cancel every pending phase timer."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Persistence

    def restore(self) -> None:
        for plan in self._repo.scan():
            self.plans[plan.id] = plan
        logger.info("rollouts_restored", rollouts=len(self.plans))

    def _save(self, plan: RolloutPlan) -> None:
        try:
            self._repo.put(plan.id, plan)
        except CollaboratorFailure as e:
            logger.warning("rollout_save_failed", rollout_id=plan.id, error=str(e))

    def _set_flag(self, plan: RolloutPlan, percentage: float, enabled: bool) -> None:
        try:
            self.flags.set_rollout_percentage(plan.feature, percentage, enabled=enabled)
        except NotFoundError:
            logger.error("rollout_flag_missing", rollout_id=plan.id, feature=plan.feature)

    def _get(self, plan_id: str) -> RolloutPlan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Rollout", plan_id)
        return plan

    def _lock_for(self, plan_id: str) -> asyncio.Lock:
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[plan_id] = lock
        return lock


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
