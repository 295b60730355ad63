"""Safety monitor - polls live metrics and forces rollback on critical breaches."""
import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from cohortlab.models.common import RollbackTrigger, Severity, utcnow
from cohortlab.models.experiment import Experiment
from cohortlab.models.metrics import MetricsSnapshot
from cohortlab.services.errors import CollaboratorFailure
from cohortlab.services.experiments import ExperimentService
from cohortlab.services.metrics import MetricsProvider
from cohortlab.services.rollouts import RolloutManager

logger = structlog.get_logger()


def safeguard_violation(experiment: Experiment, metrics: MetricsSnapshot) -> Optional[str]:
    """Reason string if a hard safeguard is violated, else None."""
    safeguards = experiment.safeguards
    if metrics.error_rate > safeguards.max_error_rate:
        return "High error rate detected"
    if metrics.latency > safeguards.max_latency_increase:
        return "High latency detected"
    if metrics.success_rate < safeguards.min_success_rate:
        return "Low success rate detected"
    return None


class SafetyMonitor:
    """
    Periodic check of every active rollout and experiment.

    A trigger fires once its breach has been observed continuously for its
    ``duration`` minutes. Critical triggers roll back; warnings are logged.
    Experiments are checked at most once per their safeguards
    ``monitoring_interval`` minutes.
    """

    def __init__(
        self,
        experiments: ExperimentService,
        rollouts: RolloutManager,
        metrics: MetricsProvider,
        interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.experiments = experiments
        self.rollouts = rollouts
        self.metrics = metrics
        self.interval_seconds = interval_seconds
        self.clock = clock

        self._breach_started: Dict[Tuple[str, int], datetime] = {}
        self._last_checked: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="safety-monitor")
        logger.info("safety_monitor_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("safety_monitor_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.check_once()
            except Exception as e:
                logger.error(
                    "safety_monitor_tick_failed",
                    error=str(e),
                    error_type=type(e).__name__
                )

    async def check_once(self) -> List[Tuple[str, str]]:
        """
        Run one monitoring pass.

        Returns:
            (entity id, reason) for every rollback this pass performed
        """
        rolled_back: List[Tuple[str, str]] = []

        for plan in self.rollouts.list_active_rollouts():
            metrics = await self._fetch(plan.id)
            if metrics is None:
                continue
            reason = self._fired_trigger(plan.id, plan.rollback_conditions, metrics)
            if reason is None:
                continue
            logger.warning("safety_violation", rollout_id=plan.id, reason=reason, metrics=metrics.as_dict())
            if await self.rollouts.force_rollback(plan.id, reason):
                rolled_back.append((plan.id, reason))
            self._forget(plan.id)

        for experiment in self.experiments.list_active_experiments():
            if not self._due(experiment):
                continue
            metrics = await self._fetch(experiment.id)
            if metrics is None:
                continue
            reason = safeguard_violation(experiment, metrics)
            if reason is None:
                reason = self._fired_trigger(experiment.id, experiment.rollback_triggers, metrics)
            if reason is None:
                continue
            logger.warning("safety_violation", experiment_id=experiment.id, reason=reason, metrics=metrics.as_dict())
            if self.experiments.rollback_experiment(experiment.id, reason):
                rolled_back.append((experiment.id, reason))
            self._forget(experiment.id)
            self._last_checked.pop(experiment.id, None)

        return rolled_back

    def _fired_trigger(
        self,
        entity_id: str,
        triggers: List[RollbackTrigger],
        metrics: MetricsSnapshot
    ) -> Optional[str]:
        now = self.clock()
        for index, trigger in enumerate(triggers):
            key = (entity_id, index)
            value = metrics.value(trigger.metric)

            if not trigger.is_breached(value):
                self._breach_started.pop(key, None)
                continue

            started = self._breach_started.setdefault(key, now)
            sustained = (now - started).total_seconds() >= trigger.duration * 60
            if not sustained:
                continue

            if trigger.severity == Severity.CRITICAL:
                return f"Rollback condition triggered: {trigger.metric}"

            logger.warning(
                "safety_trigger_warning",
                entity_id=entity_id,
                metric=trigger.metric,
                value=value,
                threshold=trigger.threshold
            )
        return None

    async def _fetch(self, entity_id: str) -> Optional[MetricsSnapshot]:
        try:
            return await self.metrics.get_current_metrics(entity_id)
        except CollaboratorFailure as e:
            logger.warning("safety_metrics_fetch_failed", entity_id=entity_id, error=str(e))
            return None
        except Exception as e:
            logger.error(
                "safety_metrics_fetch_failed",
                entity_id=entity_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return None

    def _due(self, experiment: Experiment) -> bool:
        now = self.clock()
        last = self._last_checked.get(experiment.id)
        # One second of slack for loop timer jitter
        if last is not None and (now - last).total_seconds() < experiment.safeguards.monitoring_interval * 60 - 1:
            return False
        self._last_checked[experiment.id] = now
        return True

    def _forget(self, entity_id: str) -> None:
        for key in [k for k in self._breach_started if k[0] == entity_id]:
            del self._breach_started[key]
