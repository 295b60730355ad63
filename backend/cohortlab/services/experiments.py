"""Experimentation service for A/B testing."""
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

import structlog
from pydantic import ValidationError

from cohortlab.models.common import utcnow
from cohortlab.models.experiment import (
    AllocationType,
    Assignment,
    Experiment,
    ExperimentEvent,
    ExperimentResults,
    ExperimentStatus,
    assignment_key,
)
from cohortlab.services.allocation import VariantAllocator
from cohortlab.services.errors import (
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)
from cohortlab.services.statistics import compute_results
from cohortlab.services.store import (
    ASSIGNMENT_PREFIX,
    EVENT_PREFIX,
    EXPERIMENT_PREFIX,
    RecordStore,
    Repository,
)

logger = structlog.get_logger()

WEIGHT_TOLERANCE = 0.01
LOCK_STRIPES = 64


def validate_experiment(experiment: Experiment) -> None:
    """
    Check an experiment definition.

    Raises:
        ConfigurationError: If variants are missing or duplicated, weights
            don't sum to 100, more than one control is marked, or a gradual
            allocation has no control to fall back to
    """
    if not experiment.variants:
        raise ConfigurationError("Experiment needs at least one variant")

    ids = [variant.id for variant in experiment.variants]
    if len(set(ids)) != len(ids):
        raise ConfigurationError("Variant ids must be unique")

    total_weight = sum(variant.weight for variant in experiment.variants)
    if abs(total_weight - 100) > WEIGHT_TOLERANCE:
        raise ConfigurationError(f"Variant weights must sum to 100, got {total_weight}")

    controls = [variant for variant in experiment.variants if variant.is_control]
    if len(controls) > 1:
        raise ConfigurationError("At most one variant can be the control")
    if experiment.allocation.type == AllocationType.GRADUAL and not controls:
        raise ConfigurationError("Gradual allocation requires a control variant")


class ExperimentService:
    """
    Owns experiments, sticky assignments and outcome events.

    Assignment decisions are atomic per (experiment, user): two concurrent
    callers always observe the same variant.
    """

    def __init__(
        self,
        store: RecordStore,
        allocator: VariantAllocator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.allocator = allocator
        self.clock = clock

        self.experiments: Dict[str, Experiment] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.events: Dict[str, List[ExperimentEvent]] = {}

        self._experiment_repo = Repository(store, EXPERIMENT_PREFIX, Experiment)
        self._assignment_repo = Repository(store, ASSIGNMENT_PREFIX, Assignment)
        self._event_repo = Repository(store, EVENT_PREFIX, ExperimentEvent)

        self._key_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._events_lock = threading.Lock()
        self._unsaved_assignments: Set[str] = set()

    # Lifecycle

    def create_experiment(self, config: Union[Experiment, Dict[str, Any]]) -> Experiment:
        """
        Create a new experiment in draft status.

        Args:
            config: Experiment model or its dict form

        Returns:
            Created Experiment instance

        Raises:
            ConfigurationError: If the definition is invalid or the id is taken
        """
        try:
            experiment = config if isinstance(config, Experiment) else Experiment.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid experiment: {e}") from e

        validate_experiment(experiment)
        if experiment.id in self.experiments:
            raise ConfigurationError(f"Experiment {experiment.id} already exists")

        experiment = experiment.model_copy(update={
            "status": ExperimentStatus.DRAFT,
            "created_at": self.clock(),
        })
        self.experiments[experiment.id] = experiment
        self._save_experiment(experiment)

        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            variants=[variant.id for variant in experiment.variants],
            allocation=experiment.allocation.type.value
        )
        return experiment

    def start_experiment(self, experiment_id: str) -> Experiment:
        """Start (or resume) an experiment."""
        experiment = self.get_experiment(experiment_id)

        if experiment.status == ExperimentStatus.ACTIVE:
            return experiment
        if experiment.status == ExperimentStatus.COMPLETED:
            raise InvalidTransitionError(f"Experiment {experiment_id} is already completed")

        experiment.status = ExperimentStatus.ACTIVE
        if experiment.start_date is None:
            experiment.start_date = self.clock()
        self._save_experiment(experiment)

        logger.info("experiment_started", experiment_id=experiment_id)
        return experiment

    def stop_experiment(self, experiment_id: str, reason: str = "manual") -> ExperimentResults:
        """
        Complete an experiment and return its final results.

        Ends every assignment of the experiment. Stopping a completed
        experiment returns the results recorded when it ended.
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.status == ExperimentStatus.COMPLETED and experiment.results is not None:
            return experiment.results

        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = self.clock()
        experiment.results = self.get_results(experiment_id)

        for assignment in self._assignments_for(experiment_id):
            if assignment.is_active:
                self._replace_assignment(assignment.model_copy(update={"is_active": False}))

        self._save_experiment(experiment)

        logger.info(
            "experiment_completed",
            experiment_id=experiment_id,
            reason=reason,
            recommendation=experiment.results.recommendation.value,
            p_value=experiment.results.significance.p_value,
            winning_variant=experiment.results.winning_variant
        )
        return experiment.results

    def rollback_experiment(self, experiment_id: str, reason: str) -> bool:
        """
        Pause an active experiment and move every assigned user to control.

        Returns:
            True if this call performed the rollback, False if the experiment
            was not active
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.ACTIVE:
            return False

        experiment.status = ExperimentStatus.PAUSED
        control = experiment.control
        reassigned = 0
        if control is not None:
            for assignment in self._assignments_for(experiment_id):
                if assignment.is_active and assignment.variant_id != control.id:
                    self._replace_assignment(assignment.model_copy(update={
                        "variant_id": control.id,
                        "assigned_at": self.clock(),
                    }))
                    reassigned += 1

        self._save_experiment(experiment)

        logger.warning(
            "experiment_rolled_back",
            experiment_id=experiment_id,
            reason=reason,
            reassigned_users=reassigned
        )
        return True

    def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)
        return experiment

    def list_experiments(self) -> List[Experiment]:
        return list(self.experiments.values())

    def list_active_experiments(self) -> List[Experiment]:
        return [e for e in self.experiments.values() if e.status == ExperimentStatus.ACTIVE]

    # Assignment

    def get_assignment(
        self,
        experiment_id: str,
        user_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """
        Get (or lazily create) a user's variant for an experiment.

        Uses the sticky assignment when one exists; otherwise checks
        eligibility, allocates a variant and records it.

        Args:
            experiment_id: Experiment identifier
            user_id: Unique user identifier
            context: Attributes matched against the target audience

        Returns:
            Variant id, or None if the experiment is not active or the user
            is not eligible

        Raises:
            NotFoundError: If the experiment does not exist
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.ACTIVE:
            return None

        key = assignment_key(experiment_id, user_id)
        with self._lock_for(key):
            existing = self.assignments.get(key)
            if existing is not None and existing.is_active:
                if key in self._unsaved_assignments:
                    self._save_assignment(existing)
                return existing.variant_id

            if not self.allocator.is_eligible(experiment, user_id, context or {}):
                return None

            variant_id = self.allocator.choose(experiment, user_id)
            assignment = Assignment(
                user_id=user_id,
                experiment_id=experiment_id,
                variant_id=variant_id,
                assigned_at=self.clock(),
            )
            self.assignments[key] = assignment
            self._save_assignment(assignment)

        logger.debug(
            "variant_assigned",
            experiment_id=experiment_id,
            user_id=user_id,
            variant=variant_id
        )
        return variant_id

    def reset_assignment(self, experiment_id: str, user_id: str) -> bool:
        """End a user's assignment so the next call re-allocates."""
        self.get_experiment(experiment_id)
        key = assignment_key(experiment_id, user_id)
        with self._lock_for(key):
            existing = self.assignments.get(key)
            if existing is None or not existing.is_active:
                return False
            self._replace_assignment(existing.model_copy(update={"is_active": False}), locked=True)
        return True

    # Event recording

    def track(
        self,
        experiment_id: str,
        user_id: str,
        event_type: str,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[ExperimentEvent]:
        """
        Record an outcome event for an assigned user.

        Events from users without an active assignment are dropped.

        Raises:
            NotFoundError: If the experiment does not exist
        """
        self.get_experiment(experiment_id)
        assignment = self.assignments.get(assignment_key(experiment_id, user_id))
        if assignment is None or not assignment.is_active:
            logger.debug(
                "event_dropped_unassigned",
                experiment_id=experiment_id,
                user_id=user_id,
                event_type=event_type
            )
            return None

        event = ExperimentEvent(
            user_id=user_id,
            experiment_id=experiment_id,
            variant_id=assignment.variant_id,
            event_type=event_type,
            value=value,
            metadata=metadata or {},
            timestamp=self.clock(),
        )
        with self._events_lock:
            self.events.setdefault(experiment_id, []).append(event)

        try:
            self._event_repo.put(event.key, event)
        except CollaboratorFailure as e:
            logger.warning("event_save_failed", experiment_id=experiment_id, error=str(e))

        return event

    def get_events(self, experiment_id: str) -> List[ExperimentEvent]:
        with self._events_lock:
            return list(self.events.get(experiment_id, []))

    # Results

    def get_results(self, experiment_id: str) -> ExperimentResults:
        """Compute live results from the recorded events."""
        experiment = self.get_experiment(experiment_id)
        return compute_results(experiment, self.get_events(experiment_id))

    # Persistence

    def restore(self) -> None:
        """Reload experiments, assignments and events from the record store."""
        for experiment in self._experiment_repo.scan():
            self.experiments[experiment.id] = experiment
        for assignment in self._assignment_repo.scan():
            self.assignments[assignment.key] = assignment
        with self._events_lock:
            for event in sorted(self._event_repo.scan(), key=lambda e: e.timestamp):
                self.events.setdefault(event.experiment_id, []).append(event)

        logger.info(
            "experiments_restored",
            experiments=len(self.experiments),
            assignments=len(self.assignments)
        )

    def _save_experiment(self, experiment: Experiment) -> None:
        try:
            self._experiment_repo.put(experiment.id, experiment)
        except CollaboratorFailure as e:
            logger.warning("experiment_save_failed", experiment_id=experiment.id, error=str(e))

    def _save_assignment(self, assignment: Assignment) -> None:
        try:
            self._assignment_repo.put(assignment.key, assignment)
            self._unsaved_assignments.discard(assignment.key)
        except CollaboratorFailure as e:
            # Keep serving the in-memory decision and retry on the next lookup
            self._unsaved_assignments.add(assignment.key)
            logger.warning(
                "assignment_save_failed",
                experiment_id=assignment.experiment_id,
                user_id=assignment.user_id,
                error=str(e)
            )

    def _replace_assignment(self, assignment: Assignment, locked: bool = False) -> None:
        if locked:
            self.assignments[assignment.key] = assignment
            self._save_assignment(assignment)
            return
        with self._lock_for(assignment.key):
            self.assignments[assignment.key] = assignment
            self._save_assignment(assignment)

    def _assignments_for(self, experiment_id: str) -> List[Assignment]:
        return [a for a in list(self.assignments.values()) if a.experiment_id == experiment_id]

    def _lock_for(self, key: str) -> threading.Lock:
        # Fixed stripe per key; a lock is never held while taking another
        return self._key_locks[hash(key) % LOCK_STRIPES]
