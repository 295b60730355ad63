"""Feature flag service - percentage and condition gated toggles."""
import random
import threading
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import ValidationError

from cohortlab.models.common import utcnow
from cohortlab.models.flag import ConditionOperator, FeatureFlag, FlagCondition
from cohortlab.services.allocation import pick_weighted
from cohortlab.services.errors import CollaboratorFailure, ConfigurationError, NotFoundError
from cohortlab.services.hashing import CohortHasher
from cohortlab.services.store import FLAG_PREFIX, RecordStore, Repository

logger = structlog.get_logger()

_UPDATABLE_FIELDS = {"description", "enabled", "rollout_percentage", "target_audiences", "conditions", "variants"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate_condition(condition: FlagCondition, context: Dict[str, Any]) -> bool:
    value = context.get(condition.attribute)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQ:
        return value == expected
    if op == ConditionOperator.NE:
        return value != expected
    if op == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and value in expected
    if op == ConditionOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set)) and value not in expected
    if op == ConditionOperator.GT:
        return _is_number(value) and _is_number(expected) and value > expected
    if op == ConditionOperator.LT:
        return _is_number(value) and _is_number(expected) and value < expected
    return False


def validate_flag(flag: FeatureFlag) -> None:
    if flag.variants is not None:
        if not flag.variants:
            raise ConfigurationError("Flag variants, when given, cannot be empty")
        total_weight = sum(variant.weight for variant in flag.variants)
        if abs(total_weight - 100) > 0.01:
            raise ConfigurationError(f"Flag variant weights must sum to 100, got {total_weight}")


class FeatureFlagService:
    """
    Manages feature flags and evaluates them for a user context.

    Flags are replaced, never mutated in place, so evaluation can run from
    any thread without locking and always sees a consistent flag.
    """

    def __init__(
        self,
        store: RecordStore,
        hasher: CohortHasher,
        base_context: Optional[Dict[str, Any]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.hasher = hasher
        self.base_context = dict(base_context or {})
        self.rng = rng or random.Random()

        self.flags: Dict[str, FeatureFlag] = {}
        self._ids_by_name: Dict[str, str] = {}
        self._repo = Repository(store, FLAG_PREFIX, FeatureFlag)
        self._write_lock = threading.Lock()

    # Management

    def create_flag(self, config: Union[FeatureFlag, Dict[str, Any]]) -> FeatureFlag:
        """
        Create a new feature flag.

        Raises:
            ConfigurationError: If the flag is invalid or its name/id is taken
        """
        try:
            flag = config if isinstance(config, FeatureFlag) else FeatureFlag.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid feature flag: {e}") from e

        validate_flag(flag)
        with self._write_lock:
            if flag.id in self.flags or flag.name in self._ids_by_name:
                raise ConfigurationError(f"Flag {flag.name} already exists")
            self._publish(flag)

        logger.info(
            "feature_flag_created",
            flag_id=flag.id,
            name=flag.name,
            enabled=flag.enabled,
            rollout_percentage=flag.rollout_percentage
        )
        return flag

    def update_flag(self, flag_id: str, **changes) -> FeatureFlag:
        """
        Update a feature flag.

        Raises:
            NotFoundError: If the flag does not exist
            ConfigurationError: If the resulting flag is invalid
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Cannot update flag fields: {sorted(unknown)}")

        with self._write_lock:
            current = self.get_flag(flag_id)
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            try:
                flag = FeatureFlag.model_validate(data)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid feature flag: {e}") from e
            validate_flag(flag)
            self._publish(flag)

        logger.info("feature_flag_updated", flag_id=flag_id, changes=sorted(changes))
        return flag

    def set_rollout_percentage(self, flag_id: str, percentage: float, enabled: Optional[bool] = None) -> FeatureFlag:
        """Set the exposure of a flag, clamped to [0, 100]."""
        changes: Dict[str, Any] = {"rollout_percentage": min(100.0, max(0.0, percentage))}
        if enabled is not None:
            changes["enabled"] = enabled
        return self.update_flag(flag_id, **changes)

    def get_flag(self, flag_id: str) -> FeatureFlag:
        flag = self.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Flag", flag_id)
        return flag

    def find_by_name(self, name: str) -> Optional[FeatureFlag]:
        flag_id = self._ids_by_name.get(name)
        return self.flags.get(flag_id) if flag_id else None

    def list_flags(self) -> List[FeatureFlag]:
        return list(self.flags.values())

    # Evaluation

    def is_enabled(self, name: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Check if a feature is enabled for a context.

        Never raises; any failure evaluates to disabled.
        """
        try:
            flag = self.find_by_name(name)
            if flag is None:
                return False
            return self._evaluate(flag, self._merged_context(context))
        except Exception as e:
            logger.error(
                "feature_flag_evaluation_failed",
                flag=name,
                error=str(e),
                error_type=type(e).__name__
            )
            return False

    def get_variant(self, name: str, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """
        Get the variant served to a context, or None.

        The pick is a hash of ``user_id + flag name`` so a user keeps their
        variant without any stored state.
        """
        return self.evaluate(name, context)[1]

    def evaluate(self, name: str, context: Optional[Dict[str, Any]] = None) -> Tuple[bool, Optional[str]]:
        """
        Enabled state and variant from a single rollout decision.

        Never raises; any failure evaluates to (False, None).
        """
        try:
            flag = self.find_by_name(name)
            if flag is None:
                return False, None

            merged = self._merged_context(context)
            if not self._evaluate(flag, merged):
                return False, None
            if not flag.variants:
                return True, None

            bucket = self.hasher.bucket(str(merged.get("user_id", "")), flag.name)
            return True, pick_weighted(flag.variants, bucket)
        except Exception as e:
            logger.error(
                "feature_flag_variant_failed",
                flag=name,
                error=str(e),
                error_type=type(e).__name__
            )
            return False, None

    def _evaluate(self, flag: FeatureFlag, context: Dict[str, Any]) -> bool:
        if not flag.enabled:
            return False

        if self._rollout_roll(flag, context) >= flag.rollout_percentage:
            return False

        if flag.target_audiences:
            audiences = context.get("audiences") or []
            if not any(audience in audiences for audience in flag.target_audiences):
                return False

        return all(evaluate_condition(condition, context) for condition in flag.conditions)

    def _rollout_roll(self, flag: FeatureFlag, context: Dict[str, Any]) -> float:
        user_id = context.get("user_id")
        if user_id is None:
            return self.rng.random() * 100
        return self.hasher.bucket(str(user_id), f"{flag.name}:rollout")

    def _merged_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(self.base_context)
        if context:
            merged.update(context)
        return merged

    # Persistence

    def restore(self) -> None:
        """Reload flags from the record store."""
        with self._write_lock:
            for flag in self._repo.scan():
                self.flags[flag.id] = flag
                self._ids_by_name[flag.name] = flag.id
        logger.info("feature_flags_restored", flags=len(self.flags))

    def _publish(self, flag: FeatureFlag) -> None:
        self.flags[flag.id] = flag
        self._ids_by_name[flag.name] = flag.id
        try:
            self._repo.put(flag.id, flag)
        except CollaboratorFailure as e:
            logger.warning("feature_flag_save_failed", flag_id=flag.id, error=str(e))
