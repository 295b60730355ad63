"""Variant allocation for experiments."""
import math
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from cohortlab.models.common import utcnow
from cohortlab.models.experiment import AllocationType, Experiment, TargetAudience, Variant
from cohortlab.services.hashing import CohortHasher


def pick_weighted(variants: Sequence, roll: float) -> Optional[str]:
    """
    Walk the cumulative weight table and return the id of the variant whose
    slice contains ``roll`` (a value in [0, 100)).

    Zero-weight variants are never picked. Rounding gaps at the top of the
    table fall back to the last variant carrying weight.
    """
    cumulative = 0.0
    fallback = None
    for variant in variants:
        if variant.weight <= 0:
            continue
        cumulative += variant.weight
        fallback = variant.id
        if roll < cumulative:
            return variant.id
    return fallback


class VariantAllocator:
    """
    Decides eligibility and picks a variant for a user.

    The allocator is stateless apart from its random source; caching the
    decision as a sticky assignment is the caller's job.
    """

    def __init__(
        self,
        hasher: CohortHasher,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.hasher = hasher
        self.rng = rng or random.Random()
        self.clock = clock

    def roll(self) -> float:
        """Uniform draw in [0, 100)."""
        return self.rng.random() * 100

    def is_eligible(self, experiment: Experiment, user_id: str, context: Dict[str, Any]) -> bool:
        audience = experiment.target_audience

        if self.roll() >= audience.percentage:
            return False
        if not self._matches_criteria(audience, context):
            return False
        if self._is_excluded(audience, user_id, context):
            return False
        return True

    def choose(self, experiment: Experiment, user_id: str) -> str:
        """Pick a variant id according to the experiment's allocation strategy."""
        allocation = experiment.allocation

        if allocation.type == AllocationType.RANDOM:
            return self._random(experiment.variants)
        if allocation.type == AllocationType.DETERMINISTIC:
            return self._deterministic(experiment.variants, user_id, allocation.seed or "")
        if allocation.type == AllocationType.GRADUAL:
            return self._gradual(experiment)
        return experiment.variants[0].id

    def current_gradual_percentage(self, experiment: Experiment) -> float:
        """Exposure of a gradual experiment at the current time."""
        gradual = experiment.allocation.gradual_rollout
        if gradual is None:
            return 100.0

        hours_elapsed = 0.0
        if experiment.start_date is not None:
            hours_elapsed = max(0.0, (self.clock() - experiment.start_date).total_seconds() / 3600)

        increments = math.floor(hours_elapsed / gradual.increment_interval)
        return min(
            gradual.initial_percentage + increments * gradual.increment_percentage,
            gradual.max_percentage,
        )

    def _random(self, variants: Sequence[Variant]) -> str:
        return pick_weighted(variants, self.roll()) or variants[0].id

    def _deterministic(self, variants: Sequence[Variant], user_id: str, seed: str) -> str:
        bucket = self.hasher.bucket(user_id, seed)
        return pick_weighted(variants, bucket) or variants[0].id

    def _gradual(self, experiment: Experiment) -> str:
        if experiment.allocation.gradual_rollout is None:
            return self._random(experiment.variants)

        # Users outside the current exposure stay on control
        if self.roll() > self.current_gradual_percentage(experiment):
            control = experiment.control
            return control.id if control else experiment.variants[0].id

        return self._random(experiment.variants)

    @staticmethod
    def _matches_criteria(audience: TargetAudience, context: Dict[str, Any]) -> bool:
        criteria = audience.criteria

        if criteria.user_type and criteria.user_type != "all":
            if context.get("user_type") != criteria.user_type:
                return False
        if criteria.experience and context.get("experience") != criteria.experience:
            return False
        if criteria.platform and context.get("platform") != criteria.platform:
            return False
        if criteria.location and context.get("location") not in criteria.location:
            return False
        for attribute, expected in criteria.custom_attributes.items():
            if context.get(attribute) != expected:
                return False
        return True

    @staticmethod
    def _is_excluded(audience: TargetAudience, user_id: str, context: Dict[str, Any]) -> bool:
        for exclusion in audience.exclusions:
            if exclusion == user_id or context.get(exclusion) is True:
                return True
        return False
