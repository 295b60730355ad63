"""Domain and storage models."""
from cohortlab.models.common import Comparator, RollbackTrigger, Severity
from cohortlab.models.experiment import (
    AllocationStrategy,
    AllocationType,
    Assignment,
    AudienceCriteria,
    Experiment,
    ExperimentEvent,
    ExperimentResults,
    ExperimentStatus,
    GradualRollout,
    Recommendation,
    Safeguards,
    SignificanceTest,
    TargetAudience,
    Variant,
    VariantMetrics,
)
from cohortlab.models.flag import ConditionOperator, FeatureFlag, FlagCondition, FlagVariant
from cohortlab.models.metrics import MetricsSnapshot
from cohortlab.models.rollout import (
    MetricBounds,
    PhaseCriteria,
    PhaseTransition,
    RolloutMetrics,
    RolloutPhase,
    RolloutPlan,
    RolloutStatus,
    RolloutStrategy,
)

__all__ = [
    "AllocationStrategy",
    "AllocationType",
    "Assignment",
    "AudienceCriteria",
    "Comparator",
    "ConditionOperator",
    "Experiment",
    "ExperimentEvent",
    "ExperimentResults",
    "ExperimentStatus",
    "FeatureFlag",
    "FlagCondition",
    "FlagVariant",
    "GradualRollout",
    "MetricBounds",
    "MetricsSnapshot",
    "PhaseCriteria",
    "PhaseTransition",
    "Recommendation",
    "RollbackTrigger",
    "RolloutMetrics",
    "RolloutPhase",
    "RolloutPlan",
    "RolloutStatus",
    "RolloutStrategy",
    "Safeguards",
    "Severity",
    "SignificanceTest",
    "TargetAudience",
    "Variant",
    "VariantMetrics",
]
