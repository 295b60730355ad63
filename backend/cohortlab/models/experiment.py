"""Experiment models."""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from cohortlab.models.common import RollbackTrigger, utcnow


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class AllocationType(str, enum.Enum):
    """How users are spread across variants."""
    RANDOM = "random"
    DETERMINISTIC = "deterministic"
    GRADUAL = "gradual"


class Recommendation(str, enum.Enum):
    """Verdict produced by the statistics engine."""
    ROLLBACK = "rollback"
    WINNER = "winner"
    INCONCLUSIVE = "inconclusive"


class Variant(BaseModel):
    """One arm of an experiment."""

    id: str
    name: str
    description: str = ""
    weight: float = Field(..., ge=0, le=100, description="Traffic share, all variants sum to 100")
    config: Dict[str, Any] = Field(default_factory=dict)
    is_control: bool = False


class AudienceCriteria(BaseModel):
    """Attribute criteria matched against the caller's context."""

    user_type: Optional[str] = None  # new | returning | beta | all
    experience: Optional[str] = None  # beginner | intermediate | advanced
    platform: Optional[str] = None  # mobile | desktop | tablet
    location: Optional[List[str]] = None
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)


class TargetAudience(BaseModel):
    """Who is eligible for an experiment."""

    criteria: AudienceCriteria = Field(default_factory=AudienceCriteria)
    percentage: float = Field(100, ge=0, le=100)
    exclusions: List[str] = Field(default_factory=list)


class GradualRollout(BaseModel):
    """Time-based exposure ramp of a gradual allocation."""

    initial_percentage: float = Field(..., ge=0, le=100)
    increment_percentage: float = Field(..., ge=0)
    increment_interval: float = Field(..., gt=0, description="Hours between increments")
    max_percentage: float = Field(100, ge=0, le=100)


class AllocationStrategy(BaseModel):
    """Allocation strategy of an experiment."""

    type: AllocationType = AllocationType.DETERMINISTIC
    seed: Optional[str] = None
    gradual_rollout: Optional[GradualRollout] = None


class Safeguards(BaseModel):
    """Hard limits checked by the safety monitor."""

    max_error_rate: float = 0.1
    max_latency_increase: float = 500.0  # milliseconds
    min_success_rate: float = 0.95
    monitoring_interval: float = 5.0  # minutes


class VariantMetrics(BaseModel):
    """Aggregated outcome of one variant."""

    sample_size: int = 0
    conversion_rate: float = 0.0
    mean: float = 0.0
    standard_error: float = 0.0
    confidence_interval: Tuple[float, float] = (0.0, 0.0)
    custom_metrics: Dict[str, float] = Field(default_factory=dict)


class SignificanceTest(BaseModel):
    """Control vs best treatment comparison."""

    p_value: float = 1.0
    z_score: float = 0.0
    significant: bool = False
    method: str = "z_test"
    control_variant: Optional[str] = None
    treatment_variant: Optional[str] = None


class ExperimentResults(BaseModel):
    """Statistics snapshot of an experiment."""

    experiment_id: str
    sample_sizes: Dict[str, int] = Field(default_factory=dict)
    metrics: Dict[str, VariantMetrics] = Field(default_factory=dict)
    significance: SignificanceTest = Field(default_factory=SignificanceTest)
    recommendation: Recommendation = Recommendation.INCONCLUSIVE
    winning_variant: Optional[str] = None
    confidence: float = 0.95
    sample_size_reached: bool = False
    computed_at: datetime = Field(default_factory=utcnow)


class Experiment(BaseModel):
    """A/B experiment definition and lifecycle state."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT

    variants: List[Variant]
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    allocation: AllocationStrategy = Field(default_factory=AllocationStrategy)

    primary_metric: str = "conversion"
    secondary_metrics: List[str] = Field(default_factory=list)
    minimum_sample_size: int = 1000
    confidence_level: float = Field(0.95, gt=0, lt=1)

    safeguards: Safeguards = Field(default_factory=Safeguards)
    rollback_triggers: List[RollbackTrigger] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    results: Optional[ExperimentResults] = None

    @property
    def control(self) -> Optional[Variant]:
        for variant in self.variants:
            if variant.is_control:
                return variant
        return None

    def variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class Assignment(BaseModel):
    """Sticky (user, experiment) -> variant decision."""

    user_id: str
    experiment_id: str
    variant_id: str
    assigned_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True

    @property
    def key(self) -> str:
        return assignment_key(self.experiment_id, self.user_id)


class ExperimentEvent(BaseModel):
    """Append-only outcome event."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    experiment_id: str
    variant_id: str
    event_type: str
    value: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.experiment_id}:{self.id}"


def assignment_key(experiment_id: str, user_id: str) -> str:
    """Record key suffix of an assignment."""
    return f"{experiment_id}:{user_id}"
