"""Rollout plan models."""
import enum
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from cohortlab.models.common import RollbackTrigger, utcnow


class RolloutStatus(str, enum.Enum):
    """Phase state machine states."""
    PLANNED = "planned"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class RolloutStrategy(BaseModel):
    """Descriptive rollout strategy."""

    type: str = "feature_flag"  # canary | blue_green | gradual | feature_flag
    target_audience: str = "percentage"  # beta | staff | percentage | all


class MetricBounds(BaseModel):
    """Optional min/max bounds on a custom metric."""

    min: Optional[float] = None
    max: Optional[float] = None


class PhaseCriteria(BaseModel):
    """Success criteria a phase must meet before advancing."""

    min_success_rate: float = 0.95
    max_error_rate: float = 0.05
    max_latency_increase: float = 500.0
    min_user_satisfaction: Optional[float] = None
    custom_metrics: Dict[str, MetricBounds] = Field(default_factory=dict)


class RolloutPhase(BaseModel):
    """Staged deployment step."""

    name: str
    percentage: float = Field(..., ge=0, le=100)
    duration: float = Field(..., ge=0, description="Hours before the phase is evaluated")
    criteria: PhaseCriteria = Field(default_factory=PhaseCriteria)


class PhaseTransition(BaseModel):
    """Entry of a plan's transition log."""

    from_phase: int
    to_phase: int
    timestamp: datetime = Field(default_factory=utcnow)
    reason: str
    metrics: Dict[str, float] = Field(default_factory=dict)


class RolloutMetrics(BaseModel):
    """Latest observed health of a rollout plus its transition log."""

    error_rate: float = 0.0
    success_rate: float = 1.0
    latency: float = 0.0
    user_satisfaction: float = 0.0
    rollbacks_triggered: int = 0
    phase_transitions: List[PhaseTransition] = Field(default_factory=list)

    def snapshot(self) -> Dict[str, float]:
        return {
            "error_rate": self.error_rate,
            "success_rate": self.success_rate,
            "latency": self.latency,
            "user_satisfaction": self.user_satisfaction,
        }


class RolloutPlan(BaseModel):
    """Multi-phase rollout of a feature flag."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    feature: str = Field(..., description="Id of the feature flag driven by this plan")

    strategy: RolloutStrategy = Field(default_factory=RolloutStrategy)
    phases: List[RolloutPhase]
    rollback_conditions: List[RollbackTrigger] = Field(default_factory=list)

    status: RolloutStatus = RolloutStatus.PLANNED
    current_phase: int = 0
    current_percentage: float = 0.0

    start_date: Optional[datetime] = None
    actual_completion: Optional[datetime] = None
    metrics: RolloutMetrics = Field(default_factory=RolloutMetrics)

    @property
    def experiment_id(self) -> str:
        """Id of the internal experiment mirroring this plan."""
        return f"rollout-{self.id}"
