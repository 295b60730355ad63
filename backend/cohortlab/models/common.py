"""Types shared by experiments and rollouts."""
import enum
import math
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Comparator(str, enum.Enum):
    """Comparison applied by a rollback trigger."""
    GT = "gt"
    LT = "lt"
    EQ = "eq"


class Severity(str, enum.Enum):
    """Rollback trigger severity."""
    WARNING = "warning"
    CRITICAL = "critical"


class RollbackTrigger(BaseModel):
    """A metric threshold whose sustained breach forces reversion."""

    metric: str = Field(..., description="Metric name, e.g. error_rate or errorRate")
    operator: Comparator = Comparator.GT
    threshold: float
    duration: float = Field(0, ge=0, description="Minutes the breach must be sustained")
    severity: Severity = Severity.CRITICAL

    def is_breached(self, value: Optional[float]) -> bool:
        """Check the comparator against an observed value; missing values never breach."""
        if value is None:
            return False
        if self.operator == Comparator.GT:
            return value > self.threshold
        if self.operator == Comparator.LT:
            return value < self.threshold
        return math.isclose(value, self.threshold, abs_tol=0.001)
