"""Feature flag models."""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cohortlab.models.common import utcnow


class ConditionOperator(str, enum.Enum):
    """Operators supported by flag conditions."""
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    LT = "lt"


class FlagCondition(BaseModel):
    """Attribute condition; all conditions of a flag must hold."""

    attribute: str
    operator: ConditionOperator
    value: Any = None


class FlagVariant(BaseModel):
    """Weighted variant served by a flag."""

    id: str
    name: str
    weight: float = Field(..., ge=0, le=100)
    config: Dict[str, Any] = Field(default_factory=dict)


class FeatureFlag(BaseModel):
    """Percentage- and condition-gated behavior switch."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    enabled: bool = False
    rollout_percentage: float = Field(0, ge=0, le=100)
    target_audiences: List[str] = Field(default_factory=list)
    conditions: List[FlagCondition] = Field(default_factory=list)
    variants: Optional[List[FlagVariant]] = None
    updated_at: datetime = Field(default_factory=utcnow)
