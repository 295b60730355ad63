"""Feature flag request/response schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from cohortlab.models.flag import FlagCondition, FlagVariant


class FlagUpdateRequest(BaseModel):
    """Partial update of a feature flag; omitted fields are left unchanged."""

    description: Optional[str] = None
    enabled: Optional[bool] = None
    rollout_percentage: Optional[float] = Field(None, ge=0, le=100)
    target_audiences: Optional[List[str]] = None
    conditions: Optional[List[FlagCondition]] = None
    variants: Optional[List[FlagVariant]] = None


class FlagEvaluationRequest(BaseModel):
    """Context a flag is evaluated against."""

    context: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "context": {"user_id": "user_123", "audiences": ["beta"], "plan": "pro"}
            }
        }


class FlagEvaluationResponse(BaseModel):
    flag: str
    enabled: bool
    variant: Optional[str] = None
