"""Experiment request/response schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class AssignmentRequest(BaseModel):
    """Request a user's variant for an experiment."""

    user_id: str = Field(..., min_length=1, description="Unique user identifier")
    context: Dict[str, Any] = Field(default_factory=dict, description="Attributes for audience targeting")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_123",
                "context": {"user_type": "beta", "platform": "desktop"}
            }
        }


class AssignmentResponse(BaseModel):
    """Variant assigned to a user (None when not eligible or not active)."""

    experiment_id: str
    user_id: str
    variant_id: Optional[str] = None


class TrackEventRequest(BaseModel):
    """Outcome event reported for an assigned user."""

    user_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1, max_length=100)
    value: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_123",
                "event_type": "conversion",
                "value": 42.0
            }
        }


class TrackEventResponse(BaseModel):
    """Whether the event was recorded or dropped for an unassigned user."""

    status: str = Field(default="recorded")
    event_id: Optional[str] = None


class StopExperimentRequest(BaseModel):
    reason: str = Field(default="manual", max_length=500)
