"""Pydantic schemas for request/response validation."""
from cohortlab.schemas.experiments import (
    AssignmentRequest,
    AssignmentResponse,
    StopExperimentRequest,
    TrackEventRequest,
    TrackEventResponse,
)
from cohortlab.schemas.flags import FlagEvaluationRequest, FlagEvaluationResponse, FlagUpdateRequest
from cohortlab.schemas.rollouts import RollbackRequest

__all__ = [
    "AssignmentRequest",
    "AssignmentResponse",
    "FlagEvaluationRequest",
    "FlagEvaluationResponse",
    "FlagUpdateRequest",
    "RollbackRequest",
    "StopExperimentRequest",
    "TrackEventRequest",
    "TrackEventResponse",
]
