"""Rollout request schemas."""
from pydantic import BaseModel, Field


class RollbackRequest(BaseModel):
    """Reason recorded with a manual rollback."""

    reason: str = Field(..., min_length=1, max_length=500)
