"""Shared FastAPI dependencies."""
from fastapi import Request

from cohortlab.services.engine import ExperimentationEngine


def get_engine(request: Request) -> ExperimentationEngine:
    """Engine created by the application lifespan."""
    return request.app.state.engine
