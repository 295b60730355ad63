"""Experiment endpoints: lifecycle, assignment and event tracking."""
from fastapi import APIRouter, Depends
from typing import List, Optional

from cohortlab.api.deps import get_engine
from cohortlab.middleware.auth import require_admin_key
from cohortlab.models.experiment import Experiment, ExperimentResults
from cohortlab.schemas.experiments import (
    AssignmentRequest,
    AssignmentResponse,
    StopExperimentRequest,
    TrackEventRequest,
    TrackEventResponse,
)
from cohortlab.services.engine import ExperimentationEngine

router = APIRouter(prefix="/experiments")


@router.post("", response_model=Experiment, status_code=201, dependencies=[Depends(require_admin_key)])
async def create_experiment(
    experiment: Experiment,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """Register a draft experiment. Weights and control variant are validated."""
    return engine.create_experiment(experiment)


@router.get("", response_model=List[Experiment])
async def list_experiments(engine: ExperimentationEngine = Depends(get_engine)):
    return engine.experiments.list_experiments()


@router.get("/{experiment_id}", response_model=Experiment)
async def get_experiment(experiment_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return engine.experiments.get_experiment(experiment_id)


@router.post("/{experiment_id}/start", response_model=Experiment, dependencies=[Depends(require_admin_key)])
async def start_experiment(experiment_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return engine.start_experiment(experiment_id)


@router.post("/{experiment_id}/stop", response_model=ExperimentResults, dependencies=[Depends(require_admin_key)])
async def stop_experiment(
    experiment_id: str,
    request: Optional[StopExperimentRequest] = None,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """Complete the experiment and return its final results."""
    reason = request.reason if request else "manual"
    return engine.stop_experiment(experiment_id, reason)


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
async def get_results(experiment_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    """Live results computed from the events recorded so far."""
    return engine.get_results(experiment_id)


@router.post("/{experiment_id}/assignment", response_model=AssignmentResponse)
async def get_assignment(
    experiment_id: str,
    request: AssignmentRequest,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """
    Get or create the user's sticky variant.

    Returns a null variant when the experiment is not active or the user
    falls outside its target audience.
    """
    variant_id = engine.get_assignment(experiment_id, request.user_id, request.context)
    return AssignmentResponse(
        experiment_id=experiment_id,
        user_id=request.user_id,
        variant_id=variant_id
    )


@router.post("/{experiment_id}/events", response_model=TrackEventResponse, status_code=202)
async def track_event(
    experiment_id: str,
    request: TrackEventRequest,
    engine: ExperimentationEngine = Depends(get_engine)
):
    event = engine.track(
        experiment_id,
        request.user_id,
        request.event_type,
        value=request.value,
        metadata=request.metadata
    )
    if event is None:
        return TrackEventResponse(status="dropped")
    return TrackEventResponse(status="recorded", event_id=event.id)
