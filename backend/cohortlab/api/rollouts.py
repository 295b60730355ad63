"""Progressive rollout endpoints."""
from fastapi import APIRouter, Depends
from typing import List

from cohortlab.api.deps import get_engine
from cohortlab.middleware.auth import require_admin_key
from cohortlab.models.rollout import RolloutPlan
from cohortlab.schemas.rollouts import RollbackRequest
from cohortlab.services.engine import ExperimentationEngine

router = APIRouter(prefix="/rollouts")
admin = [Depends(require_admin_key)]


@router.post("", response_model=RolloutPlan, status_code=201, dependencies=admin)
async def create_rollout_plan(plan: RolloutPlan, engine: ExperimentationEngine = Depends(get_engine)):
    """Register a planned rollout for an existing feature flag."""
    return engine.create_rollout_plan(plan)


@router.get("", response_model=List[RolloutPlan])
async def list_rollouts(active: bool = False, engine: ExperimentationEngine = Depends(get_engine)):
    if active:
        return engine.list_active_rollouts()
    return engine.list_rollouts()


@router.get("/{plan_id}", response_model=RolloutPlan)
async def get_rollout_status(plan_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return engine.get_rollout_status(plan_id)


@router.post("/{plan_id}/start", response_model=RolloutPlan, dependencies=admin)
async def start_rollout(plan_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return await engine.start_rollout(plan_id)


@router.post("/{plan_id}/pause", response_model=RolloutPlan, dependencies=admin)
async def pause_rollout(plan_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return await engine.pause_rollout(plan_id)


@router.post("/{plan_id}/resume", response_model=RolloutPlan, dependencies=admin)
async def resume_rollout(plan_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return await engine.resume_rollout(plan_id)


@router.post("/{plan_id}/rollback", response_model=RolloutPlan, dependencies=admin)
async def rollback_rollout(
    plan_id: str,
    request: RollbackRequest,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """Roll the feature back to 0%. Terminal; the plan cannot be resumed."""
    return await engine.rollback_rollout(plan_id, request.reason)
