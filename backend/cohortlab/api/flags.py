"""Feature flag endpoints."""
from fastapi import APIRouter, Depends
from typing import List

from cohortlab.api.deps import get_engine
from cohortlab.middleware.auth import require_admin_key
from cohortlab.models.flag import FeatureFlag
from cohortlab.schemas.flags import FlagEvaluationRequest, FlagEvaluationResponse, FlagUpdateRequest
from cohortlab.services.engine import ExperimentationEngine

router = APIRouter(prefix="/flags")


@router.post("", response_model=FeatureFlag, status_code=201, dependencies=[Depends(require_admin_key)])
async def create_flag(flag: FeatureFlag, engine: ExperimentationEngine = Depends(get_engine)):
    return engine.create_feature_flag(flag)


@router.patch("/{flag_id}", response_model=FeatureFlag, dependencies=[Depends(require_admin_key)])
async def update_flag(
    flag_id: str,
    request: FlagUpdateRequest,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """Apply the fields present in the request body."""
    return engine.update_feature_flag(flag_id, **request.model_dump(exclude_unset=True))


@router.get("", response_model=List[FeatureFlag])
async def list_flags(engine: ExperimentationEngine = Depends(get_engine)):
    return engine.list_feature_flags()


@router.get("/{flag_id}", response_model=FeatureFlag)
async def get_flag(flag_id: str, engine: ExperimentationEngine = Depends(get_engine)):
    return engine.get_feature_flag(flag_id)


@router.post("/{name}/evaluate", response_model=FlagEvaluationResponse)
async def evaluate_flag(
    name: str,
    request: FlagEvaluationRequest,
    engine: ExperimentationEngine = Depends(get_engine)
):
    """
    Evaluate a flag by name for the given context.

    Unknown flags and evaluation failures come back disabled.
    """
    enabled, variant = engine.evaluate_flag(name, request.context)
    return FlagEvaluationResponse(flag=name, enabled=enabled, variant=variant)
