"""Health check endpoints."""
from fastapi import APIRouter, Depends

from cohortlab.api.deps import get_engine
from cohortlab.services.engine import ExperimentationEngine

router = APIRouter()


@router.get("/health")
@router.head("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "service": "cohortlab-backend"}


@router.get("/health/detailed")
async def detailed_health_check(engine: ExperimentationEngine = Depends(get_engine)):
    """
    Detailed health check including record store and metrics connectivity.
    """
    checks = {
        "api": "healthy",
        "store": "unknown",
        "metrics": "unknown",
        "safety_monitor": "running" if engine.safety.running else "stopped"
    }

    checks["store"] = "healthy" if engine.store.ping() else "unhealthy"
    checks["metrics"] = "healthy" if await engine.metrics.health_check() else "unhealthy"

    # Overall status
    overall_status = "healthy" if all(
        checks[name] == "healthy" for name in ("api", "store", "metrics")
    ) else "degraded"

    return {
        "status": overall_status,
        "checks": checks,
        "active_rollouts": len(engine.list_active_rollouts()),
        "active_experiments": len(engine.experiments.list_active_experiments())
    }
