"""Main FastAPI application."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from cohortlab.config import get_settings
from cohortlab.middleware.logging import LoggingMiddleware, configure_logging, get_logger
from cohortlab.api import experiments, flags, health, rollouts
from cohortlab.services.engine import ExperimentationEngine
from cohortlab.services.errors import (
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
)

settings = get_settings()
logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    configure_logging(settings.log_level)

    # Startup
    engine = ExperimentationEngine.from_settings(settings)
    app.state.engine = engine
    await engine.start()
    logger.info("cohortlab_started", store_backend=settings.store_backend)

    yield  # App runs here

    # Shutdown
    await engine.stop()
    logger.info("cohortlab_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Experimentation and progressive rollout control plane",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(CollaboratorFailure)
async def collaborator_failure_handler(request: Request, exc: CollaboratorFailure):
    logger.error("collaborator_failure", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Backing service unavailable"})


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(experiments.router, tags=["experiments"])
app.include_router(flags.router, tags=["flags"])
app.include_router(rollouts.router, tags=["rollouts"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "experiments": "/experiments",
            "flags": "/flags",
            "rollouts": "/rollouts"
        }
    }


# uvicorn cohortlab.main:app --reload
