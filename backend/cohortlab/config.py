"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "CohortLab"
    debug: bool = False
    log_level: str = "INFO"

    # Record store: "memory", "redis" or "sql"
    store_backend: str = "memory"
    record_key_namespace: str = "cohortlab"

    # Database (used when store_backend == "sql")
    database_url: str = "sqlite:///./cohortlab.db"

    # Redis (used when store_backend == "redis")
    redis_url: str = "redis://localhost:6379/0"

    # Metrics source - empty means the in-process static provider
    metrics_url: str = ""
    metrics_timeout: float = 2.0  # seconds

    # Safety monitor and phase timers
    safety_monitor_interval_seconds: float = 300.0  # 5 minutes
    phase_time_unit_seconds: float = 3600.0  # phase durations are expressed in hours
    metrics_retry_seconds: float = 300.0  # re-poll delay after a failed metrics fetch

    # Cohort hashing: "sha256" or "legacy" (rolling 32-bit hash of older cohorts)
    hash_algorithm: str = "sha256"

    # API Keys (management endpoints)
    admin_api_key: str = "admin-key-change-in-production"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
