"""
Metrics providers - live success/error/latency numbers for experiments and rollouts.

The engine only depends on ``MetricsProvider``; the HTTP client talks to an
external monitoring service and the static provider serves values pushed into
the process (tests, demos, or callers that already have the numbers).
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

import httpx
import structlog
from pydantic import ValidationError

from cohortlab.models.metrics import MetricsSnapshot
from cohortlab.services.errors import CollaboratorFailure

logger = structlog.get_logger()


class MetricsProvider(ABC):
    """Source of current metrics for an experiment or rollout id."""

    @abstractmethod
    async def get_current_metrics(self, entity_id: str) -> Optional[MetricsSnapshot]:
        """
        Return the latest metrics, or None when there is no data yet.

        Raises:
            CollaboratorFailure: If the metrics source cannot be reached
        """
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class StaticMetricsProvider(MetricsProvider):
    """In-process provider returning whatever was last set for an id."""

    def __init__(self, default: Optional[MetricsSnapshot] = None):
        self.default = default
        self._metrics: Dict[str, MetricsSnapshot] = {}
        self._lock = threading.Lock()

    def set_metrics(self, entity_id: str, metrics: Union[MetricsSnapshot, Dict]) -> None:
        if not isinstance(metrics, MetricsSnapshot):
            metrics = MetricsSnapshot.model_validate(metrics)
        with self._lock:
            self._metrics[entity_id] = metrics

    def clear(self, entity_id: str) -> None:
        with self._lock:
            self._metrics.pop(entity_id, None)

    async def get_current_metrics(self, entity_id: str) -> Optional[MetricsSnapshot]:
        with self._lock:
            return self._metrics.get(entity_id, self.default)


class HttpMetricsProvider(MetricsProvider):
    """
    Client for an external metrics service.

    Expects ``GET {base_url}/metrics/{id}`` to return a JSON object with
    ``success_rate``, ``error_rate``, ``latency``, optional
    ``user_satisfaction`` and a ``custom`` mapping. A 404 means no data yet.
    """

    def __init__(self, base_url: str, timeout: float = 2.0):
        """
        Initialize the metrics client.

        Args:
            base_url: URL of the metrics service
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_current_metrics(self, entity_id: str) -> Optional[MetricsSnapshot]:
        try:
            client = await self._get_client()
            response = await client.get(f"/metrics/{entity_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return MetricsSnapshot.model_validate(response.json())

        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(
                "metrics_fetch_failed",
                entity_id=entity_id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise CollaboratorFailure(f"Metrics unavailable for {entity_id}: {e}") from e

    async def health_check(self) -> bool:
        """Check if the metrics service is healthy."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False


def build_metrics_provider(settings) -> MetricsProvider:
    """HTTP provider when ``metrics_url`` is configured, static provider otherwise."""
    if settings.metrics_url:
        return HttpMetricsProvider(settings.metrics_url, timeout=settings.metrics_timeout)
    return StaticMetricsProvider()
