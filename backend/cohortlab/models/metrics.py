"""Live metrics snapshot returned by metrics providers."""
import re
from typing import Dict, Optional

from pydantic import BaseModel, Field

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class MetricsSnapshot(BaseModel):
    """Current health numbers for an experiment or rollout."""

    success_rate: float = 1.0
    error_rate: float = 0.0
    latency: float = 0.0
    user_satisfaction: Optional[float] = None
    custom: Dict[str, float] = Field(default_factory=dict)

    def value(self, metric: str) -> Optional[float]:
        """
        Look up a metric by name.

        Accepts both ``error_rate`` and ``errorRate`` spellings; anything that
        is not a core field is looked up in ``custom``.
        """
        if metric in self.custom:
            return self.custom[metric]
        name = _CAMEL_BOUNDARY.sub("_", metric).lower()
        if name in ("success_rate", "error_rate", "latency", "user_satisfaction"):
            return getattr(self, name)
        return self.custom.get(name)

    def as_dict(self) -> Dict[str, float]:
        values = {
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "latency": self.latency,
        }
        if self.user_satisfaction is not None:
            values["user_satisfaction"] = self.user_satisfaction
        values.update(self.custom)
        return values
