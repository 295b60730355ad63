"""Exceptions raised by the experimentation services."""


class CohortLabError(Exception):
    """Base class for engine errors."""
    pass


class ConfigurationError(CohortLabError):
    """Raised at creation time when an experiment, flag or plan is invalid."""
    pass


class NotFoundError(CohortLabError):
    """Raised when operating on an unknown experiment, flag or rollout id."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class InvalidTransitionError(CohortLabError):
    """Raised when a lifecycle operation is not allowed from the current status."""
    pass


class CollaboratorFailure(CohortLabError):
    """Raised by store and metrics adapters when the backing service fails."""
    pass
