"""
Decision Engine - Error Taxonomy

Every operation raises one of these. Callers map them onto their own
transport (HTTP status, CLI exit code). NotFoundError deliberately does not
distinguish "absent", "soft-deleted" and "owned by someone else".
"""
from typing import Optional


class DecisionEngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(DecisionEngineError):
    """Record is absent, soft-deleted, or not owned by the caller."""

    def __init__(self, resource: str = "decision", resource_id: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ValidationError(DecisionEngineError):
    """Request payload failed validation. Raised before any write."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ConflictError(DecisionEngineError):
    """A uniqueness constraint or concurrent update could not be reconciled."""


class DependencyUnavailableError(DecisionEngineError):
    """The underlying store could not be reached."""
