"""Exception types shared across the pipeline."""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class StoreUnavailableError(PipelineError):
    """Backing store could not be reached; the caller should retry later."""

    def __init__(self, message: str, retry_after: int = 5):
        super().__init__(message)
        self.retry_after = retry_after


class WorkspaceMismatchError(PipelineError):
    """An entity of one workspace was referenced from another."""


class InvalidEventError(PipelineError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnknownUserError(PipelineError):
    pass


class ResolutionConflictError(PipelineError):
    """Ownership changed underneath a resolution; safe to retry."""


class DestinationUnavailableError(PipelineError):
    """Transient delivery failure (network, 5xx)."""


class UnknownDestinationTypeError(PipelineError):
    pass


class InvalidPolicyError(PipelineError):
    pass


def ensure_same_workspace(expected: str, *entities) -> None:
    for entity in entities:
        if entity is None:
            continue
        ws = getattr(entity, "workspace_id", None)
        if ws is not None and ws != expected:
            raise WorkspaceMismatchError(
                f"{entity.__class__.__name__} {getattr(entity, 'id', '?')} belongs to workspace {ws}, not {expected}"
            )
