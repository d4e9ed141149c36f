"""
Workflow exceptions.

These are raised by collaborators (repository, renderer, artifact storage,
notification bus) and converted to results or warnings by the orchestrator.
They never cross the orchestrator boundary.
"""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for approval workflow errors."""


class EntityNotFoundError(WorkflowError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class StaleEntityError(WorkflowError):
    """Raised when a versioned write finds a newer version in the store."""

    def __init__(self, entity_id: str, expected_version: int, actual_version: int):
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class RepositoryUnavailableError(WorkflowError):
    """Raised when the persistence layer cannot be reached."""


class DocumentRenderError(WorkflowError):
    """Raised when an agreement document cannot be rendered or overlaid."""

    def __init__(self, message: str, anchor: Optional[str] = None):
        self.anchor = anchor
        super().__init__(message)


class ArtifactStorageError(WorkflowError):
    """Raised when a rendered artifact cannot be written or read."""


class NotificationError(WorkflowError):
    """Raised when a notification bus fails to deliver."""
