"""
Operation Results for the Approval Workflow

Every orchestrator operation returns one of these instead of raising.
Callers branch on `outcome` ("ok" or an error kind) and always receive the
entity as it stands after the call when one exists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from core.workflow.schema import Agreement, ViewingRequest


class ErrorKind(Enum):
    """Discriminant of a failed operation."""

    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    INVALID_INPUT = "invalid-input"
    TOKEN_INVALID = "token-invalid"
    TOKEN_ALREADY_USED = "token-already-used"
    PRECONDITION_FAILED = "precondition-failed"
    UNAVAILABLE = "unavailable"  # Persistence down, no transition applied


Entity = Union[Agreement, ViewingRequest]


@dataclass(frozen=True)
class OperationSuccess:
    """Returned when a transition was applied and persisted."""

    entity: Entity
    warnings: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        return "ok"

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "entity": self.entity.to_public_dict(),
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class OperationFailure:
    """Returned when an operation was refused. Nothing was written."""

    kind: ErrorKind
    reason: str
    current_status: Optional[str] = None
    entity: Optional[Entity] = None

    @property
    def outcome(self) -> str:
        return self.kind.value

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reason": self.reason,
            "current_status": self.current_status,
            "entity": self.entity.to_public_dict() if self.entity else None,
        }


OperationResult = Union[OperationSuccess, OperationFailure]


def failure(
    kind: ErrorKind,
    reason: str,
    entity: Optional[Entity] = None,
) -> OperationFailure:
    """Build a failure, naming the entity's current status when known."""
    return OperationFailure(
        kind=kind,
        reason=reason,
        current_status=entity.status.value if entity is not None else None,
        entity=entity,
    )
