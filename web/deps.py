"""
Shared request helpers for the workflow routes.

Authentication happens upstream; the gateway forwards the caller's identity
in the X-Actor-Id and X-Actor-Role headers.
"""

from __future__ import annotations

from typing import Final, Optional

from fastapi import Header, HTTPException, Request

from core.workflow import (
    Actor,
    ApprovalOrchestrator,
    ErrorKind,
    OperationFailure,
    OperationResult,
    Role,
)


HTTP_STATUS_FOR_ERROR: Final[dict[ErrorKind, int]] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.TOKEN_INVALID: 403,
    ErrorKind.TOKEN_ALREADY_USED: 409,
    ErrorKind.PRECONDITION_FAILED: 412,
    ErrorKind.UNAVAILABLE: 503,
}


def get_orchestrator(request: Request) -> ApprovalOrchestrator:
    """Orchestrator attached to the running app by create_app()."""
    return request.app.state.orchestrator


def require_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Build the calling Actor from forwarded identity headers.

    Raises:
        HTTPException(401) if either header is missing
        HTTPException(400) if the role is unknown
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        role = Role(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_actor_role}")
    return Actor(user_id=x_actor_id, role=role)


def unwrap(result: OperationResult) -> dict:
    """
    Convert an operation result to a response body.

    Raises:
        HTTPException with the mapped status if the operation failed
    """
    if isinstance(result, OperationFailure):
        raise HTTPException(
            status_code=HTTP_STATUS_FOR_ERROR[result.kind],
            detail=result.to_dict(),
        )
    return result.to_dict()
