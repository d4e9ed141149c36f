"""
Viewing Workflow - Core Business Logic

This package provides the agreement and viewing request workflow:
1. Agreement signatures (status derived from signature slots)
2. Viewing request dual approval (buyer agent and seller side)
3. Orchestration (permissions, document regeneration, notifications)
"""

from .workflow import (
    Actor,
    Agreement,
    AgreementKind,
    AgreementStatus,
    ApprovalOrchestrator,
    ErrorKind,
    OperationFailure,
    OperationResult,
    OperationSuccess,
    Role,
    ViewingDecision,
    ViewingRequest,
    ViewingStatus,
)

__all__ = [
    "Actor",
    "Agreement",
    "AgreementKind",
    "AgreementStatus",
    "ApprovalOrchestrator",
    "ErrorKind",
    "OperationFailure",
    "OperationResult",
    "OperationSuccess",
    "Role",
    "ViewingDecision",
    "ViewingRequest",
    "ViewingStatus",
]
