"""
Viewing Workflow - Agreement Signatures and Viewing Approvals

Two coupled state machines and the orchestrator that drives them:
- agreements: signature-driven status of agreement documents
- viewing: dual-side approval of viewing requests
- orchestrator: permissions, regeneration, persistence, notifications
"""

from .schema import (
    Actor,
    Agreement,
    AgreementKind,
    AgreementStatus,
    ApprovalSide,
    ApprovalSource,
    ApprovalStatus,
    PropertyRecord,
    Role,
    SideApproval,
    SignatureSlot,
    TimeWindow,
    ViewingDecision,
    ViewingRequest,
    ViewingStatus,
)
from .results import ErrorKind, OperationFailure, OperationResult, OperationSuccess
from .errors import (
    ArtifactStorageError,
    DocumentRenderError,
    EntityNotFoundError,
    NotificationError,
    RepositoryUnavailableError,
    StaleEntityError,
    WorkflowError,
)
from .repository import (
    RecordCache,
    WorkflowRepository,
)
from .tokens import ViewingToken, ViewingTokenRepository, TokenStatus
from .notifications import (
    EventType,
    InMemoryNotificationBus,
    LoggingNotificationBus,
    NotificationBus,
    WebhookNotificationBus,
)
from .artifacts import ArtifactStorage, DocumentRenderer
from .activity_log import ActivityAction, ActivityLog
from .assignment import first_available_agent, fixed_agent, no_default_assignment
from .orchestrator import ApprovalOrchestrator

__all__ = [
    # Schema
    "Actor",
    "Agreement",
    "AgreementKind",
    "AgreementStatus",
    "ApprovalSide",
    "ApprovalSource",
    "ApprovalStatus",
    "PropertyRecord",
    "Role",
    "SideApproval",
    "SignatureSlot",
    "TimeWindow",
    "ViewingDecision",
    "ViewingRequest",
    "ViewingStatus",
    # Results and errors
    "ErrorKind",
    "OperationFailure",
    "OperationResult",
    "OperationSuccess",
    "ArtifactStorageError",
    "DocumentRenderError",
    "EntityNotFoundError",
    "NotificationError",
    "RepositoryUnavailableError",
    "StaleEntityError",
    "WorkflowError",
    # Collaborators
    "RecordCache",
    "WorkflowRepository",
    "ViewingToken",
    "ViewingTokenRepository",
    "TokenStatus",
    "EventType",
    "InMemoryNotificationBus",
    "LoggingNotificationBus",
    "NotificationBus",
    "WebhookNotificationBus",
    "ArtifactStorage",
    "DocumentRenderer",
    "ActivityAction",
    "ActivityLog",
    "first_available_agent",
    "fixed_agent",
    "no_default_assignment",
    # Orchestrator
    "ApprovalOrchestrator",
]
