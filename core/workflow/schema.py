"""
Workflow Schema - Agreements, Viewing Requests and Parties

Defines the canonical records shared by the agreement and viewing request
state machines. Enum values are the wire vocabulary used by the API layer
and by persisted JSON.

Principles:
- Agreements are never hard-deleted, only superseded
- Signature slots hold opaque signature blobs (base64 PNG data URLs)
- Every persisted record carries a version for compare-and-swap writes
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Final, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Enums
# =============================================================================


class Role(Enum):
    """Platform role of an acting user."""

    BUYER = "buyer"
    AGENT = "agent"
    SELLER = "seller"
    ADMIN = "admin"


class AgreementKind(Enum):
    """Type of signable document."""

    STANDARD = "standard"  # Buyer representation agreement
    AGENCY_DISCLOSURE = "agency-disclosure"
    AGENT_REFERRAL = "agent-referral"  # Single-party, agent only
    GLOBAL_REPRESENTATION = "global-representation"  # Not tied to a property


class AgreementStatus(Enum):
    """Lifecycle status of an agreement."""

    DRAFT = "draft"
    PENDING_BUYER = "pending-buyer"
    SIGNED_BY_BUYER = "signed-by-buyer"
    SIGNED_BUYER = "signed-buyer"  # Standard agreements only
    PENDING_REVIEW = "pending-review"
    SIGNED_BY_SELLER = "signed-by-seller"
    COMPLETED = "completed"
    REJECTED = "rejected"  # Admin override only


class SignatureSlot(Enum):
    """Signature slots on an agreement."""

    BUYER = "buyer"
    AGENT = "agent"
    SELLER = "seller"

    @property
    def role(self) -> Role:
        """Role allowed to populate this slot."""
        return Role(self.value)

    @property
    def anchor(self) -> str:
        """Named anchor in the rendered document where the signature lands."""
        return SIGNATURE_ANCHORS[self]


class ViewingStatus(Enum):
    """Top-level status of a viewing request."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ApprovalSide(Enum):
    """The two independent approval authorities on a viewing request."""

    BUYER_AGENT = "buyer-agent"
    SELLER_AGENT = "seller-agent"


class ApprovalStatus(Enum):
    """Per-side approval state."""

    NONE = "none"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalSource(Enum):
    """Channel through which an approval arrived."""

    DASHBOARD = "dashboard"
    PUBLIC_LINK = "public-link"
    ADMIN = "admin"


class ViewingDecision(Enum):
    """Decision a side can take on a pending viewing request."""

    ACCEPT = "accept"
    REJECT = "reject"
    RESCHEDULE = "reschedule"


# =============================================================================
# Constants
# =============================================================================

SIGNATURE_ANCHORS: Final[dict[SignatureSlot, str]] = {
    SignatureSlot.BUYER: "buyer_signature_1",
    SignatureSlot.AGENT: "agent_signature",
    SignatureSlot.SELLER: "seller_signature_1",
}

OPEN_VIEWING_STATUSES: Final[frozenset[ViewingStatus]] = frozenset({
    ViewingStatus.PENDING,
    ViewingStatus.ACCEPTED,
    ViewingStatus.RESCHEDULED,
})

TERMINAL_VIEWING_STATUSES: Final[frozenset[ViewingStatus]] = frozenset({
    ViewingStatus.COMPLETED,
    ViewingStatus.REJECTED,
    ViewingStatus.CANCELLED,
})


def generate_agreement_id() -> str:
    """Generate a unique agreement ID."""
    return f"AGR-{uuid.uuid4().hex[:12].upper()}"


def generate_viewing_request_id() -> str:
    """Generate a unique viewing request ID."""
    return f"VR-{uuid.uuid4().hex[:12].upper()}"


# =============================================================================
# Parties
# =============================================================================


@dataclass(frozen=True)
class Actor:
    """Identity and role of the caller of a mutating operation."""

    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class PropertyRecord:
    """
    Minimal property record used to resolve the parties of a property.

    Listing CRUD lives outside this package; only the seller and the
    assigned (listing) agent matter here.
    """

    property_id: str
    address: str
    seller_id: Optional[str] = None
    agent_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.property_id:
            raise ValueError("property_id is required")

    @property
    def has_reviewer(self) -> bool:
        """True if someone can review viewing requests for this property."""
        return bool(self.seller_id or self.agent_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_id": self.property_id,
            "address": self.address,
            "seller_id": self.seller_id,
            "agent_id": self.agent_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyRecord":
        return cls(
            property_id=data["property_id"],
            address=data.get("address", ""),
            seller_id=data.get("seller_id"),
            agent_id=data.get("agent_id"),
        )


# =============================================================================
# Time Window
# =============================================================================


@dataclass(frozen=True)
class TimeWindow:
    """A start/end instant pair for a viewing."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("Window end must be after window start")

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["TimeWindow"]:
        if not data:
            return None
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


# =============================================================================
# Agreement
# =============================================================================


@dataclass
class Agreement:
    """
    A signable document tied to a property, a buyer and an agent.

    Status is derived from the populated signature slots (see
    core.workflow.agreements.derive_status) except after an admin override.
    """

    # === IDENTITY ===
    agreement_id: str
    kind: AgreementKind
    agent_id: str
    property_id: Optional[str] = None
    buyer_id: Optional[str] = None
    is_global: bool = False

    # === STATE ===
    status: AgreementStatus = AgreementStatus.DRAFT
    agreement_text: str = ""

    # === SIGNATURE SLOTS ===
    buyer_signature: Optional[str] = None
    agent_signature: Optional[str] = None
    seller_signature: Optional[str] = None

    # === ARTIFACTS ===
    document_url: Optional[str] = None
    cached_edit: Optional[bytes] = field(default=None, repr=False)

    # === TIMESTAMPS ===
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    signed_at: Optional[datetime] = None

    # === CONCURRENCY ===
    version: int = 0

    def __post_init__(self) -> None:
        if not self.agreement_id:
            raise ValueError("agreement_id is required")
        if not self.agent_id:
            raise ValueError("agent_id is required")
        if not self.is_global and not self.property_id:
            raise ValueError("property_id is required unless the agreement is global")

    def signature(self, slot: SignatureSlot) -> Optional[str]:
        """Get the signature held in a slot."""
        return getattr(self, f"{slot.value}_signature")

    def set_signature(self, slot: SignatureSlot, signature: str) -> None:
        setattr(self, f"{slot.value}_signature", signature)

    def has_signature(self, slot: SignatureSlot) -> bool:
        return bool(self.signature(slot))

    @property
    def signed_slots(self) -> tuple[SignatureSlot, ...]:
        return tuple(slot for slot in SignatureSlot if self.has_signature(slot))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        data = self.to_public_dict()
        data.update({
            "buyer_signature": self.buyer_signature,
            "agent_signature": self.agent_signature,
            "seller_signature": self.seller_signature,
            "cached_edit": (
                base64.b64encode(self.cached_edit).decode("ascii")
                if self.cached_edit is not None
                else None
            ),
        })
        return data

    def to_public_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for API responses.

        Signature blobs and edited artifact bytes are replaced by flags.
        """
        return {
            "agreement_id": self.agreement_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "property_id": self.property_id,
            "agent_id": self.agent_id,
            "buyer_id": self.buyer_id,
            "is_global": self.is_global,
            "agreement_text": self.agreement_text,
            "signed_slots": [slot.value for slot in self.signed_slots],
            "document_url": self.document_url,
            "has_cached_edit": self.cached_edit is not None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "signed_at": _iso(self.signed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Agreement":
        cached = data.get("cached_edit")
        return cls(
            agreement_id=data["agreement_id"],
            kind=AgreementKind(data["kind"]),
            agent_id=data["agent_id"],
            property_id=data.get("property_id"),
            buyer_id=data.get("buyer_id"),
            is_global=data.get("is_global", False),
            status=AgreementStatus(data["status"]),
            agreement_text=data.get("agreement_text", ""),
            buyer_signature=data.get("buyer_signature"),
            agent_signature=data.get("agent_signature"),
            seller_signature=data.get("seller_signature"),
            document_url=data.get("document_url"),
            cached_edit=base64.b64decode(cached) if cached else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            signed_at=_parse_dt(data.get("signed_at")),
            version=data.get("version", 0),
        )


# =============================================================================
# Viewing Request
# =============================================================================


@dataclass
class SideApproval:
    """Approval sub-record for one side of a viewing request."""

    status: ApprovalStatus = ApprovalStatus.NONE
    approved_by: Optional[str] = None
    approval_date: Optional[datetime] = None
    source: Optional[ApprovalSource] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approval_date": _iso(self.approval_date),
            "source": self.source.value if self.source else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SideApproval":
        if not data:
            return cls()
        return cls(
            status=ApprovalStatus(data.get("status", "none")),
            approved_by=data.get("approved_by"),
            approval_date=_parse_dt(data.get("approval_date")),
            source=ApprovalSource(data["source"]) if data.get("source") else None,
        )


@dataclass
class ViewingRequest:
    """A buyer's request to view a property, gated on dual-side approval."""

    # === IDENTITY ===
    request_id: str
    property_id: str
    buyer_id: str
    requested_window: TimeWindow
    buyer_agent_id: Optional[str] = None
    seller_agent_id: Optional[str] = None

    # === STATE ===
    status: ViewingStatus = ViewingStatus.PENDING
    confirmed_window: Optional[TimeWindow] = None
    confirmed_by: Optional[str] = None
    buyer_agent_approval: SideApproval = field(default_factory=SideApproval)
    seller_agent_approval: SideApproval = field(default_factory=SideApproval)
    response_message: Optional[str] = None
    notes: Optional[str] = None

    # === TIMESTAMPS ===
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # === CONCURRENCY ===
    version: int = 0

    def __post_init__(self) -> None:
        if not self.request_id:
            raise ValueError("request_id is required")
        if not self.property_id:
            raise ValueError("property_id is required")
        if not self.buyer_id:
            raise ValueError("buyer_id is required")

    def approval(self, side: ApprovalSide) -> SideApproval:
        """Get the approval sub-record for a side."""
        if side == ApprovalSide.BUYER_AGENT:
            return self.buyer_agent_approval
        return self.seller_agent_approval

    def set_approval(self, side: ApprovalSide, approval: SideApproval) -> None:
        if side == ApprovalSide.BUYER_AGENT:
            self.buyer_agent_approval = approval
        else:
            self.seller_agent_approval = approval

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_VIEWING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_VIEWING_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "property_id": self.property_id,
            "buyer_id": self.buyer_id,
            "buyer_agent_id": self.buyer_agent_id,
            "seller_agent_id": self.seller_agent_id,
            "requested_window": self.requested_window.to_dict(),
            "confirmed_window": (
                self.confirmed_window.to_dict() if self.confirmed_window else None
            ),
            "confirmed_by": self.confirmed_by,
            "status": self.status.value,
            "buyer_agent_approval": self.buyer_agent_approval.to_dict(),
            "seller_agent_approval": self.seller_agent_approval.to_dict(),
            "response_message": self.response_message,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    # Viewing requests carry no secrets, so the public shape is the stored one.
    to_public_dict = to_dict

    @classmethod
    def from_dict(cls, data: dict) -> "ViewingRequest":
        return cls(
            request_id=data["request_id"],
            property_id=data["property_id"],
            buyer_id=data["buyer_id"],
            requested_window=TimeWindow.from_dict(data["requested_window"]),
            buyer_agent_id=data.get("buyer_agent_id"),
            seller_agent_id=data.get("seller_agent_id"),
            status=ViewingStatus(data["status"]),
            confirmed_window=TimeWindow.from_dict(data.get("confirmed_window")),
            confirmed_by=data.get("confirmed_by"),
            buyer_agent_approval=SideApproval.from_dict(data.get("buyer_agent_approval")),
            seller_agent_approval=SideApproval.from_dict(data.get("seller_agent_approval")),
            response_message=data.get("response_message"),
            notes=data.get("notes"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            version=data.get("version", 0),
        )
