"""
Approval Orchestrator

The single entry point for every agreement and viewing request mutation.
For each call it:

1. Resolves the actor's permission for the entity
2. Runs the pure state machine transition (agreements / viewing)
3. Regenerates the agreement document when a signature slot changed
4. Writes the entity back with compare-and-swap on its version
5. Re-derives disclosure completion against open viewing requests
6. Appends to the property activity log
7. Notifies buyer, buyer agent, seller agent and seller, in that order

Every public method returns an OperationResult. Collaborator exceptions
are converted here and never escape.

Safety Rules:
- A stale write is a conflict; nothing is merged
- Rendering failures do not block the transition; they surface as warnings
- Notification and activity-log failures never roll back a transition
- A public token is claimed for the whole approval and consumed only after
  an accept or reject was persisted
"""

from __future__ import annotations

import copy
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from core.workflow import agreements as agreement_machine
from core.workflow import viewing as viewing_machine
from core.workflow.activity_log import ActivityAction, ActivityLog
from core.workflow.artifacts import ArtifactStorage, DocumentRenderer, render_fields
from core.workflow.assignment import AssignmentPolicy, no_default_assignment
from core.workflow.errors import (
    ArtifactStorageError,
    DocumentRenderError,
    RepositoryUnavailableError,
    StaleEntityError,
)
from core.workflow.notifications import EventType, NotificationBus, collect_recipients
from core.workflow.repository import RecordCache, WorkflowRepository
from core.workflow.results import (
    ErrorKind,
    OperationFailure,
    OperationResult,
    OperationSuccess,
    failure,
)
from core.workflow.schema import (
    Actor,
    Agreement,
    AgreementKind,
    AgreementStatus,
    ApprovalSide,
    ApprovalSource,
    PropertyRecord,
    Role,
    SignatureSlot,
    ViewingDecision,
    ViewingRequest,
    utc_now,
)
from core.workflow.tokens import TokenValidationFailure, ViewingTokenRepository
from utils.formatting import format_window

logger = logging.getLogger(__name__)


# Agreement kinds that represent a buyer (used to find the buyer's agent)
REPRESENTATION_KINDS = (AgreementKind.STANDARD, AgreementKind.GLOBAL_REPRESENTATION)

# Disclosure statuses a buyer can still take over when creating a new one
REUSABLE_DISCLOSURE_STATUSES = (AgreementStatus.DRAFT, AgreementStatus.PENDING_BUYER)

# Kinds each role may create
CREATABLE_KINDS = {
    Role.BUYER: frozenset({
        AgreementKind.STANDARD,
        AgreementKind.AGENCY_DISCLOSURE,
        AgreementKind.GLOBAL_REPRESENTATION,
    }),
    Role.AGENT: frozenset(AgreementKind),
    Role.ADMIN: frozenset(AgreementKind),
    Role.SELLER: frozenset(),
}


def _persistence_guard(method: Callable[..., OperationResult]) -> Callable[..., OperationResult]:
    """Turn an unavailable repository into an `unavailable` result."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs) -> OperationResult:
        try:
            return method(self, *args, **kwargs)
        except RepositoryUnavailableError as e:
            logger.error("Persistence unavailable during %s: %s", method.__name__, e)
            return failure(ErrorKind.UNAVAILABLE, "Storage is temporarily unavailable")

    return wrapper


class ApprovalOrchestrator:
    """
    Applies party permissions and side effects around both state machines.

    Collaborators are injected; only the repository and token service are
    required.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        tokens: ViewingTokenRepository,
        renderer: Optional[DocumentRenderer] = None,
        artifacts: Optional[ArtifactStorage] = None,
        notifications: Optional[NotificationBus] = None,
        activity_log: Optional[ActivityLog] = None,
        cache: Optional[RecordCache] = None,
        assignment_policy: AssignmentPolicy = no_default_assignment,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.tokens = tokens
        self.renderer = renderer
        self.artifacts = artifacts
        self.notifications = notifications
        self.activity_log = activity_log
        self.cache = cache or RecordCache()
        self.assignment_policy = assignment_policy
        self.clock = clock

    # =========================================================================
    # Agreements
    # =========================================================================

    @_persistence_guard
    def create_agreement(
        self,
        actor: Actor,
        kind: AgreementKind,
        property_id: Optional[str] = None,
        buyer_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        signature: Optional[str] = None,
        slot: Optional[SignatureSlot] = None,
        agreement_text: str = "",
    ) -> OperationResult:
        """
        Create an agreement, optionally signed by its creator.

        Buyers create their own agreements; agents create agreements they are
        party to; sellers create none. If no agent is named, the property's
        listing agent is used, then the injected assignment policy.

        A buyer creating an agency disclosure for a property where their
        draft or pending-buyer disclosure already exists signs that one
        instead of opening a second.
        """
        if kind not in CREATABLE_KINDS[actor.role]:
            return failure(
                ErrorKind.FORBIDDEN,
                f"A {actor.role.value} cannot create a {kind.value} agreement",
            )

        if actor.role == Role.BUYER:
            if buyer_id and buyer_id != actor.user_id:
                return failure(ErrorKind.FORBIDDEN, "Buyers can only create their own agreements")
            buyer_id = actor.user_id
        if actor.role == Role.AGENT:
            if agent_id and agent_id != actor.user_id:
                return failure(ErrorKind.FORBIDDEN, "Agents can only create their own agreements")
            agent_id = actor.user_id

        if slot is None and signature is not None and actor.role != Role.ADMIN:
            slot = SignatureSlot(actor.role.value)
        if slot is not None and not self._may_fill_slot(actor, slot):
            return failure(ErrorKind.FORBIDDEN, f"A {actor.role.value} cannot sign the {slot.value} slot")

        property_record = None
        if kind != AgreementKind.GLOBAL_REPRESENTATION:
            if not property_id:
                return failure(ErrorKind.INVALID_INPUT, "property_id is required")
            property_record = self.repository.get_property(property_id)
            if property_record is None:
                return failure(ErrorKind.NOT_FOUND, f"Property not found: {property_id}")

        if (
            actor.role == Role.BUYER
            and kind == AgreementKind.AGENCY_DISCLOSURE
            and signature is not None
        ):
            existing = self._reusable_disclosure(property_id, buyer_id)
            if existing is not None:
                logger.info("Reusing disclosure %s for buyer %s", existing.agreement_id, buyer_id)
                return self._sign(existing, actor, SignatureSlot.BUYER, signature, fresh_render=False)

        agent_id = agent_id or self._default_agent(property_record)
        if not agent_id:
            return failure(ErrorKind.PRECONDITION_FAILED, "No agent is available for this agreement")

        has_open = bool(property_id) and self.repository.has_open_viewing(property_id)
        result = agreement_machine.create_agreement(
            kind=kind,
            agent_id=agent_id,
            property_id=property_id,
            buyer_id=buyer_id,
            agreement_text=agreement_text,
            initial_slot=slot,
            initial_signature=signature,
            has_open_viewing=has_open,
            now=self.clock(),
        )
        if isinstance(result, OperationFailure):
            return result

        agreement = result.entity
        warnings: tuple[str, ...] = ()
        if slot is not None and agreement.has_signature(slot):
            warnings = self._regenerate(agreement, slot, fresh_render=True, property_record=property_record)

        stored = self.repository.add_agreement(agreement)
        self.cache.put(self._agreement_key(stored.agreement_id), stored)
        self._record(
            stored.property_id,
            ActivityAction.AGREEMENT_CREATED,
            actor.user_id,
            stored.agreement_id,
            {"kind": kind.value, "status": stored.status.value},
        )
        self._notify_agreement(stored, property_record, f"New {kind.value} agreement")
        return OperationSuccess(entity=stored, warnings=warnings)

    def sign_as_buyer(self, agreement_id: str, actor: Actor, signature: str,
                      fresh_render: bool = False) -> OperationResult:
        return self._sign_by_id(agreement_id, actor, SignatureSlot.BUYER, signature, fresh_render)

    def sign_as_agent(self, agreement_id: str, actor: Actor, signature: str,
                      fresh_render: bool = False) -> OperationResult:
        return self._sign_by_id(agreement_id, actor, SignatureSlot.AGENT, signature, fresh_render)

    def sign_as_seller(self, agreement_id: str, actor: Actor, signature: str,
                       fresh_render: bool = False) -> OperationResult:
        return self._sign_by_id(agreement_id, actor, SignatureSlot.SELLER, signature, fresh_render)

    @_persistence_guard
    def set_status_admin(
        self,
        agreement_id: str,
        actor: Actor,
        status: AgreementStatus,
    ) -> OperationResult:
        """Force an agreement status. Admins only; used for manual correction."""
        agreement = self.repository.get_agreement(agreement_id)
        if agreement is None:
            return failure(ErrorKind.NOT_FOUND, f"Agreement not found: {agreement_id}")
        if not actor.is_admin:
            return failure(ErrorKind.FORBIDDEN, "Only an admin can set an agreement status", agreement)

        result = agreement_machine.set_status_admin(agreement, status, now=self.clock())
        stored = self._write_agreement(result.entity, agreement.version)
        if isinstance(stored, OperationFailure):
            return stored

        self._record(
            stored.property_id,
            ActivityAction.AGREEMENT_STATUS_FORCED,
            actor.user_id,
            stored.agreement_id,
            {"from": agreement.status.value, "to": status.value},
        )
        self._notify_agreement(stored, None, f"Agreement status set to {status.value}")
        return OperationSuccess(entity=stored)

    @_persistence_guard
    def save_edited_artifact(
        self,
        agreement_id: str,
        actor: Actor,
        content: bytes,
    ) -> OperationResult:
        """
        Keep a hand-edited copy of the agreement document.

        Later signatures are stamped onto this copy instead of a fresh render.
        """
        agreement = self.repository.get_agreement(agreement_id)
        if agreement is None:
            return failure(ErrorKind.NOT_FOUND, f"Agreement not found: {agreement_id}")
        if not self._is_agreement_party(actor, agreement):
            return failure(ErrorKind.FORBIDDEN, "Only a party to the agreement can edit it", agreement)
        if not content:
            return failure(ErrorKind.INVALID_INPUT, "Edited document is empty", agreement)

        updated = copy.deepcopy(agreement)
        updated.cached_edit = content
        updated.updated_at = self.clock()
        warnings = self._store_artifact(updated, content)

        stored = self._write_agreement(updated, agreement.version)
        if isinstance(stored, OperationFailure):
            return stored

        self._record(
            stored.property_id,
            ActivityAction.AGREEMENT_EDITED,
            actor.user_id,
            stored.agreement_id,
            {"size_bytes": len(content)},
        )
        return OperationSuccess(entity=stored, warnings=warnings)

    def get_agreement(self, agreement_id: str) -> OperationResult:
        """Fetch an agreement, falling back to the cache if storage is down."""
        return self._read(
            self._agreement_key(agreement_id),
            lambda: self.repository.get_agreement(agreement_id),
            f"Agreement not found: {agreement_id}",
        )

    @_persistence_guard
    def get_latest_agreement(
        self,
        property_id: str,
        kind: AgreementKind,
        buyer_id: Optional[str] = None,
    ) -> OperationResult:
        """Most recently created agreement of a kind for a property."""
        agreement = self.repository.latest_agreement(property_id, kind, buyer_id=buyer_id)
        if agreement is None:
            return failure(
                ErrorKind.NOT_FOUND,
                f"No {kind.value} agreement for property {property_id}",
            )
        self.cache.put(self._agreement_key(agreement.agreement_id), agreement)
        return OperationSuccess(entity=agreement)

    def list_agreements(self, **filters: Any) -> list[Agreement]:
        """List agreements by property_id, buyer_id, agent_id, kind or status."""
        return self.repository.list_agreements(**filters)

    @_persistence_guard
    def get_document(self, agreement_id: str) -> OperationResult:
        """
        Current document bytes for an agreement, in details["document"].

        Prefers the edited copy, then the last stored artifact, then a fresh
        render with every present signature.
        """
        agreement = self.repository.get_agreement(agreement_id)
        if agreement is None:
            return failure(ErrorKind.NOT_FOUND, f"Agreement not found: {agreement_id}")

        if agreement.cached_edit is not None:
            return OperationSuccess(entity=agreement, details={"document": agreement.cached_edit})

        if agreement.document_url and self.artifacts is not None:
            content = self.artifacts.retrieve_url(agreement.document_url)
            if content is not None:
                return OperationSuccess(entity=agreement, details={"document": content})

        if self.renderer is None:
            return failure(ErrorKind.NOT_FOUND, "No document is available for this agreement", agreement)

        try:
            content = self._compose(agreement, None)
        except DocumentRenderError as e:
            logger.warning("Could not render %s: %s", agreement_id, e)
            return failure(ErrorKind.UNAVAILABLE, f"Document could not be rendered: {e}", agreement)
        return OperationSuccess(entity=agreement, details={"document": content})

    # =========================================================================
    # Viewing Requests
    # =========================================================================

    @_persistence_guard
    def create_viewing_request(
        self,
        actor: Actor,
        property_id: str,
        start: Optional[datetime],
        end: Optional[datetime],
        buyer_id: Optional[str] = None,
        buyer_agent_id: Optional[str] = None,
        notes: Optional[str] = None,
        replace_existing: bool = False,
    ) -> OperationResult:
        """
        Request a viewing on behalf of a buyer.

        One open request per buyer and property: a second one is a conflict
        unless replace_existing cancels the open one first. A public token is
        issued for the seller side and its link returned in
        details["public_link"].
        """
        if actor.role == Role.BUYER:
            if buyer_id and buyer_id != actor.user_id:
                return failure(ErrorKind.FORBIDDEN, "Buyers can only request viewings for themselves")
            buyer_id = actor.user_id
        elif not actor.is_admin:
            return failure(ErrorKind.FORBIDDEN, "Only buyers can request viewings")
        if not buyer_id:
            return failure(ErrorKind.INVALID_INPUT, "buyer_id is required")

        property_record = self.repository.get_property(property_id)
        if property_record is None:
            return failure(ErrorKind.NOT_FOUND, f"Property not found: {property_id}")

        now = self.clock()
        result = viewing_machine.create_viewing_request(
            property_record,
            buyer_id,
            start,
            end,
            buyer_agent_id=buyer_agent_id or self._buyer_agent_for(buyer_id),
            notes=notes,
            now=now,
        )
        if isinstance(result, OperationFailure):
            return result

        existing = self.repository.open_request_for(buyer_id, property_id)
        if existing is not None:
            if not replace_existing:
                return failure(
                    ErrorKind.CONFLICT,
                    f"Buyer already has an open viewing request ({existing.request_id})",
                    existing,
                )
            replaced = self._cancel_replaced(existing, actor)
            if isinstance(replaced, OperationFailure):
                return replaced

        stored = self.repository.add_viewing_request(result.entity)
        self.cache.put(self._viewing_key(stored.request_id), stored)

        token = self.tokens.issue(stored.request_id)
        link = self.tokens.public_link(token)

        self._after_viewing_transition(
            stored,
            property_record,
            actor.user_id,
            ActivityAction.VIEWING_REQUESTED,
            EventType.VIEWING_REQUEST_CREATED,
            f"Viewing requested for {property_record.address}: "
            f"{format_window(stored.requested_window.start, stored.requested_window.end)}",
            {"public_link": link},
        )
        return OperationSuccess(entity=stored, details={"public_link": link})

    def approve_as_buyer_agent(
        self,
        request_id: str,
        actor: Actor,
        decision: ViewingDecision,
        message: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> OperationResult:
        """Record the buyer agent's decision from the dashboard."""
        return self._approve_as(request_id, actor, ApprovalSide.BUYER_AGENT, decision, message, start, end)

    def approve_as_seller_agent(
        self,
        request_id: str,
        actor: Actor,
        decision: ViewingDecision,
        message: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> OperationResult:
        """Record the seller side's decision from the dashboard."""
        return self._approve_as(request_id, actor, ApprovalSide.SELLER_AGENT, decision, message, start, end)

    @_persistence_guard
    def approve_via_token(
        self,
        token_value: str,
        decision: ViewingDecision,
        message: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Record the seller side's decision from a public link.

        The token is claimed before the transition. Accept and reject consume
        it; reschedule and any failure release it for another attempt.
        """
        claim = self.tokens.claim(token_value)
        if isinstance(claim, TokenValidationFailure):
            kind = ErrorKind.TOKEN_ALREADY_USED if claim.already_used else ErrorKind.TOKEN_INVALID
            return failure(kind, claim.reason)

        consumed = False
        try:
            request = self.repository.get_viewing_request(claim.viewing_request_id)
            if request is None:
                return failure(ErrorKind.TOKEN_INVALID, "Viewing request no longer exists")
            property_record = self.repository.get_property(request.property_id)
            approver_id = None
            if property_record is not None:
                approver_id = property_record.agent_id or property_record.seller_id

            result = self._approve(
                request,
                property_record,
                ApprovalSide.SELLER_AGENT,
                decision,
                ApprovalSource.PUBLIC_LINK,
                approver_id,
                message,
                start,
                end,
            )
            if isinstance(result, OperationSuccess) and decision != ViewingDecision.RESCHEDULE:
                consumed = self.tokens.consume(token_value)
            return result
        finally:
            if not consumed:
                self.tokens.release(token_value)

    @_persistence_guard
    def reschedule(
        self,
        request_id: str,
        actor: Actor,
        start: Optional[datetime],
        end: Optional[datetime],
        message: Optional[str] = None,
    ) -> OperationResult:
        """
        Propose a new window. Seller-side parties and the buyer agent only.

        The responder's side is recorded as approved for the new window.
        """
        request = self.repository.get_viewing_request(request_id)
        if request is None:
            return failure(ErrorKind.NOT_FOUND, f"Viewing request not found: {request_id}")
        property_record = self.repository.get_property(request.property_id)

        if actor.is_admin:
            side, source = None, ApprovalSource.ADMIN
        elif self._is_seller_side(actor, request, property_record):
            side, source = ApprovalSide.SELLER_AGENT, ApprovalSource.DASHBOARD
        elif self._is_buyer_agent(actor, request):
            side, source = ApprovalSide.BUYER_AGENT, ApprovalSource.DASHBOARD
        else:
            return failure(ErrorKind.FORBIDDEN, "You cannot reschedule this viewing", request)

        result = viewing_machine.update_schedule(
            request,
            start,
            end,
            responder_id=actor.user_id,
            side=side,
            source=source,
            message=message,
            now=self.clock(),
        )
        if isinstance(result, OperationFailure):
            return result

        stored = self._write_viewing(result.entity, request.version)
        if isinstance(stored, OperationFailure):
            return stored

        window = stored.confirmed_window
        self._after_viewing_transition(
            stored,
            property_record,
            actor.user_id,
            ActivityAction.VIEWING_RESCHEDULED,
            EventType.VIEWING_REQUEST_UPDATED,
            f"Viewing rescheduled to {format_window(window.start, window.end)}",
        )
        return OperationSuccess(entity=stored)

    @_persistence_guard
    def cancel(
        self,
        request_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> OperationResult:
        """Cancel a viewing. Only the requesting buyer or an admin may."""
        request = self.repository.get_viewing_request(request_id)
        if request is None:
            return failure(ErrorKind.NOT_FOUND, f"Viewing request not found: {request_id}")
        if not (actor.is_admin or (actor.role == Role.BUYER and actor.user_id == request.buyer_id)):
            return failure(
                ErrorKind.FORBIDDEN,
                "Only the requesting buyer or an admin can cancel a viewing",
                request,
            )

        result = viewing_machine.cancel(request, note=reason, now=self.clock())
        if isinstance(result, OperationFailure):
            return result

        stored = self._write_viewing(result.entity, request.version)
        if isinstance(stored, OperationFailure):
            return stored

        self.tokens.revoke_for_request(stored.request_id)
        self._after_viewing_transition(
            stored,
            self.repository.get_property(stored.property_id),
            actor.user_id,
            ActivityAction.VIEWING_CANCELLED,
            EventType.VIEWING_REQUEST_CANCELLED,
            "Viewing request cancelled",
        )
        return OperationSuccess(entity=stored)

    @_persistence_guard
    def complete(self, request_id: str, actor: Actor) -> OperationResult:
        """
        Mark a confirmed viewing as completed.

        Requires the property's latest agency disclosure to be signed by all
        parties.
        """
        request = self.repository.get_viewing_request(request_id)
        if request is None:
            return failure(ErrorKind.NOT_FOUND, f"Viewing request not found: {request_id}")
        property_record = self.repository.get_property(request.property_id)
        if not (
            actor.is_admin
            or self._is_buyer_agent(actor, request)
            or self._is_seller_side(actor, request, property_record)
        ):
            return failure(ErrorKind.FORBIDDEN, "You cannot complete this viewing", request)

        disclosure = self.repository.latest_agreement(
            request.property_id, AgreementKind.AGENCY_DISCLOSURE
        )
        result = viewing_machine.complete(
            request,
            disclosure.status if disclosure else None,
            now=self.clock(),
        )
        if isinstance(result, OperationFailure):
            return result

        stored = self._write_viewing(result.entity, request.version)
        if isinstance(stored, OperationFailure):
            return stored

        self._after_viewing_transition(
            stored,
            property_record,
            actor.user_id,
            ActivityAction.VIEWING_COMPLETED,
            EventType.VIEWING_REQUEST_UPDATED,
            "Viewing completed",
        )
        return OperationSuccess(entity=stored)

    def get_viewing_request(self, request_id: str) -> OperationResult:
        """Fetch a viewing request, falling back to the cache if storage is down."""
        return self._read(
            self._viewing_key(request_id),
            lambda: self.repository.get_viewing_request(request_id),
            f"Viewing request not found: {request_id}",
        )

    def list_viewing_requests(self, **filters: Any) -> list[ViewingRequest]:
        """List viewing requests by property_id, buyer_id, agent_id or status."""
        return self.repository.list_viewing_requests(**filters)

    @_persistence_guard
    def get_public_viewing(self, token_value: str) -> OperationResult:
        """
        Resolve a public link to its viewing request.

        details["property"] carries the property address for the public page.
        """
        validation = self.tokens.validate(token_value)
        if isinstance(validation, TokenValidationFailure):
            kind = ErrorKind.TOKEN_ALREADY_USED if validation.already_used else ErrorKind.TOKEN_INVALID
            return failure(kind, validation.reason)

        request = self.repository.get_viewing_request(validation.viewing_request_id)
        if request is None:
            return failure(ErrorKind.TOKEN_INVALID, "Viewing request no longer exists")
        property_record = self.repository.get_property(request.property_id)
        return OperationSuccess(
            entity=request,
            details={"property": property_record.to_dict() if property_record else None},
        )

    # =========================================================================
    # Agreement Internals
    # =========================================================================

    @_persistence_guard
    def _sign_by_id(
        self,
        agreement_id: str,
        actor: Actor,
        slot: SignatureSlot,
        signature: str,
        fresh_render: bool,
    ) -> OperationResult:
        agreement = self.repository.get_agreement(agreement_id)
        if agreement is None:
            return failure(ErrorKind.NOT_FOUND, f"Agreement not found: {agreement_id}")
        return self._sign(agreement, actor, slot, signature, fresh_render)

    def _sign(
        self,
        agreement: Agreement,
        actor: Actor,
        slot: SignatureSlot,
        signature: str,
        fresh_render: bool,
    ) -> OperationResult:
        property_record = (
            self.repository.get_property(agreement.property_id)
            if agreement.property_id
            else None
        )
        if not self._may_sign(actor, agreement, slot, property_record):
            return failure(
                ErrorKind.FORBIDDEN,
                f"You cannot sign the {slot.value} slot of this agreement",
                agreement,
            )

        has_open = (
            agreement.property_id is not None
            and self.repository.has_open_viewing(agreement.property_id)
        )
        result = agreement_machine.apply_signature(
            agreement, slot, signature, has_open, now=self.clock()
        )
        if isinstance(result, OperationFailure):
            return result

        updated = result.entity
        if slot == SignatureSlot.BUYER and updated.buyer_id is None:
            updated.buyer_id = actor.user_id

        warnings = self._regenerate(updated, slot, fresh_render, property_record)
        stored = self._write_agreement(updated, agreement.version)
        if isinstance(stored, OperationFailure):
            return stored

        self._record(
            stored.property_id,
            ActivityAction.AGREEMENT_SIGNED,
            actor.user_id,
            stored.agreement_id,
            {"slot": slot.value, "status": stored.status.value},
        )
        self._notify_agreement(
            stored,
            property_record,
            f"{slot.value.capitalize()} signed the {stored.kind.value} agreement",
        )
        return OperationSuccess(entity=stored, warnings=warnings)

    def _regenerate(
        self,
        agreement: Agreement,
        changed_slot: SignatureSlot,
        fresh_render: bool,
        property_record: Optional[PropertyRecord],
    ) -> tuple[str, ...]:
        """
        Rebuild the document after a signature change. Mutates the agreement.

        With an edited copy (and no fresh render requested) only the changed
        slot is stamped onto the edited copy, and the result replaces it.
        Otherwise the template is rendered and every present signature is
        stamped; the edited copy is discarded.
        """
        if self.renderer is None:
            return ()

        use_edit = agreement.cached_edit is not None and not fresh_render
        try:
            if use_edit:
                content = self.renderer.overlay_signature(
                    agreement.cached_edit,
                    agreement.signature(changed_slot),
                    changed_slot.anchor,
                )
                agreement.cached_edit = content
            else:
                content = self._compose(agreement, property_record)
                agreement.cached_edit = None
        except DocumentRenderError as e:
            logger.warning("Document regeneration failed for %s: %s", agreement.agreement_id, e)
            return (f"Document was not regenerated: {e}",)

        return self._store_artifact(agreement, content)

    def _compose(self, agreement: Agreement, property_record: Optional[PropertyRecord]) -> bytes:
        """Render the template and stamp every present signature."""
        if property_record is None and agreement.property_id:
            property_record = self.repository.get_property(agreement.property_id)
        address = property_record.address if property_record else None

        content = self.renderer.render_document(agreement.kind, render_fields(agreement, address))
        for slot in agreement.signed_slots:
            content = self.renderer.overlay_signature(content, agreement.signature(slot), slot.anchor)
        return content

    def _store_artifact(self, agreement: Agreement, content: bytes) -> tuple[str, ...]:
        if self.artifacts is None:
            return ()
        try:
            stored = self.artifacts.store(agreement.agreement_id, content)
        except ArtifactStorageError as e:
            logger.warning("Could not store document for %s: %s", agreement.agreement_id, e)
            return (f"Document was not stored: {e}",)
        agreement.document_url = stored.url
        return ()

    def _write_agreement(self, agreement: Agreement, expected_version: int):
        try:
            stored = self.repository.save_agreement(agreement, expected_version)
        except StaleEntityError as e:
            logger.warning("Rejected stale agreement write: %s", e)
            return failure(
                ErrorKind.CONFLICT,
                "Agreement was modified by someone else; reload and retry",
                self.repository.get_agreement(agreement.agreement_id),
            )
        self.cache.put(self._agreement_key(stored.agreement_id), stored)
        return stored

    def _reusable_disclosure(self, property_id: str, buyer_id: str) -> Optional[Agreement]:
        for agreement in self.repository.list_agreements(
            property_id=property_id,
            buyer_id=buyer_id,
            kind=AgreementKind.AGENCY_DISCLOSURE,
        ):
            if agreement.status in REUSABLE_DISCLOSURE_STATUSES:
                return agreement
        return None

    def _default_agent(self, property_record: Optional[PropertyRecord]) -> Optional[str]:
        if property_record is not None and property_record.agent_id:
            return property_record.agent_id
        return self.assignment_policy(property_record)

    def _buyer_agent_for(self, buyer_id: str) -> Optional[str]:
        """Agent on the buyer's most recent representation agreement."""
        for agreement in self.repository.list_agreements(buyer_id=buyer_id):
            if agreement.kind in REPRESENTATION_KINDS and agreement.status != AgreementStatus.REJECTED:
                return agreement.agent_id
        return None

    def _rederive_disclosures(self, property_id: str, actor_id: str) -> None:
        """Flip fully signed disclosures between signed-by-seller and completed."""
        has_open = self.repository.has_open_viewing(property_id)
        for disclosure in self.repository.list_agreements(
            property_id=property_id,
            kind=AgreementKind.AGENCY_DISCLOSURE,
        ):
            updated = agreement_machine.rederive_disclosure(disclosure, has_open, now=self.clock())
            if updated is None:
                continue
            try:
                stored = self.repository.save_agreement(updated, disclosure.version)
            except StaleEntityError as e:
                logger.warning("Skipped disclosure re-derivation: %s", e)
                continue
            self.cache.put(self._agreement_key(stored.agreement_id), stored)
            self._record(
                property_id,
                ActivityAction.AGREEMENT_REDERIVED,
                actor_id,
                stored.agreement_id,
                {"from": disclosure.status.value, "to": stored.status.value},
            )

    # =========================================================================
    # Viewing Internals
    # =========================================================================

    @_persistence_guard
    def _approve_as(
        self,
        request_id: str,
        actor: Actor,
        side: ApprovalSide,
        decision: ViewingDecision,
        message: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> OperationResult:
        request = self.repository.get_viewing_request(request_id)
        if request is None:
            return failure(ErrorKind.NOT_FOUND, f"Viewing request not found: {request_id}")
        property_record = self.repository.get_property(request.property_id)

        if side == ApprovalSide.BUYER_AGENT:
            allowed = actor.is_admin or self._is_buyer_agent(actor, request)
        else:
            allowed = actor.is_admin or self._is_seller_side(actor, request, property_record)
        if not allowed:
            return failure(
                ErrorKind.FORBIDDEN,
                f"You cannot approve for the {side.value} side of this viewing",
                request,
            )

        source = ApprovalSource.ADMIN if actor.is_admin else ApprovalSource.DASHBOARD
        return self._approve(
            request, property_record, side, decision, source, actor.user_id, message, start, end
        )

    def _approve(
        self,
        request: ViewingRequest,
        property_record: Optional[PropertyRecord],
        side: ApprovalSide,
        decision: ViewingDecision,
        source: ApprovalSource,
        approver_id: Optional[str],
        message: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> OperationResult:
        result = viewing_machine.apply_approval(
            request,
            side,
            decision,
            source,
            approver_id,
            message=message,
            start=start,
            end=end,
            now=self.clock(),
        )
        if isinstance(result, OperationFailure):
            return result

        updated = viewing_machine.settle(result.entity)
        stored = self._write_viewing(updated, request.version)
        if isinstance(stored, OperationFailure):
            return stored

        self._after_viewing_transition(
            stored,
            property_record,
            approver_id or source.value,
            ActivityAction.VIEWING_APPROVAL,
            EventType.VIEWING_REQUEST_APPROVAL,
            f"{side.value} {decision.value} (status: {stored.status.value})",
            {"side": side.value, "decision": decision.value, "source": source.value},
        )
        return OperationSuccess(entity=stored)

    def _cancel_replaced(self, existing: ViewingRequest, actor: Actor):
        result = viewing_machine.cancel(existing, note=viewing_machine.REPLACED_NOTE, now=self.clock())
        if isinstance(result, OperationFailure):
            return result
        stored = self._write_viewing(result.entity, existing.version)
        if isinstance(stored, OperationFailure):
            return stored
        self.tokens.revoke_for_request(stored.request_id)
        self._record(
            stored.property_id,
            ActivityAction.VIEWING_CANCELLED,
            actor.user_id,
            stored.request_id,
            {"replaced": True},
        )
        return stored

    def _write_viewing(self, request: ViewingRequest, expected_version: int):
        try:
            stored = self.repository.save_viewing_request(request, expected_version)
        except StaleEntityError as e:
            logger.warning("Rejected stale viewing request write: %s", e)
            return failure(
                ErrorKind.CONFLICT,
                "Viewing request was modified by someone else; reload and retry",
                self.repository.get_viewing_request(request.request_id),
            )
        self.cache.put(self._viewing_key(stored.request_id), stored)
        return stored

    def _after_viewing_transition(
        self,
        request: ViewingRequest,
        property_record: Optional[PropertyRecord],
        actor_id: str,
        action: ActivityAction,
        event_type: EventType,
        message: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        self._rederive_disclosures(request.property_id, actor_id)
        details = {"status": request.status.value}
        details.update(extra or {})
        self._record(request.property_id, action, actor_id, request.request_id, details)

        seller_id = property_record.seller_id if property_record else None
        recipients = collect_recipients(
            request.buyer_id,
            request.buyer_agent_id,
            request.seller_agent_id,
            seller_id,
        )
        payload = {
            "viewing_request_id": request.request_id,
            "property_id": request.property_id,
            "status": request.status.value,
            "message": message,
        }
        payload.update(extra or {})
        self._notify(recipients, event_type, payload)

    # =========================================================================
    # Permissions
    # =========================================================================

    @staticmethod
    def _may_fill_slot(actor: Actor, slot: SignatureSlot) -> bool:
        return actor.is_admin or actor.role == slot.role

    def _may_sign(
        self,
        actor: Actor,
        agreement: Agreement,
        slot: SignatureSlot,
        property_record: Optional[PropertyRecord],
    ) -> bool:
        if actor.is_admin:
            return True
        if actor.role != slot.role:
            return False
        if slot == SignatureSlot.BUYER:
            if agreement.buyer_id is None:
                # Only a property's disclosure may be claimed by its first signer
                return agreement.kind == AgreementKind.AGENCY_DISCLOSURE
            return agreement.buyer_id == actor.user_id
        if slot == SignatureSlot.AGENT:
            return agreement.agent_id == actor.user_id
        # Seller slot: only the recorded seller; without one, admins only
        if property_record is None or property_record.seller_id is None:
            return False
        return property_record.seller_id == actor.user_id

    def _is_agreement_party(self, actor: Actor, agreement: Agreement) -> bool:
        if actor.is_admin:
            return True
        if actor.user_id in (agreement.agent_id, agreement.buyer_id):
            return True
        if agreement.property_id:
            property_record = self.repository.get_property(agreement.property_id)
            return property_record is not None and actor.user_id == property_record.seller_id
        return False

    @staticmethod
    def _is_buyer_agent(actor: Actor, request: ViewingRequest) -> bool:
        return (
            actor.role == Role.AGENT
            and request.buyer_agent_id is not None
            and actor.user_id == request.buyer_agent_id
        )

    @staticmethod
    def _is_seller_side(
        actor: Actor,
        request: ViewingRequest,
        property_record: Optional[PropertyRecord],
    ) -> bool:
        if actor.role == Role.AGENT:
            agents = {request.seller_agent_id}
            if property_record is not None:
                agents.add(property_record.agent_id)
            agents.discard(None)
            return actor.user_id in agents
        if actor.role == Role.SELLER:
            return property_record is not None and actor.user_id == property_record.seller_id
        return False

    # =========================================================================
    # Side Effects
    # =========================================================================

    def _notify_agreement(
        self,
        agreement: Agreement,
        property_record: Optional[PropertyRecord],
        message: str,
    ) -> None:
        if property_record is None and agreement.property_id:
            property_record = self.repository.get_property(agreement.property_id)
        seller_agent_id = property_record.agent_id if property_record else None
        seller_id = property_record.seller_id if property_record else None
        recipients = collect_recipients(
            agreement.buyer_id,
            agreement.agent_id,
            seller_agent_id,
            seller_id,
        )
        self._notify(recipients, EventType.AGREEMENT_UPDATED, {
            "agreement_id": agreement.agreement_id,
            "property_id": agreement.property_id,
            "kind": agreement.kind.value,
            "status": agreement.status.value,
            "message": message,
        })

    def _notify(self, recipients: list[str], event_type: EventType, payload: dict[str, Any]) -> None:
        if self.notifications is None or not recipients:
            return
        try:
            self.notifications.notify(recipients, event_type, payload)
        except Exception:
            logger.exception("Notification %s to %s failed", event_type.value, recipients)

    def _record(
        self,
        property_id: Optional[str],
        action: ActivityAction,
        actor_id: str,
        entity_id: str,
        details: dict[str, Any],
    ) -> None:
        if self.activity_log is None:
            return
        try:
            self.activity_log.append(
                property_id or "global",
                action,
                actor_id,
                entity_id,
                details,
            )
        except OSError as e:
            logger.warning("Could not record %s for %s: %s", action.value, entity_id, e)

    # =========================================================================
    # Reads
    # =========================================================================

    def _read(self, cache_key: str, load: Callable[[], Any], missing: str) -> OperationResult:
        try:
            entity = load()
        except RepositoryUnavailableError as e:
            cached = self.cache.get(cache_key)
            if cached is None:
                logger.error("Persistence unavailable and %s not cached: %s", cache_key, e)
                return failure(ErrorKind.UNAVAILABLE, "Storage is temporarily unavailable")
            logger.warning("Serving %s from cache: %s", cache_key, e)
            return OperationSuccess(
                entity=cached,
                warnings=("Storage unavailable; showing the last known copy",),
            )

        if entity is None:
            return failure(ErrorKind.NOT_FOUND, missing)
        self.cache.put(cache_key, entity)
        return OperationSuccess(entity=entity)

    @staticmethod
    def _agreement_key(agreement_id: str) -> str:
        return f"agreement:{agreement_id}"

    @staticmethod
    def _viewing_key(request_id: str) -> str:
        return f"viewing:{request_id}"
