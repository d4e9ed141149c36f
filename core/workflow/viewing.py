"""
Viewing Request State Machine

Pure transition functions for viewing requests.

    pending -> {accepted, rejected, rescheduled} -> {completed, cancelled}

Approvals are recorded per side and never move the top-level status on
their own. `settle()` derives the top-level status from the pair of
approvals:

- Any rejection is authoritative: the request becomes rejected
- The seller side must approve before a request is accepted
- When a buyer agent is assigned, the buyer-agent side must approve too
- A confirmed window differing from the requested one means rescheduled
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Optional

from core.workflow.agreements import FULLY_SIGNED_DISCLOSURE
from core.workflow.results import ErrorKind, OperationResult, OperationSuccess, failure
from core.workflow.schema import (
    AgreementStatus,
    ApprovalSide,
    ApprovalSource,
    ApprovalStatus,
    PropertyRecord,
    SideApproval,
    TimeWindow,
    ViewingDecision,
    ViewingRequest,
    ViewingStatus,
    generate_viewing_request_id,
    utc_now,
)


REPLACED_NOTE = "[Cancelled and replaced with a new request]"


def build_window(
    start: Optional[datetime],
    end: Optional[datetime],
) -> Optional[TimeWindow]:
    """Build a TimeWindow, or None if either bound is missing or inverted."""
    if start is None or end is None or end <= start:
        return None
    return TimeWindow(start=start, end=end)


def _window_failure(
    start: Optional[datetime],
    end: Optional[datetime],
    request: Optional[ViewingRequest] = None,
):
    if start is None or end is None:
        return failure(ErrorKind.INVALID_INPUT, "Both a start and an end time are required", request)
    return failure(ErrorKind.INVALID_INPUT, "End time must be after start time", request)


# =============================================================================
# Create
# =============================================================================


def create_viewing_request(
    property_record: PropertyRecord,
    buyer_id: str,
    start: Optional[datetime],
    end: Optional[datetime],
    buyer_agent_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Create a pending viewing request for a property.

    The seller side is represented by the property's listing agent; if the
    property has no agent the seller reviews directly.

    Returns:
        OperationSuccess holding the new (unsaved) request, precondition-failed
        if nobody can review requests for the property, or invalid-input for
        a malformed window
    """
    if not property_record.has_reviewer:
        return failure(
            ErrorKind.PRECONDITION_FAILED,
            "Property has neither a seller nor an agent assigned",
        )

    window = build_window(start, end)
    if window is None:
        return _window_failure(start, end)

    now = now or utc_now()
    request = ViewingRequest(
        request_id=generate_viewing_request_id(),
        property_id=property_record.property_id,
        buyer_id=buyer_id,
        requested_window=window,
        buyer_agent_id=buyer_agent_id,
        seller_agent_id=property_record.agent_id,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    return OperationSuccess(entity=request)


# =============================================================================
# Approvals
# =============================================================================


def apply_approval(
    request: ViewingRequest,
    side: ApprovalSide,
    decision: ViewingDecision,
    source: ApprovalSource,
    approver_id: Optional[str],
    message: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Record one side's decision on a pending request.

    Only the side's sub-record, the response message and (for a reschedule)
    the confirmed window change. Call settle() to derive the new status.

    Returns:
        OperationSuccess with the updated copy, conflict if the request is no
        longer pending, invalid-input for a reschedule without a valid window
    """
    if request.status != ViewingStatus.PENDING:
        return failure(
            ErrorKind.CONFLICT,
            f"Viewing request is already {request.status.value}",
            request,
        )

    window = None
    if decision == ViewingDecision.RESCHEDULE:
        window = build_window(start, end)
        if window is None:
            return _window_failure(start, end, request)

    now = now or utc_now()
    updated = copy.deepcopy(request)
    updated.set_approval(side, SideApproval(
        status=(
            ApprovalStatus.REJECTED
            if decision == ViewingDecision.REJECT
            else ApprovalStatus.APPROVED
        ),
        approved_by=approver_id,
        approval_date=now,
        source=source,
    ))
    if message:
        updated.response_message = message
    if window is not None:
        updated.confirmed_window = window
        updated.confirmed_by = approver_id
    updated.updated_at = now
    return OperationSuccess(entity=updated)


def resolve_status(request: ViewingRequest) -> ViewingStatus:
    """Top-level status implied by the two approval sub-records."""
    seller = request.seller_agent_approval.status
    buyer_agent = request.buyer_agent_approval.status

    if ApprovalStatus.REJECTED in (seller, buyer_agent):
        return ViewingStatus.REJECTED

    buyer_side_done = (
        request.buyer_agent_id is None or buyer_agent == ApprovalStatus.APPROVED
    )
    if seller == ApprovalStatus.APPROVED and buyer_side_done:
        if (
            request.confirmed_window is not None
            and request.confirmed_window != request.requested_window
        ):
            return ViewingStatus.RESCHEDULED
        return ViewingStatus.ACCEPTED

    return ViewingStatus.PENDING


def settle(request: ViewingRequest) -> ViewingRequest:
    """
    Move a pending request to the status its approvals imply.

    Mutates and returns the request. Non-pending requests are returned as-is.
    """
    if request.status != ViewingStatus.PENDING:
        return request

    status = resolve_status(request)
    request.status = status
    if status == ViewingStatus.ACCEPTED and request.confirmed_window is None:
        request.confirmed_window = request.requested_window
    return request


# =============================================================================
# Schedule, Cancel, Complete
# =============================================================================


def update_schedule(
    request: ViewingRequest,
    start: Optional[datetime],
    end: Optional[datetime],
    responder_id: str,
    side: Optional[ApprovalSide] = None,
    source: ApprovalSource = ApprovalSource.DASHBOARD,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Propose or confirm a new viewing window.

    When the responder speaks for a side, that side is recorded as approved.
    A pending request is then settled; an accepted or rescheduled request
    becomes rescheduled.
    """
    if request.is_terminal:
        return failure(
            ErrorKind.CONFLICT,
            f"Viewing request is already {request.status.value}",
            request,
        )

    window = build_window(start, end)
    if window is None:
        return _window_failure(start, end, request)

    now = now or utc_now()
    updated = copy.deepcopy(request)
    updated.confirmed_window = window
    updated.confirmed_by = responder_id
    updated.updated_at = now
    if message:
        updated.response_message = message
    if side is not None:
        updated.set_approval(side, SideApproval(
            status=ApprovalStatus.APPROVED,
            approved_by=responder_id,
            approval_date=now,
            source=source,
        ))

    if updated.status == ViewingStatus.PENDING:
        settle(updated)
    else:
        updated.status = ViewingStatus.RESCHEDULED
    return OperationSuccess(entity=updated)


def cancel(
    request: ViewingRequest,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OperationResult:
    """Cancel an open request. Permission is checked by the caller."""
    if request.is_terminal:
        return failure(
            ErrorKind.CONFLICT,
            f"Viewing request is already {request.status.value}",
            request,
        )

    updated = copy.deepcopy(request)
    updated.status = ViewingStatus.CANCELLED
    updated.updated_at = now or utc_now()
    if note:
        updated.notes = f"{updated.notes}\n{note}".strip() if updated.notes else note
    return OperationSuccess(entity=updated)


def complete(
    request: ViewingRequest,
    disclosure_status: Optional[AgreementStatus],
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Mark a confirmed viewing as completed.

    Args:
        request: Current stored request
        disclosure_status: Status of the latest agency disclosure for the
            property, or None if there is none

    Returns:
        conflict unless the request is accepted or rescheduled,
        precondition-failed unless the disclosure is fully signed
    """
    if request.status not in (ViewingStatus.ACCEPTED, ViewingStatus.RESCHEDULED):
        return failure(
            ErrorKind.CONFLICT,
            f"Only a confirmed viewing can be completed; request is {request.status.value}",
            request,
        )

    if disclosure_status not in FULLY_SIGNED_DISCLOSURE:
        found = disclosure_status.value if disclosure_status else "missing"
        return failure(
            ErrorKind.PRECONDITION_FAILED,
            f"Agency disclosure must be signed by all parties (currently {found})",
            request,
        )

    updated = copy.deepcopy(request)
    updated.status = ViewingStatus.COMPLETED
    updated.updated_at = now or utc_now()
    return OperationSuccess(entity=updated)
