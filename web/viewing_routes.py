"""
Viewing Request Routes - Web API for Viewing Scheduling

Dashboard routes for buyers, agents, sellers and admins, plus the public
page a seller or listing agent opens from an emailed link.

Access Control:
- Dashboard routes require forwarded actor headers (see web.deps)
- Public routes require a valid viewing token in the path
- Public links can only answer for the seller side
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from core.workflow import (
    Actor,
    ApprovalOrchestrator,
    OperationFailure,
    ViewingDecision,
    ViewingStatus,
)
from utils.formatting import format_window
from web.deps import HTTP_STATUS_FOR_ERROR, get_orchestrator, require_actor, unwrap


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api/viewing-requests", tags=["viewing-requests"])
public_router = APIRouter(prefix="/public/viewing-request", tags=["public"])
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


# =============================================================================
# Request Bodies
# =============================================================================


class CreateViewingBody(BaseModel):
    property_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    buyer_id: Optional[str] = None
    buyer_agent_id: Optional[str] = None
    notes: Optional[str] = None
    replace_existing: bool = False


class DecisionBody(BaseModel):
    decision: ViewingDecision
    message: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class RescheduleBody(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    message: Optional[str] = None


class CancelBody(BaseModel):
    reason: Optional[str] = None


# =============================================================================
# Dashboard Routes
# =============================================================================


@router.get("")
async def list_viewing_requests(
    property_id: Optional[str] = Query(None),
    buyer_id: Optional[str] = Query(None),
    agent_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """List viewing requests matching the given filters, newest first."""
    try:
        status_filter = ViewingStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    requests = orchestrator.list_viewing_requests(
        property_id=property_id,
        buyer_id=buyer_id,
        agent_id=agent_id,
        status=status_filter,
    )
    return {"viewing_requests": [r.to_public_dict() for r in requests]}


@router.get("/{request_id}")
async def get_viewing_request(
    request_id: str,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.get_viewing_request(request_id))


@router.post("", status_code=201)
async def create_viewing_request(
    body: CreateViewingBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.create_viewing_request(
        actor,
        body.property_id,
        body.start,
        body.end,
        buyer_id=body.buyer_id,
        buyer_agent_id=body.buyer_agent_id,
        notes=body.notes,
        replace_existing=body.replace_existing,
    ))


@router.post("/{request_id}/approval/buyer-agent")
async def approve_as_buyer_agent(
    request_id: str,
    body: DecisionBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.approve_as_buyer_agent(
        request_id, actor, body.decision, body.message, body.start, body.end
    ))


@router.post("/{request_id}/approval/seller-agent")
async def approve_as_seller_agent(
    request_id: str,
    body: DecisionBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.approve_as_seller_agent(
        request_id, actor, body.decision, body.message, body.start, body.end
    ))


@router.post("/{request_id}/reschedule")
async def reschedule_viewing(
    request_id: str,
    body: RescheduleBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.reschedule(request_id, actor, body.start, body.end, body.message))


@router.post("/{request_id}/cancel")
async def cancel_viewing(
    request_id: str,
    body: Optional[CancelBody] = None,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    reason = body.reason if body else None
    return unwrap(orchestrator.cancel(request_id, actor, reason))


@router.post("/{request_id}/complete")
async def complete_viewing(
    request_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.complete(request_id, actor))


# =============================================================================
# Public Link Routes
# =============================================================================


@public_router.get("/{token}", response_class=HTMLResponse)
async def public_viewing_page(
    request: Request,
    token: str,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """Render the public response page for a viewing request."""
    result = orchestrator.get_public_viewing(token)

    if isinstance(result, OperationFailure):
        return templates.TemplateResponse(
            request,
            "public_viewing.html",
            {"error": result.reason},
            status_code=HTTP_STATUS_FOR_ERROR[result.kind],
        )

    viewing = result.entity
    window = viewing.confirmed_window or viewing.requested_window
    return templates.TemplateResponse(
        request,
        "public_viewing.html",
        {
            "error": None,
            "token": token,
            "viewing": viewing,
            "property": result.details.get("property") or {},
            "window_text": format_window(window.start, window.end),
            "can_respond": viewing.status == ViewingStatus.PENDING,
        },
    )


@public_router.get("/{token}/details")
async def public_viewing_details(
    token: str,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.get_public_viewing(token))


@public_router.post("/{token}/respond")
async def public_viewing_respond(
    token: str,
    body: DecisionBody,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """Accept, reject or reschedule from the public link."""
    return unwrap(orchestrator.approve_via_token(
        token, body.decision, body.message, body.start, body.end
    ))
