"""
Agreement Routes - Web API for Agreement Documents

Create, sign and inspect agreements. Every mutation returns the full
agreement plus an outcome; errors map to HTTP status codes in web.deps.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel

from core.workflow import (
    Actor,
    AgreementKind,
    AgreementStatus,
    ApprovalOrchestrator,
    OperationFailure,
    SignatureSlot,
)
from web.deps import get_orchestrator, require_actor, unwrap


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api/agreements", tags=["agreements"])


# =============================================================================
# Request Bodies
# =============================================================================


class CreateAgreementBody(BaseModel):
    kind: AgreementKind
    property_id: Optional[str] = None
    buyer_id: Optional[str] = None
    agent_id: Optional[str] = None
    signature: Optional[str] = None
    slot: Optional[SignatureSlot] = None
    agreement_text: str = ""


class SignBody(BaseModel):
    signature: str
    fresh_render: bool = False


class StatusBody(BaseModel):
    status: AgreementStatus


def _parse_kind(kind: Optional[str]) -> Optional[AgreementKind]:
    if kind is None:
        return None
    try:
        return AgreementKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid agreement kind: {kind}")


# =============================================================================
# Queries
# =============================================================================


@router.get("")
async def list_agreements(
    property_id: Optional[str] = Query(None),
    buyer_id: Optional[str] = Query(None),
    agent_id: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """List agreements matching the given filters, newest first."""
    agreements = orchestrator.list_agreements(
        property_id=property_id,
        buyer_id=buyer_id,
        agent_id=agent_id,
        kind=_parse_kind(kind),
    )
    return {"agreements": [a.to_public_dict() for a in agreements]}


@router.get("/latest")
async def get_latest_agreement(
    property_id: str = Query(...),
    kind: str = Query(...),
    buyer_id: Optional[str] = Query(None),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """Most recent agreement of a kind for a property."""
    return unwrap(orchestrator.get_latest_agreement(property_id, _parse_kind(kind), buyer_id=buyer_id))


@router.get("/{agreement_id}")
async def get_agreement(
    agreement_id: str,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.get_agreement(agreement_id))


@router.get("/{agreement_id}/document")
async def get_agreement_document(
    agreement_id: str,
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """Current PDF for an agreement (edited copy if one exists)."""
    result = orchestrator.get_document(agreement_id)
    if isinstance(result, OperationFailure):
        unwrap(result)
    return Response(
        content=result.details["document"],
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{agreement_id}.pdf"'},
    )


# =============================================================================
# Mutations
# =============================================================================


@router.post("", status_code=201)
async def create_agreement(
    body: CreateAgreementBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.create_agreement(
        actor,
        body.kind,
        property_id=body.property_id,
        buyer_id=body.buyer_id,
        agent_id=body.agent_id,
        signature=body.signature,
        slot=body.slot,
        agreement_text=body.agreement_text,
    ))


@router.post("/{agreement_id}/sign/buyer")
async def sign_as_buyer(
    agreement_id: str,
    body: SignBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.sign_as_buyer(agreement_id, actor, body.signature, body.fresh_render))


@router.post("/{agreement_id}/sign/agent")
async def sign_as_agent(
    agreement_id: str,
    body: SignBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.sign_as_agent(agreement_id, actor, body.signature, body.fresh_render))


@router.post("/{agreement_id}/sign/seller")
async def sign_as_seller(
    agreement_id: str,
    body: SignBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    return unwrap(orchestrator.sign_as_seller(agreement_id, actor, body.signature, body.fresh_render))


@router.post("/{agreement_id}/status")
async def set_agreement_status(
    agreement_id: str,
    body: StatusBody,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """Admin override of an agreement's status."""
    return unwrap(orchestrator.set_status_admin(agreement_id, actor, body.status))


@router.put("/{agreement_id}/document")
async def upload_edited_document(
    agreement_id: str,
    request: Request,
    actor: Actor = Depends(require_actor),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
):
    """
    Store a hand-edited PDF (raw request body).

    Later signatures are stamped onto this copy.
    """
    content = await request.body()
    return unwrap(orchestrator.save_edited_artifact(agreement_id, actor, content))
