"""
Agreement State Machine

Pure transition functions for signable agreement documents. Nothing here
touches storage, rendering or notifications; the orchestrator does that.

Principles:
1. Status is derived from the populated signature slots, the agreement kind
   and whether the property has an open viewing request
2. Only an admin override may store a status the derivation would not produce
3. Re-signing overwrites the slot and re-derives status
4. Preconditions are checked before any slot is written
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Final, Optional

from core.workflow.results import ErrorKind, OperationResult, OperationSuccess, failure
from core.workflow.schema import (
    Agreement,
    AgreementKind,
    AgreementStatus,
    SignatureSlot,
    generate_agreement_id,
    utc_now,
)


# =============================================================================
# Transition Tables
# =============================================================================

# Slots each kind of agreement carries
ALLOWED_SLOTS: Final[dict[AgreementKind, frozenset[SignatureSlot]]] = {
    AgreementKind.STANDARD: frozenset(SignatureSlot),
    AgreementKind.AGENCY_DISCLOSURE: frozenset(SignatureSlot),
    AgreementKind.AGENT_REFERRAL: frozenset({SignatureSlot.AGENT}),
    AgreementKind.GLOBAL_REPRESENTATION: frozenset({
        SignatureSlot.BUYER,
        SignatureSlot.AGENT,
    }),
}

# Signatures that must already be present before a slot may be populated
REQUIRED_BEFORE: Final[dict[tuple[AgreementKind, SignatureSlot], tuple[SignatureSlot, ...]]] = {
    (AgreementKind.STANDARD, SignatureSlot.BUYER): (SignatureSlot.AGENT,),
    (AgreementKind.STANDARD, SignatureSlot.SELLER): (SignatureSlot.BUYER,),
    (AgreementKind.AGENCY_DISCLOSURE, SignatureSlot.SELLER): (
        SignatureSlot.BUYER,
        SignatureSlot.AGENT,
    ),
    (AgreementKind.GLOBAL_REPRESENTATION, SignatureSlot.AGENT): (SignatureSlot.BUYER,),
}

# Disclosure statuses at which all three parties have signed
FULLY_SIGNED_DISCLOSURE: Final[frozenset[AgreementStatus]] = frozenset({
    AgreementStatus.SIGNED_BY_SELLER,
    AgreementStatus.COMPLETED,
})


# =============================================================================
# Status Derivation
# =============================================================================


def derive_status(agreement: Agreement, has_open_viewing: bool) -> AgreementStatus:
    """
    Compute the status an agreement should have from its signature slots.

    Args:
        agreement: The agreement to evaluate
        has_open_viewing: Whether the agreement's property has a pending,
            accepted or rescheduled viewing request

    Returns:
        The derived AgreementStatus
    """
    buyer = agreement.has_signature(SignatureSlot.BUYER)
    agent = agreement.has_signature(SignatureSlot.AGENT)
    seller = agreement.has_signature(SignatureSlot.SELLER)
    kind = agreement.kind

    if kind == AgreementKind.STANDARD:
        if seller and buyer:
            return AgreementStatus.COMPLETED
        if buyer:
            return AgreementStatus.SIGNED_BUYER
        if agent:
            return AgreementStatus.PENDING_BUYER
        return AgreementStatus.DRAFT

    if kind == AgreementKind.AGENCY_DISCLOSURE:
        if seller and buyer and agent:
            if has_open_viewing:
                return AgreementStatus.SIGNED_BY_SELLER
            return AgreementStatus.COMPLETED
        if buyer and agent:
            return AgreementStatus.PENDING_REVIEW
        if agent:
            return AgreementStatus.PENDING_BUYER
        if buyer:
            return AgreementStatus.SIGNED_BY_BUYER
        return AgreementStatus.DRAFT

    if kind == AgreementKind.AGENT_REFERRAL:
        return AgreementStatus.COMPLETED if agent else AgreementStatus.DRAFT

    # Global representation
    if buyer and agent:
        return AgreementStatus.COMPLETED
    if buyer:
        return AgreementStatus.SIGNED_BY_BUYER
    if agent:
        return AgreementStatus.PENDING_BUYER
    return AgreementStatus.DRAFT


def missing_prerequisites(
    agreement: Agreement,
    slot: SignatureSlot,
) -> tuple[SignatureSlot, ...]:
    """Return the prerequisite slots that are still empty for a signature."""
    required = REQUIRED_BEFORE.get((agreement.kind, slot), ())
    return tuple(s for s in required if not agreement.has_signature(s))


# =============================================================================
# Transitions
# =============================================================================


def create_agreement(
    kind: AgreementKind,
    agent_id: str,
    property_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    agreement_text: str = "",
    initial_slot: Optional[SignatureSlot] = None,
    initial_signature: Optional[str] = None,
    has_open_viewing: bool = False,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Create a new agreement, optionally signed by its creator.

    Global representation agreements are never tied to a property.

    Returns:
        OperationSuccess holding the new (unsaved) agreement, or an
        OperationFailure if the initial signature is not allowed
    """
    now = now or utc_now()
    is_global = kind == AgreementKind.GLOBAL_REPRESENTATION

    if not agent_id:
        return failure(ErrorKind.INVALID_INPUT, "An agent is required for every agreement")
    if not is_global and not property_id:
        return failure(ErrorKind.INVALID_INPUT, "property_id is required for this agreement kind")

    agreement = Agreement(
        agreement_id=generate_agreement_id(),
        kind=kind,
        agent_id=agent_id,
        property_id=None if is_global else property_id,
        buyer_id=buyer_id,
        is_global=is_global,
        agreement_text=agreement_text,
        created_at=now,
        updated_at=now,
    )

    if initial_signature is None:
        return OperationSuccess(entity=agreement)

    if initial_slot is None:
        return failure(ErrorKind.INVALID_INPUT, "A signature needs a slot")

    return apply_signature(agreement, initial_slot, initial_signature, has_open_viewing, now=now)


def apply_signature(
    agreement: Agreement,
    slot: SignatureSlot,
    signature: str,
    has_open_viewing: bool,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Populate a signature slot and re-derive the status.

    The input agreement is not modified; the success result holds a copy.

    Args:
        agreement: Current stored agreement
        slot: Slot being signed
        signature: Opaque signature blob (base64 PNG data URL)
        has_open_viewing: Whether the property has an open viewing request
        now: Timestamp of the signature

    Returns:
        OperationSuccess with the updated agreement, or OperationFailure:
        invalid-input for an empty signature or a slot the kind lacks,
        conflict when a prerequisite signature is missing or the agreement
        was rejected
    """
    if not signature or not signature.strip():
        return failure(ErrorKind.INVALID_INPUT, "Signature is empty", agreement)

    if slot not in ALLOWED_SLOTS[agreement.kind]:
        return failure(
            ErrorKind.INVALID_INPUT,
            f"A {agreement.kind.value} agreement has no {slot.value} signature",
            agreement,
        )

    if agreement.status == AgreementStatus.REJECTED:
        return failure(
            ErrorKind.CONFLICT,
            "Agreement was rejected and can no longer be signed",
            agreement,
        )

    missing = missing_prerequisites(agreement, slot)
    if missing:
        names = " and ".join(s.value for s in missing)
        return failure(
            ErrorKind.CONFLICT,
            f"Cannot apply {slot.value} signature while agreement is "
            f"{agreement.status.value}: {names} signature required first",
            agreement,
        )

    now = now or utc_now()
    updated = copy.deepcopy(agreement)
    updated.set_signature(slot, signature)
    updated.status = derive_status(updated, has_open_viewing)
    updated.updated_at = now
    updated.signed_at = now
    return OperationSuccess(entity=updated)


def apply_buyer_signature(
    agreement: Agreement, signature: str, has_open_viewing: bool
) -> OperationResult:
    return apply_signature(agreement, SignatureSlot.BUYER, signature, has_open_viewing)


def apply_agent_signature(
    agreement: Agreement, signature: str, has_open_viewing: bool
) -> OperationResult:
    return apply_signature(agreement, SignatureSlot.AGENT, signature, has_open_viewing)


def apply_seller_signature(
    agreement: Agreement, signature: str, has_open_viewing: bool
) -> OperationResult:
    return apply_signature(agreement, SignatureSlot.SELLER, signature, has_open_viewing)


def set_status_admin(
    agreement: Agreement,
    status: AgreementStatus,
    now: Optional[datetime] = None,
) -> OperationResult:
    """Force a status, bypassing the transition table. Admin correction only."""
    updated = copy.deepcopy(agreement)
    updated.status = status
    updated.updated_at = now or utc_now()
    return OperationSuccess(entity=updated)


def rederive_disclosure(
    agreement: Agreement,
    has_open_viewing: bool,
    now: Optional[datetime] = None,
) -> Optional[Agreement]:
    """
    Re-evaluate a fully signed disclosure against current viewing requests.

    Moves signed-by-seller to completed once no viewing is open, and back
    when a new viewing opens. Admin-forced statuses outside those two are
    left alone.

    Returns:
        An updated copy if the status changes, otherwise None
    """
    if agreement.kind != AgreementKind.AGENCY_DISCLOSURE:
        return None
    if agreement.status not in FULLY_SIGNED_DISCLOSURE:
        return None

    target = derive_status(agreement, has_open_viewing)
    if target == agreement.status or target not in FULLY_SIGNED_DISCLOSURE:
        return None

    updated = copy.deepcopy(agreement)
    updated.status = target
    updated.updated_at = now or utc_now()
    return updated
