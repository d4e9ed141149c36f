"""
Tests for the Agreement State Machine

Tests covering:
1. Every row of the signature transition table, per agreement kind
2. Precondition failures are conflicts naming the current status
3. Slots a kind does not carry are rejected as invalid input
4. Re-signing overwrites the slot and re-derives status
5. Disclosure status is a pure function of its signatures, for any order
6. Admin override and disclosure re-derivation
"""

from __future__ import annotations

import itertools

import pytest

from core.workflow.agreements import (
    apply_agent_signature,
    apply_buyer_signature,
    apply_seller_signature,
    apply_signature,
    create_agreement,
    derive_status,
    rederive_disclosure,
    set_status_admin,
)
from core.workflow.results import ErrorKind, OperationFailure, OperationSuccess
from core.workflow.schema import (
    Agreement,
    AgreementKind,
    AgreementStatus,
    SignatureSlot,
)


# =============================================================================
# Fixtures
# =============================================================================


def _new(kind: AgreementKind, **kwargs) -> Agreement:
    result = create_agreement(kind=kind, agent_id="agent-1", property_id="PROP-1",
                              buyer_id="buyer-1", **kwargs)
    assert isinstance(result, OperationSuccess)
    return result.entity


def _sign(agreement: Agreement, slot: SignatureSlot, has_open_viewing: bool = False) -> Agreement:
    result = apply_signature(agreement, slot, f"sig-{slot.value}", has_open_viewing)
    assert isinstance(result, OperationSuccess), result
    return result.entity


@pytest.fixture
def disclosure():
    return _new(AgreementKind.AGENCY_DISCLOSURE)


@pytest.fixture
def standard():
    return _new(AgreementKind.STANDARD)


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    """Tests for agreement creation."""

    def test_unsigned_agreement_is_draft(self, standard):
        assert standard.status == AgreementStatus.DRAFT
        assert standard.agreement_id.startswith("AGR-")

    def test_standard_created_with_agent_signature_is_pending_buyer(self):
        agreement = _new(
            AgreementKind.STANDARD,
            initial_slot=SignatureSlot.AGENT,
            initial_signature="sig-agent",
        )
        assert agreement.status == AgreementStatus.PENDING_BUYER

    def test_disclosure_created_with_buyer_signature_is_signed_by_buyer(self):
        agreement = _new(
            AgreementKind.AGENCY_DISCLOSURE,
            initial_slot=SignatureSlot.BUYER,
            initial_signature="sig-buyer",
        )
        assert agreement.status == AgreementStatus.SIGNED_BY_BUYER

    def test_global_agreement_has_no_property(self):
        result = create_agreement(
            kind=AgreementKind.GLOBAL_REPRESENTATION,
            agent_id="agent-1",
            property_id="PROP-1",
            buyer_id="buyer-1",
        )
        assert result.entity.is_global is True
        assert result.entity.property_id is None

    def test_property_required_for_non_global(self):
        result = create_agreement(kind=AgreementKind.STANDARD, agent_id="agent-1")
        assert isinstance(result, OperationFailure)
        assert result.kind == ErrorKind.INVALID_INPUT

    def test_agent_required(self):
        result = create_agreement(kind=AgreementKind.STANDARD, agent_id="", property_id="PROP-1")
        assert result.kind == ErrorKind.INVALID_INPUT


# =============================================================================
# Transition Table
# =============================================================================


class TestStandardTransitions:
    """standard: agent -> buyer -> seller."""

    def test_buyer_signs_after_agent(self, standard):
        signed = _sign(_sign(standard, SignatureSlot.AGENT), SignatureSlot.BUYER)
        assert signed.status == AgreementStatus.SIGNED_BUYER

    def test_seller_signs_after_buyer(self, standard):
        signed = _sign(_sign(_sign(standard, SignatureSlot.AGENT), SignatureSlot.BUYER), SignatureSlot.SELLER)
        assert signed.status == AgreementStatus.COMPLETED

    def test_buyer_before_agent_is_conflict(self, standard):
        result = apply_buyer_signature(standard, "sig", has_open_viewing=False)
        assert isinstance(result, OperationFailure)
        assert result.kind == ErrorKind.CONFLICT
        assert result.current_status == "draft"
        assert "agent signature required" in result.reason

    def test_seller_before_buyer_is_conflict(self, standard):
        pending = _sign(standard, SignatureSlot.AGENT)
        result = apply_seller_signature(pending, "sig", has_open_viewing=False)
        assert result.kind == ErrorKind.CONFLICT
        assert result.current_status == "pending-buyer"


class TestDisclosureTransitions:
    """agency-disclosure: all orders up to the seller."""

    def test_buyer_signs(self, disclosure):
        assert _sign(disclosure, SignatureSlot.BUYER).status == AgreementStatus.SIGNED_BY_BUYER

    def test_agent_signs_with_buyer_present(self, disclosure):
        signed = _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT)
        assert signed.status == AgreementStatus.PENDING_REVIEW

    def test_agent_signs_without_buyer(self, disclosure):
        assert _sign(disclosure, SignatureSlot.AGENT).status == AgreementStatus.PENDING_BUYER

    def test_buyer_after_agent_reaches_pending_review(self, disclosure):
        signed = _sign(_sign(disclosure, SignatureSlot.AGENT), SignatureSlot.BUYER)
        assert signed.status == AgreementStatus.PENDING_REVIEW

    def test_seller_signs_with_open_viewing(self, disclosure):
        ready = _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT)
        assert _sign(ready, SignatureSlot.SELLER, has_open_viewing=True).status == AgreementStatus.SIGNED_BY_SELLER

    def test_seller_signs_without_open_viewing(self, disclosure):
        ready = _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT)
        assert _sign(ready, SignatureSlot.SELLER).status == AgreementStatus.COMPLETED

    def test_seller_needs_buyer_and_agent(self, disclosure):
        buyer_only = _sign(disclosure, SignatureSlot.BUYER)
        result = apply_seller_signature(buyer_only, "sig", has_open_viewing=False)
        assert result.kind == ErrorKind.CONFLICT
        assert result.current_status == "signed-by-buyer"
        assert "agent" in result.reason


class TestReferralAndGlobalTransitions:

    def test_referral_agent_signature_completes(self):
        referral = _new(AgreementKind.AGENT_REFERRAL)
        assert apply_agent_signature(referral, "sig", False).entity.status == AgreementStatus.COMPLETED

    def test_referral_has_no_buyer_slot(self):
        referral = _new(AgreementKind.AGENT_REFERRAL)
        result = apply_buyer_signature(referral, "sig", False)
        assert result.kind == ErrorKind.INVALID_INPUT

    def test_global_buyer_then_agent(self):
        agreement = _new(AgreementKind.GLOBAL_REPRESENTATION)
        buyer_signed = _sign(agreement, SignatureSlot.BUYER)
        assert buyer_signed.status == AgreementStatus.SIGNED_BY_BUYER
        assert _sign(buyer_signed, SignatureSlot.AGENT).status == AgreementStatus.COMPLETED

    def test_global_agent_first_is_conflict(self):
        agreement = _new(AgreementKind.GLOBAL_REPRESENTATION)
        result = apply_agent_signature(agreement, "sig", False)
        assert result.kind == ErrorKind.CONFLICT

    def test_global_has_no_seller_slot(self):
        agreement = _new(AgreementKind.GLOBAL_REPRESENTATION)
        assert apply_seller_signature(agreement, "sig", False).kind == ErrorKind.INVALID_INPUT


# =============================================================================
# Resignature and Input Validation
# =============================================================================


class TestResignature:

    def test_resign_overwrites_slot(self, disclosure):
        first = _sign(disclosure, SignatureSlot.BUYER)
        result = apply_buyer_signature(first, "sig-new", False)
        assert result.entity.buyer_signature == "sig-new"
        assert result.entity.status == AgreementStatus.SIGNED_BY_BUYER

    def test_resign_does_not_keep_stale_status(self, disclosure):
        full = _sign(
            _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT),
            SignatureSlot.SELLER,
            has_open_viewing=True,
        )
        assert full.status == AgreementStatus.SIGNED_BY_SELLER

        resigned = apply_seller_signature(full, "sig-again", has_open_viewing=False).entity
        assert resigned.status == AgreementStatus.COMPLETED

    def test_empty_signature_is_invalid(self, disclosure):
        result = apply_buyer_signature(disclosure, "   ", False)
        assert result.kind == ErrorKind.INVALID_INPUT

    def test_rejected_agreement_cannot_be_signed(self, disclosure):
        rejected = set_status_admin(disclosure, AgreementStatus.REJECTED).entity
        result = apply_buyer_signature(rejected, "sig", False)
        assert result.kind == ErrorKind.CONFLICT
        assert result.current_status == "rejected"

    def test_input_agreement_is_not_mutated(self, disclosure):
        apply_buyer_signature(disclosure, "sig", False)
        assert disclosure.buyer_signature is None
        assert disclosure.status == AgreementStatus.DRAFT


# =============================================================================
# Status Is A Function Of Signatures
# =============================================================================


class TestStatusIsFunctionOfSignatures:
    """For any sequence of disclosure signatures, status equals a fresh derivation."""

    @pytest.mark.parametrize("has_open_viewing", [True, False])
    def test_all_sequences(self, has_open_viewing):
        slots = list(SignatureSlot)
        for length in range(1, 5):
            for sequence in itertools.product(slots, repeat=length):
                agreement = _new(AgreementKind.AGENCY_DISCLOSURE)
                for slot in sequence:
                    result = apply_signature(agreement, slot, f"sig-{slot.value}", has_open_viewing)
                    if isinstance(result, OperationSuccess):
                        agreement = result.entity
                    else:
                        assert result.kind == ErrorKind.CONFLICT
                    assert agreement.status == derive_status(agreement, has_open_viewing), sequence


# =============================================================================
# Admin Override and Re-derivation
# =============================================================================


class TestAdminAndRederive:

    def test_admin_can_force_any_status(self, standard):
        forced = set_status_admin(standard, AgreementStatus.COMPLETED).entity
        assert forced.status == AgreementStatus.COMPLETED
        assert forced.agent_signature is None

    def test_rederive_upgrades_when_viewings_close(self, disclosure):
        full = _sign(
            _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT),
            SignatureSlot.SELLER,
            has_open_viewing=True,
        )
        upgraded = rederive_disclosure(full, has_open_viewing=False)
        assert upgraded.status == AgreementStatus.COMPLETED

    def test_rederive_downgrades_when_viewing_opens(self, disclosure):
        full = _sign(
            _sign(_sign(disclosure, SignatureSlot.BUYER), SignatureSlot.AGENT),
            SignatureSlot.SELLER,
        )
        assert rederive_disclosure(full, has_open_viewing=True).status == AgreementStatus.SIGNED_BY_SELLER

    def test_rederive_ignores_partially_signed(self, disclosure):
        assert rederive_disclosure(_sign(disclosure, SignatureSlot.BUYER), False) is None

    def test_rederive_ignores_admin_forced_status(self, disclosure):
        forced = set_status_admin(disclosure, AgreementStatus.COMPLETED).entity
        assert rederive_disclosure(forced, has_open_viewing=True) is None

    def test_rederive_ignores_other_kinds(self, standard):
        assert rederive_disclosure(standard, False) is None
