"""
Tests for the Property Activity Log

Tests covering:
1. Entries chain per property, starting from no previous hash
2. Tampering with any entry breaks verification
3. Persistence round-trips the chain
4. Lookup of entries by agreement or viewing request
"""

from __future__ import annotations

import dataclasses
import tempfile
from pathlib import Path

import pytest

from core.workflow.activity_log import (
    ActivityAction,
    ActivityLog,
    compute_entry_hash,
    verify_chain,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_persist_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "activity_log.json")


@pytest.fixture
def log(temp_persist_path):
    activity = ActivityLog(persist_path=temp_persist_path)
    activity.append("PROP-1", ActivityAction.AGREEMENT_CREATED, "buyer-1", "AGR-1", {"kind": "agency-disclosure"})
    activity.append("PROP-1", ActivityAction.AGREEMENT_SIGNED, "listing-agent", "AGR-1", {"slot": "agent"})
    activity.append("PROP-1", ActivityAction.VIEWING_REQUESTED, "buyer-1", "VR-1", {"status": "pending"})
    return activity


# =============================================================================
# Chain
# =============================================================================


class TestChain:

    def test_sequence_and_links(self, log):
        entries = log.entries("PROP-1")
        assert [e.sequence for e in entries] == [1, 2, 3]
        assert entries[0].previous_hash is None
        assert entries[1].previous_hash == entries[0].entry_hash
        assert entries[2].previous_hash == entries[1].entry_hash

    def test_chain_is_valid(self, log):
        assert log.verify_chain("PROP-1") == {"valid": True, "broken_at": None, "error": None}

    def test_properties_have_separate_chains(self, log):
        entry = log.append("PROP-2", ActivityAction.VIEWING_REQUESTED, "buyer-2", "VR-2")
        assert entry.sequence == 1
        assert entry.previous_hash is None

    def test_empty_chain_is_valid(self, log):
        assert log.verify_chain("PROP-404")["valid"] is True

    def test_details_are_copied(self):
        activity = ActivityLog()
        details = {"status": "pending"}
        entry = activity.append("PROP-1", ActivityAction.VIEWING_REQUESTED, "buyer-1", "VR-1", details)
        details["status"] = "accepted"
        assert entry.details == {"status": "pending"}
        assert entry.verify_hash()

    def test_hash_is_deterministic(self, log):
        entry = log.entries("PROP-1")[0]
        again = compute_entry_hash(
            property_id=entry.property_id,
            sequence=entry.sequence,
            timestamp=entry.timestamp,
            action=entry.action.value,
            actor_id=entry.actor_id,
            entity_id=entry.entity_id,
            details=dict(entry.details),
            previous_hash=entry.previous_hash,
        )
        assert again == entry.entry_hash


class TestTampering:

    def test_edited_actor_breaks_chain(self, log):
        entries = list(log.entries("PROP-1"))
        entries[1] = dataclasses.replace(entries[1], actor_id="someone-else")

        result = verify_chain(entries)
        assert result["valid"] is False
        assert result["broken_at"] == 2

    def test_removed_entry_breaks_chain(self, log):
        entries = list(log.entries("PROP-1"))
        del entries[1]

        result = verify_chain(entries)
        assert result["valid"] is False
        assert result["broken_at"] == 3

    def test_first_entry_with_previous_hash(self, log):
        entries = list(log.entries("PROP-1"))[1:]
        assert verify_chain(entries)["error"] == "First entry has a previous_hash (should be None)"


# =============================================================================
# Persistence and Lookup
# =============================================================================


class TestPersistence:

    def test_reload(self, temp_persist_path, log):
        reloaded = ActivityLog(persist_path=temp_persist_path)
        assert len(reloaded.entries("PROP-1")) == 3
        assert reloaded.verify_chain("PROP-1")["valid"] is True

        entry = reloaded.append("PROP-1", ActivityAction.VIEWING_CANCELLED, "buyer-1", "VR-1")
        assert entry.sequence == 4
        assert reloaded.verify_chain("PROP-1")["valid"] is True

    def test_entries_for_entity(self, log):
        actions = [e.action for e in log.entries_for("AGR-1")]
        assert actions == [ActivityAction.AGREEMENT_CREATED, ActivityAction.AGREEMENT_SIGNED]
