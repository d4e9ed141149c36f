"""
Property Activity Log - Append-Only Audit Trail of Workflow Transitions

Every signature, approval, reschedule and cancellation on a property is
appended here with a hash chain, so the history of who did what and when
cannot be edited silently.

Hash Chain Properties:
- Each entry contains a SHA-256 hash of its content
- Each entry references the hash of the previous entry for the same property
- Hash computation is deterministic (sorted keys, consistent serialization)
- Tampering with any entry breaks the chain
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from core.workflow.schema import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Hash Chain Utilities
# =============================================================================


def _serialize_for_hash(data: dict[str, Any]) -> str:
    """Serialize data deterministically for hash computation."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(
    property_id: str,
    sequence: int,
    timestamp: datetime,
    action: str,
    actor_id: str,
    entity_id: str,
    details: dict[str, Any],
    previous_hash: Optional[str],
) -> str:
    """Compute SHA-256 hash over every field of an entry plus its predecessor."""
    hashable_content = {
        "property_id": property_id,
        "sequence": sequence,
        "timestamp": timestamp.isoformat(),
        "action": action,
        "actor_id": actor_id,
        "entity_id": entity_id,
        "details": details,
        "previous_hash": previous_hash,
    }
    serialized = _serialize_for_hash(hashable_content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# =============================================================================
# Entries
# =============================================================================


class ActivityAction(Enum):
    """Kind of activity recorded."""

    AGREEMENT_CREATED = "agreement_created"
    AGREEMENT_SIGNED = "agreement_signed"
    AGREEMENT_STATUS_FORCED = "agreement_status_forced"
    AGREEMENT_EDITED = "agreement_edited"
    AGREEMENT_REDERIVED = "agreement_rederived"
    VIEWING_REQUESTED = "viewing_requested"
    VIEWING_APPROVAL = "viewing_approval"
    VIEWING_RESCHEDULED = "viewing_rescheduled"
    VIEWING_CANCELLED = "viewing_cancelled"
    VIEWING_COMPLETED = "viewing_completed"


@dataclass(frozen=True)
class ActivityEntry:
    """Immutable record of one workflow transition."""

    property_id: str
    sequence: int
    timestamp: datetime
    action: ActivityAction
    actor_id: str
    entity_id: str
    details: dict[str, Any]
    entry_hash: str
    previous_hash: Optional[str]

    @classmethod
    def create(
        cls,
        property_id: str,
        sequence: int,
        action: ActivityAction,
        actor_id: str,
        entity_id: str,
        details: Optional[dict[str, Any]] = None,
        previous_hash: Optional[str] = None,
    ) -> "ActivityEntry":
        details_copy = copy.deepcopy(details or {})
        timestamp = utc_now()
        entry_hash = compute_entry_hash(
            property_id=property_id,
            sequence=sequence,
            timestamp=timestamp,
            action=action.value,
            actor_id=actor_id,
            entity_id=entity_id,
            details=details_copy,
            previous_hash=previous_hash,
        )
        return cls(
            property_id=property_id,
            sequence=sequence,
            timestamp=timestamp,
            action=action,
            actor_id=actor_id,
            entity_id=entity_id,
            details=details_copy,
            entry_hash=entry_hash,
            previous_hash=previous_hash,
        )

    def verify_hash(self) -> bool:
        """True if the stored hash still matches the entry content."""
        return self.entry_hash == compute_entry_hash(
            property_id=self.property_id,
            sequence=self.sequence,
            timestamp=self.timestamp,
            action=self.action.value,
            actor_id=self.actor_id,
            entity_id=self.entity_id,
            details=self.details,
            previous_hash=self.previous_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_id": self.property_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "actor_id": self.actor_id,
            "entity_id": self.entity_id,
            "details": self.details,
            "entry_hash": self.entry_hash,
            "previous_hash": self.previous_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityEntry":
        return cls(
            property_id=data["property_id"],
            sequence=data["sequence"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            action=ActivityAction(data["action"]),
            actor_id=data["actor_id"],
            entity_id=data["entity_id"],
            details=data.get("details", {}),
            entry_hash=data["entry_hash"],
            previous_hash=data.get("previous_hash"),
        )


def verify_chain(entries: list[ActivityEntry]) -> dict[str, Any]:
    """
    Verify the integrity of one property's activity chain.

    Returns:
        dict with:
            - valid: bool indicating if chain is intact
            - broken_at: sequence number where chain broke (if any)
            - error: description of the issue (if any)
    """
    if not entries:
        return {"valid": True, "broken_at": None, "error": None}

    if entries[0].previous_hash is not None:
        return {
            "valid": False,
            "broken_at": entries[0].sequence,
            "error": "First entry has a previous_hash (should be None)",
        }

    for i, entry in enumerate(entries):
        if not entry.verify_hash():
            return {
                "valid": False,
                "broken_at": entry.sequence,
                "error": f"Hash mismatch at entry {entry.sequence}",
            }
        if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
            return {
                "valid": False,
                "broken_at": entry.sequence,
                "error": f"Chain broken at entry {entry.sequence}",
            }

    return {"valid": True, "broken_at": None, "error": None}


# =============================================================================
# Activity Log
# =============================================================================


class ActivityLog:
    """
    Per-property hash-chained activity log.

    Entries are append-only; there is no update or delete.
    """

    def __init__(self, persist_path: Optional[str] = None):
        self._entries: dict[str, list[ActivityEntry]] = {}
        self._lock = threading.Lock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return
        data = {
            "entries": {
                pid: [e.to_dict() for e in entries]
                for pid, entries in self._entries.items()
            },
            "saved_at": utc_now().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for pid, entries in data.get("entries", {}).items():
                self._entries[pid] = [ActivityEntry.from_dict(e) for e in entries]
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load activity log: %s", e)

    def append(
        self,
        property_id: str,
        action: ActivityAction,
        actor_id: str,
        entity_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> ActivityEntry:
        """Append an entry to a property's chain."""
        with self._lock:
            chain = self._entries.setdefault(property_id, [])
            entry = ActivityEntry.create(
                property_id=property_id,
                sequence=len(chain) + 1,
                action=action,
                actor_id=actor_id,
                entity_id=entity_id,
                details=details,
                previous_hash=chain[-1].entry_hash if chain else None,
            )
            chain.append(entry)
            self._save_to_file()
            return entry

    def entries(self, property_id: str) -> tuple[ActivityEntry, ...]:
        with self._lock:
            return tuple(self._entries.get(property_id, []))

    def entries_for(self, entity_id: str) -> list[ActivityEntry]:
        """All entries about one agreement or viewing request."""
        with self._lock:
            return [
                e for chain in self._entries.values() for e in chain
                if e.entity_id == entity_id
            ]

    def verify_chain(self, property_id: str) -> dict[str, Any]:
        return verify_chain(list(self.entries(property_id)))
