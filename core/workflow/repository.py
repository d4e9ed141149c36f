"""
Workflow Repository - Versioned Storage for Agreements and Viewing Requests

In-memory storage with optional JSON file persistence. Every record carries
a version; writes are compare-and-swap against the version the caller read,
so concurrent edits from different sessions are rejected, never merged.

Reads hand out deep copies. Mutating a returned record has no effect until
it is saved.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Optional

from core.workflow.errors import (
    EntityNotFoundError,
    RepositoryUnavailableError,
    StaleEntityError,
)
from core.workflow.schema import (
    Agreement,
    AgreementKind,
    AgreementStatus,
    PropertyRecord,
    ViewingRequest,
    ViewingStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Repository
# =============================================================================


class WorkflowRepository:
    """
    Repository for properties, agreements and viewing requests.

    Lookups by property, buyer and agent are linear scans; the data set per
    brokerage is small.
    """

    def __init__(self, persist_path: Optional[str] = None):
        """
        Initialise repository.

        Args:
            persist_path: Optional path to persist data to JSON file
        """
        self._properties: dict[str, PropertyRecord] = {}
        self._agreements: dict[str, Agreement] = {}
        self._viewings: dict[str, ViewingRequest] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "properties": {pid: p.to_dict() for pid, p in self._properties.items()},
            "agreements": {aid: a.to_dict() for aid, a in self._agreements.items()},
            "viewing_requests": {rid: r.to_dict() for rid, r in self._viewings.items()},
            "saved_at": utc_now().isoformat(),
        }

        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            self._persist_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            raise RepositoryUnavailableError(f"Could not write {self._persist_path}: {e}") from e

    def _load_from_file(self) -> None:
        """Load data from file."""
        if not self._persist_path or not self._persist_path.exists():
            return

        try:
            data = json.loads(self._persist_path.read_text())
            for pid, p_data in data.get("properties", {}).items():
                self._properties[pid] = PropertyRecord.from_dict(p_data)
            for aid, a_data in data.get("agreements", {}).items():
                self._agreements[aid] = Agreement.from_dict(a_data)
            for rid, r_data in data.get("viewing_requests", {}).items():
                self._viewings[rid] = ViewingRequest.from_dict(r_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load workflow repository data: %s", e)

    def _commit(self, table: dict, key: str, record) -> None:
        """Store a record and persist, restoring the previous entry on failure."""
        previous = table.get(key)
        table[key] = record
        try:
            self._save_to_file()
        except RepositoryUnavailableError:
            if previous is None:
                del table[key]
            else:
                table[key] = previous
            raise

    def _versioned_write(self, table: dict, key: str, record, expected_version: int):
        with self._lock:
            current = table.get(key)
            if current is None:
                raise EntityNotFoundError(type(record).__name__, key)
            if current.version != expected_version:
                raise StaleEntityError(key, expected_version, current.version)
            stored = copy.deepcopy(record)
            stored.version = expected_version + 1
            self._commit(table, key, stored)
            return copy.deepcopy(stored)

    # =========================================================================
    # Properties
    # =========================================================================

    def upsert_property(self, record: PropertyRecord) -> PropertyRecord:
        """Register or replace the parties of a property."""
        with self._lock:
            self._commit(self._properties, record.property_id, copy.deepcopy(record))
            return copy.deepcopy(record)

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        with self._lock:
            record = self._properties.get(property_id)
            return copy.deepcopy(record) if record else None

    # =========================================================================
    # Agreements
    # =========================================================================

    def add_agreement(self, agreement: Agreement) -> Agreement:
        """
        Store a new agreement at version 1.

        Raises:
            ValueError: If the agreement ID already exists
        """
        with self._lock:
            if agreement.agreement_id in self._agreements:
                raise ValueError(f"Agreement {agreement.agreement_id} already exists")
            stored = copy.deepcopy(agreement)
            stored.version = 1
            self._commit(self._agreements, stored.agreement_id, stored)
            return copy.deepcopy(stored)

    def save_agreement(self, agreement: Agreement, expected_version: int) -> Agreement:
        """
        Write an agreement if its stored version still equals expected_version.

        Returns:
            The stored agreement with its new version

        Raises:
            EntityNotFoundError: If the agreement does not exist
            StaleEntityError: If another write landed first
        """
        return self._versioned_write(
            self._agreements, agreement.agreement_id, agreement, expected_version
        )

    def get_agreement(self, agreement_id: str) -> Optional[Agreement]:
        with self._lock:
            agreement = self._agreements.get(agreement_id)
            return copy.deepcopy(agreement) if agreement else None

    def list_agreements(
        self,
        property_id: Optional[str] = None,
        buyer_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        kind: Optional[AgreementKind] = None,
        status: Optional[AgreementStatus] = None,
    ) -> list[Agreement]:
        """List agreements matching every given filter, newest first."""
        with self._lock:
            matches = [
                a for a in self._agreements.values()
                if (property_id is None or a.property_id == property_id)
                and (buyer_id is None or a.buyer_id == buyer_id)
                and (agent_id is None or a.agent_id == agent_id)
                and (kind is None or a.kind == kind)
                and (status is None or a.status == status)
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            return [copy.deepcopy(a) for a in matches]

    def latest_agreement(
        self,
        property_id: str,
        kind: AgreementKind,
        buyer_id: Optional[str] = None,
    ) -> Optional[Agreement]:
        """Most recently created agreement of a kind for a property."""
        matches = self.list_agreements(property_id=property_id, buyer_id=buyer_id, kind=kind)
        return matches[0] if matches else None

    # =========================================================================
    # Viewing Requests
    # =========================================================================

    def add_viewing_request(self, request: ViewingRequest) -> ViewingRequest:
        """
        Store a new viewing request at version 1.

        Raises:
            ValueError: If the request ID already exists
        """
        with self._lock:
            if request.request_id in self._viewings:
                raise ValueError(f"Viewing request {request.request_id} already exists")
            stored = copy.deepcopy(request)
            stored.version = 1
            self._commit(self._viewings, stored.request_id, stored)
            return copy.deepcopy(stored)

    def save_viewing_request(
        self, request: ViewingRequest, expected_version: int
    ) -> ViewingRequest:
        """Versioned write of a viewing request (see save_agreement)."""
        return self._versioned_write(
            self._viewings, request.request_id, request, expected_version
        )

    def get_viewing_request(self, request_id: str) -> Optional[ViewingRequest]:
        with self._lock:
            request = self._viewings.get(request_id)
            return copy.deepcopy(request) if request else None

    def list_viewing_requests(
        self,
        property_id: Optional[str] = None,
        buyer_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        status: Optional[ViewingStatus] = None,
    ) -> list[ViewingRequest]:
        """
        List viewing requests matching every given filter, newest first.

        agent_id matches either the buyer agent or the seller agent.
        """
        with self._lock:
            matches = [
                r for r in self._viewings.values()
                if (property_id is None or r.property_id == property_id)
                and (buyer_id is None or r.buyer_id == buyer_id)
                and (agent_id is None or agent_id in (r.buyer_agent_id, r.seller_agent_id))
                and (status is None or r.status == status)
            ]
            matches.sort(key=lambda r: r.created_at, reverse=True)
            return [copy.deepcopy(r) for r in matches]

    def has_open_viewing(self, property_id: str) -> bool:
        """True if the property has a pending, accepted or rescheduled request."""
        with self._lock:
            return any(
                r.property_id == property_id and r.is_open
                for r in self._viewings.values()
            )

    def open_request_for(self, buyer_id: str, property_id: str) -> Optional[ViewingRequest]:
        """The buyer's open request for a property, if any."""
        with self._lock:
            for r in self._viewings.values():
                if r.buyer_id == buyer_id and r.property_id == property_id and r.is_open:
                    return copy.deepcopy(r)
            return None


# =============================================================================
# Degraded-Mode Cache
# =============================================================================


class RecordCache:
    """
    Last-known copies of records, keyed by ID.

    Only used as a read fallback when the repository is unavailable. Writes
    never go through the cache.
    """

    def __init__(self):
        self._records: dict[str, object] = {}
        self._lock = threading.Lock()

    def put(self, key: str, record) -> None:
        with self._lock:
            self._records[key] = copy.deepcopy(record)

    def get(self, key: str):
        with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record is not None else None

    def __len__(self) -> int:
        return len(self._records)

