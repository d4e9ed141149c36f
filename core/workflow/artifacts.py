"""
Agreement Artifacts - Rendering Interface and Document Storage

The orchestrator renders and signs documents through DocumentRenderer
(implemented in reporting.agreement_renderer) and keeps every rendered or
signed PDF in ArtifactStorage with SHA-256 integrity. Each write creates a
new file, so earlier signed versions of a document stay available.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Final, Optional
from urllib.parse import unquote, urlparse

from core.workflow.errors import ArtifactStorageError
from core.workflow.schema import Agreement, AgreementKind, utc_now

logger = logging.getLogger(__name__)


DEFAULT_ARTIFACT_PATH: Final[str] = "data/agreements"


# =============================================================================
# Renderer Interface
# =============================================================================


class DocumentRenderer(ABC):
    """Renders agreement documents and overlays signatures onto them."""

    @abstractmethod
    def render_document(self, kind: AgreementKind, fields: dict[str, Any]) -> bytes:
        """
        Render a blank (unsigned) agreement document.

        Raises:
            DocumentRenderError: If the document cannot be rendered
        """

    @abstractmethod
    def overlay_signature(self, document: bytes, signature_image: str, anchor: str) -> bytes:
        """
        Place a signature image at a named anchor and return the new document.

        Raises:
            DocumentRenderError: If the document or image cannot be processed
        """


def render_fields(agreement: Agreement, property_address: Optional[str] = None) -> dict[str, Any]:
    """Template fields for an agreement."""
    return {
        "agreement_id": agreement.agreement_id,
        "property_address": property_address,
        "buyer_id": agreement.buyer_id,
        "agent_id": agreement.agent_id,
        "agreement_text": agreement.agreement_text,
        "prepared_on": agreement.created_at.strftime("%d %B %Y"),
    }


# =============================================================================
# Storage
# =============================================================================


@dataclass(frozen=True)
class StoredArtifact:
    """Location and checksum of a stored document."""

    agreement_id: str
    storage_path: str
    content_hash: str
    size_bytes: int
    stored_at: datetime

    @property
    def url(self) -> str:
        return Path(self.storage_path).resolve().as_uri()


class ArtifactStorage:
    """
    File storage for agreement documents.

    Documents are stored as:
    {storage_root}/{agreement_id}/{timestamp}-{hash prefix}.pdf
    """

    def __init__(self, storage_root: Optional[str] = None):
        self._storage_root = Path(storage_root or DEFAULT_ARTIFACT_PATH)

    @property
    def storage_root(self) -> Path:
        return self._storage_root

    @staticmethod
    def _sanitise(name: str) -> str:
        safe = name.replace("/", "_").replace("\\", "_").replace("..", "_")
        safe = safe.strip().strip(".")
        return safe or "agreement"

    @staticmethod
    def _calculate_hash(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()

    def store(self, agreement_id: str, content: bytes) -> StoredArtifact:
        """
        Write a document and return where it landed.

        Raises:
            ArtifactStorageError: If the content is empty or cannot be written
        """
        if not content:
            raise ArtifactStorageError(f"Refusing to store empty document for {agreement_id}")

        content_hash = self._calculate_hash(content)
        now = utc_now()
        path = (
            self._storage_root
            / self._sanitise(agreement_id)
            / f"{now.strftime('%Y%m%dT%H%M%S%f')}-{content_hash[:12]}.pdf"
        )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise ArtifactStorageError(f"Could not write {path}: {e}") from e

        logger.debug("Stored %d bytes for %s at %s", len(content), agreement_id, path)
        return StoredArtifact(
            agreement_id=agreement_id,
            storage_path=str(path),
            content_hash=content_hash,
            size_bytes=len(content),
            stored_at=now,
        )

    def retrieve(self, storage_path: str) -> Optional[bytes]:
        """Read a stored document, or None if it is gone."""
        path = Path(storage_path)
        if path.exists():
            return path.read_bytes()
        return None

    def retrieve_url(self, url: str) -> Optional[bytes]:
        """Read a stored document from the file URL kept on the agreement."""
        if url.startswith("file://"):
            return self.retrieve(unquote(urlparse(url).path))
        return self.retrieve(url)

    def list_versions(self, agreement_id: str) -> list[Path]:
        """All stored versions of an agreement, oldest first."""
        folder = self._storage_root / self._sanitise(agreement_id)
        if not folder.exists():
            return []
        return sorted(p for p in folder.iterdir() if p.is_file())
