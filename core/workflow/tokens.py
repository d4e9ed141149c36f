"""
Public Viewing Tokens

Cryptographic tokens that let a seller or listing agent answer a viewing
request from an emailed link, without logging in.

Principles:
1. One active token per viewing request; issuing again reuses it
2. Tokens are cryptographically secure and expire
3. A token is claimed for the duration of one approval, then consumed on
   accept/reject or released on reschedule
4. Concurrent use of one token yields exactly one winner
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Final, Optional, Union
from uuid import uuid4

from core.workflow.schema import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# 32 random bytes, hex encoded (64 chars)
TOKEN_BYTES: Final[int] = 32

DEFAULT_EXPIRY_DAYS: Final[int] = 7

PUBLIC_LINK_PATH: Final[str] = "/public/viewing-request/"


# =============================================================================
# Enums
# =============================================================================


class TokenStatus(Enum):
    """Status of a viewing token."""

    ACTIVE = "active"
    CLAIMED = "claimed"  # An approval is in flight
    USED = "used"
    REVOKED = "revoked"


# =============================================================================
# Data Model
# =============================================================================


@dataclass
class ViewingToken:
    """Public-link token bound to one viewing request."""

    token_id: str
    token_value: str
    viewing_request_id: str
    status: TokenStatus
    created_at: datetime
    expires_at: datetime
    last_accessed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.token_id:
            raise ValueError("token_id is required")
        if not self.token_value:
            raise ValueError("token_value is required")
        if not self.viewing_request_id:
            raise ValueError("viewing_request_id is required")

    @property
    def is_expired(self) -> bool:
        return utc_now() > self.expires_at

    @property
    def is_valid(self) -> bool:
        return self.status == TokenStatus.ACTIVE and not self.is_expired

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "token_value": self.token_value,
            "viewing_request_id": self.viewing_request_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_accessed_at": (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ViewingToken":
        return cls(
            token_id=data["token_id"],
            token_value=data["token_value"],
            viewing_request_id=data["viewing_request_id"],
            status=TokenStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            last_accessed_at=(
                datetime.fromisoformat(data["last_accessed_at"])
                if data.get("last_accessed_at")
                else None
            ),
        )


def generate_token_value() -> str:
    """Generate a cryptographically secure hex token value."""
    return secrets.token_hex(TOKEN_BYTES)


# =============================================================================
# Validation Results
# =============================================================================


@dataclass(frozen=True)
class TokenValidationSuccess:
    """Returned when a token is usable."""

    token: ViewingToken
    viewing_request_id: str


@dataclass(frozen=True)
class TokenValidationFailure:
    """Returned when a token cannot be used."""

    reason: str
    error_code: str  # MISSING, NOT_FOUND, USED, REVOKED, EXPIRED, CLAIMED

    @property
    def already_used(self) -> bool:
        """True if the token was valid but another caller got there first."""
        return self.error_code in ("USED", "CLAIMED")


TokenValidationResult = Union[TokenValidationSuccess, TokenValidationFailure]


# =============================================================================
# Repository
# =============================================================================


class ViewingTokenRepository:
    """
    Issues, validates and consumes viewing tokens.

    Uses JSON file persistence, swappable for database later. All state
    changes happen under one lock so claim() is atomic.
    """

    def __init__(
        self,
        persist_path: Optional[str] = None,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
        public_base_url: str = "http://localhost:8000",
    ):
        """
        Initialize repository.

        Args:
            persist_path: Path to JSON file for persistence
            expiry_days: Validity period of newly issued tokens
            public_base_url: Origin used to build public links
        """
        self._tokens: dict[str, ViewingToken] = {}  # token_id -> ViewingToken
        self._value_index: dict[str, str] = {}  # token_value -> token_id
        self._lock = threading.RLock()
        self._expiry = timedelta(days=expiry_days)
        self._public_base_url = public_base_url.rstrip("/")
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "tokens": {tid: t.to_dict() for tid, t in self._tokens.items()},
            "saved_at": utc_now().isoformat(),
        }

        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        """Load data from file."""
        if not self._persist_path or not self._persist_path.exists():
            return

        try:
            data = json.loads(self._persist_path.read_text())
            for tid, token_data in data.get("tokens", {}).items():
                token = ViewingToken.from_dict(token_data)
                self._tokens[tid] = token
                self._value_index[token.token_value] = tid
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load viewing token data: %s", e)

    # =========================================================================
    # Token Service
    # =========================================================================

    def issue(self, viewing_request_id: str) -> ViewingToken:
        """
        Issue a token for a viewing request.

        An existing active, unexpired token for the request is returned
        instead of creating a second one.
        """
        with self._lock:
            for token in self._tokens.values():
                if token.viewing_request_id == viewing_request_id and token.is_valid:
                    return token

            value = generate_token_value()
            while value in self._value_index:
                value = generate_token_value()

            now = utc_now()
            token = ViewingToken(
                token_id=f"VTK-{uuid4().hex[:12].upper()}",
                token_value=value,
                viewing_request_id=viewing_request_id,
                status=TokenStatus.ACTIVE,
                created_at=now,
                expires_at=now + self._expiry,
            )
            self._tokens[token.token_id] = token
            self._value_index[value] = token.token_id
            self._save_to_file()
            logger.info("Issued viewing token %s for %s", token.token_id, viewing_request_id)
            return token

    def get_by_value(self, token_value: str) -> Optional[ViewingToken]:
        token_id = self._value_index.get(token_value)
        if token_id:
            return self._tokens.get(token_id)
        return None

    def _check(self, token_value: Optional[str]) -> TokenValidationResult:
        if not token_value:
            return TokenValidationFailure(reason="Token is required", error_code="MISSING")

        token = self.get_by_value(token_value)
        if not token:
            return TokenValidationFailure(reason="Invalid or expired token", error_code="NOT_FOUND")
        if token.status == TokenStatus.USED:
            return TokenValidationFailure(
                reason="This link has already been used", error_code="USED"
            )
        if token.status == TokenStatus.REVOKED:
            return TokenValidationFailure(
                reason="This link has been deactivated", error_code="REVOKED"
            )
        if token.is_expired:
            return TokenValidationFailure(reason="This link has expired", error_code="EXPIRED")
        if token.status == TokenStatus.CLAIMED:
            return TokenValidationFailure(
                reason="This link is being used by another response", error_code="CLAIMED"
            )

        return TokenValidationSuccess(token=token, viewing_request_id=token.viewing_request_id)

    def validate(self, token_value: Optional[str]) -> TokenValidationResult:
        """
        Validate a token and record the access time on success.

        Args:
            token_value: Token from the public link

        Returns:
            TokenValidationSuccess if usable, TokenValidationFailure otherwise
        """
        with self._lock:
            result = self._check(token_value)
            if isinstance(result, TokenValidationSuccess):
                result.token.last_accessed_at = utc_now()
                self._save_to_file()
            return result

    def claim(self, token_value: Optional[str]) -> TokenValidationResult:
        """
        Atomically validate a token and mark it claimed.

        Exactly one of several concurrent callers succeeds. The winner must
        call consume() or release() when its approval finishes.
        """
        with self._lock:
            result = self._check(token_value)
            if isinstance(result, TokenValidationSuccess):
                result.token.status = TokenStatus.CLAIMED
                result.token.last_accessed_at = utc_now()
                self._save_to_file()
            return result

    def release(self, token_value: str) -> bool:
        """Return a claimed token to active, e.g. after a reschedule."""
        with self._lock:
            token = self.get_by_value(token_value)
            if not token or token.status != TokenStatus.CLAIMED:
                return False
            token.status = TokenStatus.ACTIVE
            self._save_to_file()
            return True

    def consume(self, token_value: str) -> bool:
        """Mark a token used. Used tokens never validate again."""
        with self._lock:
            token = self.get_by_value(token_value)
            if not token or token.status in (TokenStatus.USED, TokenStatus.REVOKED):
                return False
            token.status = TokenStatus.USED
            self._save_to_file()
            return True

    # Token service vocabulary
    invalidate = consume

    def revoke_for_request(self, viewing_request_id: str) -> int:
        """Deactivate every unused token of a viewing request."""
        with self._lock:
            revoked = 0
            for token in self._tokens.values():
                if (
                    token.viewing_request_id == viewing_request_id
                    and token.status in (TokenStatus.ACTIVE, TokenStatus.CLAIMED)
                ):
                    token.status = TokenStatus.REVOKED
                    revoked += 1
            if revoked:
                self._save_to_file()
            return revoked

    def public_link(self, token: ViewingToken) -> str:
        """Public URL a reviewer opens to answer the request."""
        return f"{self._public_base_url}{PUBLIC_LINK_PATH}{token.token_value}"

    def list_for_request(self, viewing_request_id: str) -> list[ViewingToken]:
        return [t for t in self._tokens.values() if t.viewing_request_id == viewing_request_id]
