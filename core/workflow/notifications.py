"""
Notification Bus

Fan-out of workflow events to the parties of a viewing or agreement.
Delivery is fire-and-forget relative to the transition that caused it:
the orchestrator logs bus failures and carries on.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

import requests

from core.workflow.errors import NotificationError
from core.workflow.schema import utc_now

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Workflow events that parties are notified about."""

    VIEWING_REQUEST_CREATED = "viewing_request_created"
    VIEWING_REQUEST_APPROVAL = "viewing_request_approval"
    VIEWING_REQUEST_UPDATED = "viewing_request_updated"
    VIEWING_REQUEST_CANCELLED = "viewing_request_cancelled"
    AGREEMENT_UPDATED = "agreement_updated"


@dataclass(frozen=True)
class Notification:
    """One delivered event."""

    recipient_ids: tuple[str, ...]
    event_type: EventType
    payload: dict[str, Any]
    sent_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_ids": list(self.recipient_ids),
            "event_type": self.event_type.value,
            "payload": self.payload,
            "sent_at": self.sent_at.isoformat(),
        }


def collect_recipients(*candidates: Optional[str]) -> list[str]:
    """
    Order recipients by priority, skipping unset IDs and duplicates.

    Callers pass buyer, buyer agent, seller agent, seller in that order.
    """
    recipients: list[str] = []
    for user_id in candidates:
        if user_id and user_id not in recipients:
            recipients.append(user_id)
    return recipients


# =============================================================================
# Buses
# =============================================================================


class NotificationBus(ABC):
    """Delivers workflow events to a list of users."""

    @abstractmethod
    def notify(
        self,
        recipient_ids: Iterable[str],
        event_type: EventType,
        payload: dict[str, Any],
    ) -> None:
        """
        Deliver an event.

        Raises:
            NotificationError: If delivery fails
        """


class InMemoryNotificationBus(NotificationBus):
    """Records notifications in memory. Used in tests and local runs."""

    def __init__(self):
        self._sent: list[Notification] = []
        self._lock = threading.Lock()

    def notify(self, recipient_ids, event_type, payload) -> None:
        with self._lock:
            self._sent.append(Notification(
                recipient_ids=tuple(recipient_ids),
                event_type=event_type,
                payload=dict(payload),
            ))

    @property
    def sent(self) -> list[Notification]:
        with self._lock:
            return list(self._sent)

    def of_type(self, event_type: EventType) -> list[Notification]:
        return [n for n in self.sent if n.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()


class LoggingNotificationBus(NotificationBus):
    """Writes notifications to the log instead of delivering them."""

    def notify(self, recipient_ids, event_type, payload) -> None:
        logger.info(
            "Notification %s -> %s: %s",
            event_type.value,
            ", ".join(recipient_ids),
            payload.get("message", ""),
        )


class WebhookNotificationBus(NotificationBus):
    """POSTs each notification as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, recipient_ids, event_type, payload) -> None:
        notification = Notification(
            recipient_ids=tuple(recipient_ids),
            event_type=event_type,
            payload=dict(payload),
        )
        try:
            response = self.session.post(
                self.url,
                json=notification.to_dict(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Webhook delivery to {self.url} failed: {e}") from e
