"""
Shared fixtures for workflow tests.

The fake renderer produces readable bytes so tests can check exactly which
base document a signature was stamped onto.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.workflow import (
    ActivityLog,
    Actor,
    ApprovalOrchestrator,
    ArtifactStorage,
    DocumentRenderError,
    DocumentRenderer,
    InMemoryNotificationBus,
    PropertyRecord,
    Role,
    ViewingTokenRepository,
    WorkflowRepository,
)


BUYER_SIG = "data:image/png;base64,QlVZRVI="
AGENT_SIG = "data:image/png;base64,QUdFTlQ="
SELLER_SIG = "data:image/png;base64,U0VMTEVS"


class FakeRenderer(DocumentRenderer):
    """Renderer whose output spells out what was rendered and stamped."""

    def __init__(self):
        self.fail = False
        self.renders = 0
        self.overlays: list[tuple[bytes, str]] = []

    def render_document(self, kind, fields):
        if self.fail:
            raise DocumentRenderError("template engine offline")
        self.renders += 1
        return f"TEMPLATE:{kind.value}:{fields['agreement_id']}".encode()

    def overlay_signature(self, document, signature_image, anchor):
        if self.fail:
            raise DocumentRenderError("template engine offline", anchor=anchor)
        self.overlays.append((document, anchor))
        return document + f"|SIG:{anchor}".encode()


@pytest.fixture
def repository():
    repo = WorkflowRepository()
    repo.upsert_property(PropertyRecord(
        property_id="PROP-1",
        address="12 Harbour Road",
        seller_id="seller-1",
        agent_id="listing-agent",
    ))
    return repo


@pytest.fixture
def tokens():
    return ViewingTokenRepository(public_base_url="https://viewings.example.com")


@pytest.fixture
def bus():
    return InMemoryNotificationBus()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def activity_log():
    return ActivityLog()


@pytest.fixture
def orchestrator(repository, tokens, bus, renderer, activity_log, tmp_path):
    return ApprovalOrchestrator(
        repository=repository,
        tokens=tokens,
        renderer=renderer,
        artifacts=ArtifactStorage(str(tmp_path / "agreements")),
        notifications=bus,
        activity_log=activity_log,
    )


@pytest.fixture
def buyer():
    return Actor("buyer-1", Role.BUYER)


@pytest.fixture
def buyer_agent():
    return Actor("buyer-agent", Role.AGENT)


@pytest.fixture
def listing_agent():
    return Actor("listing-agent", Role.AGENT)


@pytest.fixture
def seller():
    return Actor("seller-1", Role.SELLER)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def window():
    start = datetime(2026, 11, 3, 10, 0, tzinfo=timezone.utc)
    return start, start + timedelta(hours=1)
