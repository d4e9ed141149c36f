"""
Default agent assignment policies.

When an agreement or viewing request needs an agent and the caller did not
name one, the orchestrator asks its injected policy. A policy is any
callable taking the property (or None for global documents) and returning
an agent ID or None.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from core.workflow.schema import PropertyRecord


AssignmentPolicy = Callable[[Optional[PropertyRecord]], Optional[str]]


def no_default_assignment(property_record: Optional[PropertyRecord]) -> Optional[str]:
    """Never assign an agent implicitly."""
    return None


def first_available_agent(agent_ids: Iterable[str]) -> AssignmentPolicy:
    """Policy that assigns the first agent on the brokerage roster."""
    roster = [a.strip() for a in agent_ids if a and a.strip()]

    def policy(property_record: Optional[PropertyRecord]) -> Optional[str]:
        return roster[0] if roster else None

    return policy


def fixed_agent(agent_id: str) -> AssignmentPolicy:
    """Policy that always assigns the same agent, e.g. a brokerage admin."""

    def policy(property_record: Optional[PropertyRecord]) -> Optional[str]:
        return agent_id

    return policy
