from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from foreman.events import EventBus
    from foreman.knowledge import KnowledgeStore
    from foreman.plan import Plan
    from foreman.planner import Planner
    from foreman.processes import CancelToken
    from foreman.session import SessionState
    from foreman.workspace import Workspace


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Everything a capability may touch during a single dispatch."""

    session_id: str
    plan: Plan
    session: SessionState
    planner: Planner
    knowledge: KnowledgeStore
    workspace: Workspace
    events: EventBus
    token: CancelToken
