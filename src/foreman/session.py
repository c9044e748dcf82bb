from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from foreman.state.store import JsonStateStore, utcnow_iso

EnvironmentAction = Literal["created", "adopted", "deleted"]


@dataclass(slots=True)
class SessionState:
    """Session-scoped state that outlives any single plan."""

    active_environment: str | None = None
    environment_history: list[dict[str, Any]] = field(default_factory=list)
    persistent_memory: dict[str, Any] = field(default_factory=dict)

    def record_environment(self, action: EnvironmentAction, name: str) -> None:
        self.environment_history.append({"action": action, "name": name, "at": utcnow_iso()})
        if action in {"created", "adopted"}:
            self.active_environment = name
        elif action == "deleted" and self.active_environment == name:
            self.active_environment = None

    def remember(self, key: str, value: Any) -> None:
        self.persistent_memory[key] = value

    def recall(self, key: str, default: Any = None) -> Any:
        return self.persistent_memory.get(key, default)

    def fingerprint(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    def detached(self) -> SessionState:
        return SessionState.from_dict(copy.deepcopy(self.to_dict()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_environment": self.active_environment,
            "environment_history": list(self.environment_history),
            "persistent_memory": dict(self.persistent_memory),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionState:
        history = payload.get("environment_history", [])
        memory = payload.get("persistent_memory", {})
        active = payload.get("active_environment")
        return cls(
            active_environment=str(active) if active else None,
            environment_history=list(history) if isinstance(history, list) else [],
            persistent_memory=dict(memory) if isinstance(memory, dict) else {},
        )


class SessionStateStore:
    def __init__(self, store: JsonStateStore) -> None:
        self.store = store
        self.logger = structlog.get_logger().bind(component="session_store")

    def load(self, session_id: str) -> SessionState:
        if not self.store.exists("sessions", session_id):
            state = SessionState()
            self.persist(session_id, state)
            self.logger.info("session_created", session_id=session_id)
            return state
        payload = self.store.get_json("sessions", session_id, default={})
        return SessionState.from_dict(payload if isinstance(payload, dict) else {})

    def persist(self, session_id: str, state: SessionState) -> None:
        self.store.set_json("sessions", session_id, state.to_dict())
        self.logger.debug(
            "session_persisted",
            session_id=session_id,
            memory_keys=len(state.persistent_memory),
        )

    def reset(self, session_id: str) -> bool:
        removed = self.store.delete("sessions", session_id)
        if removed:
            self.logger.info("session_reset", session_id=session_id)
        return removed

    def list_sessions(self) -> list[str]:
        return self.store.keys("sessions")
