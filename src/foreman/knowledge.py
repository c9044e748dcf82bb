from __future__ import annotations

import time
from typing import Any, Literal

import structlog

from foreman.errors import ForemanError
from foreman.state.store import JsonStateStore

KnowledgeScope = Literal["local", "global"]
TREE_KEY = "tree"


class KnowledgeError(ForemanError):
    """Raised for malformed knowledge paths."""


class KnowledgeStore:
    """Hierarchical notes kept per project (local) or per user (global).

    Each scope is one nested tree of ``{value, summary, children, timestamp}``
    nodes, stored under the ``knowledge`` namespace of its own state store.
    """

    def __init__(self, local: JsonStateStore, global_store: JsonStateStore | None = None) -> None:
        self.stores: dict[KnowledgeScope, JsonStateStore] = {"local": local}
        if global_store is not None:
            self.stores["global"] = global_store
        self.logger = structlog.get_logger().bind(component="knowledge_store")

    def _store_for(self, scope: KnowledgeScope) -> JsonStateStore:
        try:
            return self.stores[scope]
        except KeyError as exc:
            raise KnowledgeError(f"Knowledge scope is not configured: {scope}") from exc

    @staticmethod
    def _normalize_path(path: list[str] | tuple[str, ...]) -> list[str]:
        segments = [str(segment).strip() for segment in path]
        if not segments or any(not segment for segment in segments):
            raise KnowledgeError("Knowledge path needs at least one non-empty segment.")
        return segments

    def store(
        self,
        path: list[str] | tuple[str, ...],
        content: str,
        summary: str = "",
        scope: KnowledgeScope = "local",
    ) -> None:
        segments = self._normalize_path(path)

        def _insert(tree: Any) -> dict[str, Any]:
            root: dict[str, Any] = tree if isinstance(tree, dict) else {}
            current = root
            now = time.time()
            for index, segment in enumerate(segments):
                node = current.setdefault(segment, {"timestamp": now, "children": {}})
                if index == len(segments) - 1:
                    node["value"] = content
                    node["summary"] = summary
                    node["timestamp"] = now
                else:
                    current = node.setdefault("children", {})
            return root

        self._store_for(scope).update_json("knowledge", TREE_KEY, _insert, default={})
        self.logger.info("knowledge_stored", path=" > ".join(segments), scope=scope)

    def lookup(
        self, path: list[str] | tuple[str, ...], scope: KnowledgeScope = "local"
    ) -> dict[str, Any] | None:
        segments = self._normalize_path(path)
        current: dict[str, Any] = self.tree(scope)
        node: dict[str, Any] | None = None
        for segment in segments:
            node = current.get(segment)
            if not isinstance(node, dict):
                return None
            current = node.get("children") or {}
        return node

    def tree(self, scope: KnowledgeScope = "local") -> dict[str, Any]:
        data = self._store_for(scope).get_json("knowledge", TREE_KEY, default={})
        return data if isinstance(data, dict) else {}
