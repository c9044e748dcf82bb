from __future__ import annotations

import json
import os
import re
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.errors import StateStoreError

KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonStateStore:
    """Versioned JSON documents on disk, one file per namespace/key."""

    NAMESPACES = {"sessions", "plans", "knowledge"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.expanduser().resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _validate(namespace: str, key: str) -> None:
        if namespace not in JsonStateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        if not KEY_PATTERN.match(key):
            raise StateStoreError(f"Invalid state key: {key!r}")

    def _path(self, namespace: str, key: str) -> Path:
        return self.state_dir / namespace / f"{key}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str, key: str) -> Any:
        path = self._path(namespace, key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw(self, namespace: str, key: str, payload: Any) -> None:
        path = self._path(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def exists(self, namespace: str, key: str) -> bool:
        self._validate(namespace, key)
        return self._path(namespace, key).exists()

    def get_envelope(self, namespace: str, key: str, default: Any | None = None) -> dict[str, Any]:
        self._validate(namespace, key)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw(namespace, key), default_value)

    def get_json(self, namespace: str, key: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, key, default=default).get("data")

    def set_json(
        self,
        namespace: str,
        key: str,
        data: Any,
        expected_revision: int | None = None,
    ) -> int:
        self._validate(namespace, key)
        with self._state_lock():
            current = self.get_envelope(namespace, key, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for '{namespace}/{key}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_raw(namespace, key, envelope)
            return envelope["revision"]

    def update_json(
        self,
        namespace: str,
        key: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, key, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(
                    namespace,
                    key,
                    updated,
                    expected_revision=int(current.get("revision", 0)),
                )
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def delete(self, namespace: str, key: str) -> bool:
        self._validate(namespace, key)
        with self._state_lock():
            path = self._path(namespace, key)
            if not path.exists():
                return False
            path.unlink()
            return True

    def keys(self, namespace: str) -> list[str]:
        if namespace not in self.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        directory = self.state_dir / namespace
        if not directory.exists():
            return []
        return sorted(path.stem for path in directory.glob("*.json"))
