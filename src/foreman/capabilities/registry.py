from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from foreman.capabilities.base import (
    PARAMETER_TYPES,
    Capability,
    CapabilityError,
    CapabilityNotFoundError,
    DuplicateCapabilityError,
    RegistryFrozenError,
)


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    # bool is an int subclass; reject it for numeric slots.
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, dict)
    return True


class CapabilityRegistry:
    """Lookup table of named capabilities, read-only once frozen."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._enabled: set[str] = set()
        self._frozen = False
        self.logger = structlog.get_logger().bind(component="capability_registry")

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _ensure_mutable(self, operation: str) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Capability registry is frozen; cannot {operation}.")

    def register(self, capability: Capability) -> None:
        self._ensure_mutable("register")
        name = capability.name.strip()
        if not name:
            raise CapabilityError("Capability name must be a non-empty string.")
        if name in self._capabilities:
            raise DuplicateCapabilityError(f"Capability already registered: {name}")
        for param in capability.parameters:
            if param.type not in PARAMETER_TYPES:
                raise CapabilityError(
                    f"Capability {name} declares unsupported parameter type "
                    f"'{param.type}' for '{param.name}'."
                )
        self._capabilities[name] = capability
        if capability.is_default:
            self._enabled.add(name)
        self.logger.debug(
            "capability_registered",
            capability=name,
            permission_group=capability.permission_group,
            enabled=capability.is_default,
        )

    def register_all(self, capabilities: Iterable[Capability]) -> None:
        for capability in capabilities:
            self.register(capability)

    def enable(self, names: Iterable[str]) -> None:
        self._ensure_mutable("enable capabilities")
        for name in names:
            if name not in self._capabilities:
                raise CapabilityNotFoundError(f"Unknown capability: {name}")
            self._enabled.add(name)

    def disable(self, names: Iterable[str]) -> None:
        self._ensure_mutable("disable capabilities")
        for name in names:
            if name not in self._capabilities:
                raise CapabilityNotFoundError(f"Unknown capability: {name}")
            self._enabled.discard(name)

    def freeze(self) -> None:
        self._frozen = True

    def lookup(self, name: str) -> Capability:
        capability = self._capabilities.get(name)
        if capability is None:
            raise CapabilityNotFoundError(f"Unknown capability: {name}")
        if name not in self._enabled:
            raise CapabilityNotFoundError(f"Capability is not enabled: {name}")
        return capability

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled

    def all(self) -> list[Capability]:
        return [self._capabilities[name] for name in sorted(self._capabilities)]

    def enabled(self) -> list[Capability]:
        return [cap for cap in self.all() if cap.name in self._enabled]

    def names(self) -> list[str]:
        return sorted(self._enabled)

    def describe(self) -> str:
        return "\n".join(cap.describe() for cap in self.enabled())

    @staticmethod
    def validate_params(capability: Capability, params: Any) -> list[str]:
        if not isinstance(params, dict):
            return [f"Parameters for {capability.name} must be an object."]
        problems: list[str] = []
        declared = {param.name: param for param in capability.parameters}
        for param in capability.parameters:
            if param.name not in params or params[param.name] is None:
                if param.required:
                    problems.append(f"Missing required parameter '{param.name}'.")
                continue
            if not _matches_type(params[param.name], param.type):
                actual = type(params[param.name]).__name__
                problems.append(
                    f"Parameter '{param.name}' must be of type {param.type}, got {actual}."
                )
        for key in sorted(set(params) - set(declared)):
            problems.append(f"Unknown parameter '{key}'.")
        return problems
