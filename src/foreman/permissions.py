from __future__ import annotations

from dataclasses import dataclass

from foreman.capabilities.base import PERMISSION_GROUPS, Capability, PermissionGroup
from foreman.errors import ForemanError


class PermissionDeniedError(ForemanError):
    """Raised when a capability's permission group is disabled by policy."""

    def __init__(self, capability: str, group: PermissionGroup) -> None:
        super().__init__(
            f"Permission denied: capability '{capability}' requires '{group}', "
            "which is disabled by policy."
        )
        self.capability = capability
        self.group = group


@dataclass(slots=True)
class PermissionPolicy:
    shell_execution: bool = True
    filesystem_write: bool = True
    filesystem_read: bool = True
    internet_access: bool = False

    def allows(self, group: PermissionGroup | None) -> bool:
        if group is None:
            return True
        if group not in PERMISSION_GROUPS:
            return False
        return bool(getattr(self, group))

    def set(self, group: PermissionGroup, allowed: bool) -> None:
        if group not in PERMISSION_GROUPS:
            raise ValueError(f"Unknown permission group: {group}")
        setattr(self, group, allowed)

    def to_dict(self) -> dict[str, bool]:
        return {group: bool(getattr(self, group)) for group in PERMISSION_GROUPS}

    @classmethod
    def allow_all(cls) -> PermissionPolicy:
        return cls(True, True, True, True)


def check_and_gate(capability: Capability, policy: PermissionPolicy) -> None:
    """Raise ``PermissionDeniedError`` unless policy allows ``capability`` to run."""
    group = capability.permission_group
    if group is None:
        return
    if not policy.allows(group):
        raise PermissionDeniedError(capability.name, group)
