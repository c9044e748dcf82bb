from foreman.capabilities.base import (
    PERMISSION_GROUPS,
    Capability,
    CapabilityError,
    CapabilityNotFoundError,
    CapabilityResult,
    DuplicateCapabilityError,
    ErrorKind,
    ParameterSpec,
    PermissionGroup,
    RegistryFrozenError,
    TransientCapabilityError,
)
from foreman.capabilities.registry import CapabilityRegistry

__all__ = [
    "PERMISSION_GROUPS",
    "Capability",
    "CapabilityError",
    "CapabilityNotFoundError",
    "CapabilityRegistry",
    "CapabilityResult",
    "DuplicateCapabilityError",
    "ErrorKind",
    "ParameterSpec",
    "PermissionGroup",
    "RegistryFrozenError",
    "TransientCapabilityError",
]
