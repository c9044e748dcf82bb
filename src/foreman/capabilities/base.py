from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from foreman.errors import ForemanError

if TYPE_CHECKING:
    from foreman.context import ExecutionContext
    from foreman.processes import CancelToken

PermissionGroup = Literal[
    "shell_execution",
    "filesystem_write",
    "filesystem_read",
    "internet_access",
]
PERMISSION_GROUPS: tuple[PermissionGroup, ...] = (
    "shell_execution",
    "filesystem_write",
    "filesystem_read",
    "internet_access",
)
PARAMETER_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    EXECUTION_FAILURE = "execution_failure"
    CANCELLED = "cancelled"
    TRANSIENT = "transient"


class CapabilityError(ForemanError):
    """Raised for capability registration and lookup problems."""


class DuplicateCapabilityError(CapabilityError):
    """Raised when a capability name is registered twice."""


class CapabilityNotFoundError(CapabilityError):
    """Raised when a capability is unknown or not enabled."""


class RegistryFrozenError(CapabilityError):
    """Raised when the registry is mutated after startup."""


class TransientCapabilityError(ForemanError):
    """Raised by capabilities for network or timeout failures worth retrying."""


@dataclass(frozen=True, slots=True)
class ParameterSpec:
    name: str
    type: str
    description: str = ""
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }


@dataclass(frozen=True, slots=True)
class CapabilityResult:
    success: bool
    output: str
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, output: str) -> CapabilityResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(
        cls, output: str, kind: ErrorKind = ErrorKind.EXECUTION_FAILURE
    ) -> CapabilityResult:
        return cls(success=False, output=output, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CapabilityResult:
        kind = payload.get("error_kind")
        return cls(
            success=bool(payload.get("success")),
            output=str(payload.get("output", "")),
            error_kind=ErrorKind(kind) if kind else None,
        )


class Capability(ABC):
    """A named, schema-described, permission-gated unit of work.

    Subclasses set the class attributes and implement ``execute``. Output is
    always human-readable text; structured data is serialized into it.
    """

    name: str = ""
    description: str = ""
    parameters: tuple[ParameterSpec, ...] = ()
    permission_group: PermissionGroup | None = None
    is_default: bool = True
    uses_session_state: bool = False

    @abstractmethod
    async def execute(
        self,
        params: dict[str, Any],
        context: ExecutionContext,
        token: CancelToken,
    ) -> CapabilityResult:
        """Run the capability and report a structured outcome."""

    def describe(self) -> str:
        params = ", ".join(
            f'"{param.name}" ({param.type}{"" if param.required else ", optional"}): '
            f"{param.description}"
            for param in self.parameters
        )
        return f"- **{self.name}**: {self.description} (Params: {params or 'none'})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [param.to_dict() for param in self.parameters],
            "permission_group": self.permission_group,
            "is_default": self.is_default,
            "uses_session_state": self.uses_session_state,
        }
