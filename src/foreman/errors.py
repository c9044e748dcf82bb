from __future__ import annotations


class ForemanError(RuntimeError):
    """Base class for errors raised by the orchestration core."""


class InvalidTransitionError(ForemanError):
    """Raised when a task or plan is moved through an illegal status change."""


class OperationCancelledError(ForemanError):
    """Raised when a cancel token fires before an operation completes."""


class StateStoreError(ForemanError):
    """Raised when durable state operations fail."""


class PlanParseError(ForemanError):
    """Raised when a planner reply cannot be turned into task drafts."""


class ParameterResolutionError(ForemanError):
    """Raised when a task parameter references a task that has no usable result."""
