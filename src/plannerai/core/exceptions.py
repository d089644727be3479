"""Custom exceptions for the planner assistant.

Every engine-level failure maps onto one of the error kinds a tool call
result can carry.  The dispatcher converts these into ``ToolCallResult``
objects at its boundary; everything else propagates.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    AMBIGUOUS_MATCH = "ambiguous_match"
    UNAUTHORIZED = "unauthorized"
    EXECUTION_ERROR = "execution_error"


class PlannerError(Exception):
    """Base exception for all planner assistant errors."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ToolValidationError(PlannerError):
    """Tool parameters failed schema validation."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        issues: list[dict[str, Any]] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.issues = issues or []


class ToolNotRegisteredError(ToolValidationError):
    """Requested tool name is not in the registry."""


class NotFoundError(PlannerError):
    """Identifier matched no record owned by the user."""

    kind = ErrorKind.NOT_FOUND


class AmbiguousMatchError(PlannerError):
    """Identifier matched several records; the user must pick one."""

    kind = ErrorKind.AMBIGUOUS_MATCH

    def __init__(
        self,
        message: str,
        *,
        candidates: list[dict[str, Any]],
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.candidates = candidates


class UnauthorizedError(PlannerError):
    """Request carried no authenticated user."""

    kind = ErrorKind.UNAUTHORIZED


class ExecutionError(PlannerError):
    """Repository access failed or timed out."""

    kind = ErrorKind.EXECUTION_ERROR


class ReplayError(PlannerError):
    """Replay operation failed."""
