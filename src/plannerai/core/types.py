"""Shared value types: entity kinds, references, tool call envelopes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from plannerai.core.exceptions import ErrorKind


class EntityKind(str, Enum):
    TASK = "task"
    EVENT = "event"
    NOTE = "note"
    PROJECT = "project"


@dataclass(frozen=True)
class EntityRef:
    """Resolved pointer to one owned record."""

    kind: EntityKind
    id: str
    display_name: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "id": self.id, "displayName": self.display_name}


@dataclass(frozen=True)
class Candidate:
    """One option offered back to the user when a name is ambiguous."""

    id: str
    title: str
    distinguishing_field: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "title": self.title,
            "distinguishingField": self.distinguishing_field,
        }


@dataclass(frozen=True)
class AmbiguousMatch:
    kind: EntityKind
    identifier: str
    candidates: tuple[Candidate, ...]


@dataclass(frozen=True)
class NotFound:
    kind: EntityKind
    identifier: str
    hint: str | None = None


ResolveOutcome = EntityRef | AmbiguousMatch | NotFound


@dataclass
class ConversationContext:
    """Short-term memory of the last entity mentioned per kind.

    Attrs:
        conversation_id: Conversation the memory belongs to.
        user_id: Owner; contexts are never shared across users.
        last_mentioned: At most one reference per kind.
        last_deleted: Last soft-deleted reference per kind; backs pronouns
            resolved among trashed records.
        updated_at: Last time a mention was recorded.
    """

    conversation_id: str
    user_id: str
    last_mentioned: dict[EntityKind, EntityRef] = field(default_factory=dict)
    last_deleted: dict[EntityKind, EntityRef] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> ConversationContext:
        return ConversationContext(
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            last_mentioned=dict(self.last_mentioned),
            last_deleted=dict(self.last_deleted),
            updated_at=self.updated_at,
        )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolCallRequest(_CamelModel):
    """One tool invocation chosen by the model."""

    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    user_id: str = ""
    conversation_id: str = ""


class ToolError(_CamelModel):
    kind: ErrorKind
    message: str
    candidates: list[dict[str, Any]] | None = None
    hint: str | None = None


class ToolCallResult(_CamelModel):
    """Outcome of a dispatched tool call.

    ``data`` may accompany a failure when per-item outcomes are useful
    to the caller (bulk operations that failed on every item).
    """

    success: bool
    data: Any = None
    error: ToolError | None = None

    @model_validator(mode="after")
    def _check_error_matches_success(self) -> ToolCallResult:
        if self.success and self.error is not None:
            raise ValueError("successful result cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("failed result must carry an error")
        return self

    @classmethod
    def ok(cls, data: Any = None) -> ToolCallResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        candidates: list[dict[str, Any]] | None = None,
        hint: str | None = None,
        data: Any = None,
    ) -> ToolCallResult:
        return cls(
            success=False,
            data=data,
            error=ToolError(kind=kind, message=message, candidates=candidates, hint=hint),
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
