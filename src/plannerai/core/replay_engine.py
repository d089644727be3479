"""Replay engine: re-run a logged conversation's tool calls against current data."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from plannerai.core.ai_logger import TOOL_CALLED, TOOL_RESULT, DatabaseLogSink
from plannerai.core.exceptions import ReplayError, ToolNotRegisteredError
from plannerai.core.types import ToolCallRequest

logger = logging.getLogger(__name__)


@dataclass
class ReplayStep:
    """One replayed call.

    Attrs:
        tool_name: Tool that was called.
        parameters: Raw parameters exactly as originally logged.
        original_success: Outcome recorded at the time, if it was logged.
        original_error_kind: Error kind recorded at the time.
        replayed: Whether the call was dispatched again.
        success: Outcome of the replay (None when skipped).
        error_kind: Error kind of the replay.
        result: Full replay result payload.
    """

    tool_name: str
    parameters: dict[str, Any]
    original_success: bool | None = None
    original_error_kind: str | None = None
    replayed: bool = False
    success: bool | None = None
    error_kind: str | None = None
    result: dict[str, Any] | None = None

    @property
    def diverged(self) -> bool:
        return (
            self.replayed
            and self.original_success is not None
            and (self.success, self.error_kind) != (self.original_success, self.original_error_kind)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolName": self.tool_name,
            "parameters": self.parameters,
            "originalSuccess": self.original_success,
            "originalErrorKind": self.original_error_kind,
            "replayed": self.replayed,
            "success": self.success,
            "errorKind": self.error_kind,
            "diverged": self.diverged,
            "result": self.result,
        }


@dataclass
class ReplayResult:
    """Result of a replay operation.

    Attrs:
        replay_conversation_id: Fresh conversation the calls ran in.
        original_conversation_id: Source conversation.
        steps: One entry per logged tool call, in original order.
        created_at: When the replay ran.
    """

    original_conversation_id: str
    replay_conversation_id: str
    steps: list[ReplayStep] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def diverged(self) -> int:
        return sum(1 for s in self.steps if s.diverged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalConversationId": self.original_conversation_id,
            "replayConversationId": self.replay_conversation_id,
            "createdAt": self.created_at,
            "calls": len(self.steps),
            "replayed": sum(1 for s in self.steps if s.replayed),
            "diverged": self.diverged,
            "steps": [s.to_dict() for s in self.steps],
        }


class ReplayEngine:
    """Reads tool calls from the durable trace and dispatches them again.

    Read tools (listing, search) are replayed by default; tools that write
    are skipped unless ``include_mutations`` is set, because replaying them
    against live data creates duplicates.
    """

    def __init__(self, dispatcher, sink: DatabaseLogSink, *, page_size: int = 500) -> None:
        self._dispatcher = dispatcher
        self._sink = sink
        self._page_size = page_size

    async def _events(self, user_id: str, conversation_id: str) -> list[dict[str, Any]]:
        """Every stored event of the conversation, read page by page."""
        events: list[dict[str, Any]] = []
        while True:
            page = await self._sink.fetch(
                user_id=user_id,
                conversation_id=conversation_id,
                limit=self._page_size,
                offset=len(events),
            )
            events.extend(page)
            if len(page) < self._page_size:
                return events

    async def load_calls(self, user_id: str, conversation_id: str) -> list[ReplayStep]:
        await self._sink.flush()
        steps: list[ReplayStep] = []
        for event in await self._events(user_id, conversation_id):
            message = event["message"]
            context = event["context"]
            if message.startswith(TOOL_CALLED):
                steps.append(
                    ReplayStep(
                        tool_name=context.get("toolName") or message[len(TOOL_CALLED):],
                        parameters=context.get("input") or {},
                    )
                )
            elif message.startswith(TOOL_RESULT) and steps and steps[-1].original_success is None:
                steps[-1].original_success = bool(context.get("success"))
                error = context.get("error") or {}
                steps[-1].original_error_kind = error.get("kind")
        return steps

    async def replay(
        self,
        user_id: str,
        conversation_id: str,
        *,
        target_conversation_id: str | None = None,
        include_mutations: bool = False,
    ) -> ReplayResult:
        """Re-dispatch a conversation's logged calls into a new conversation.

        Raises:
            ReplayError: if the conversation has no logged tool calls.
        """
        steps = await self.load_calls(user_id, conversation_id)
        if not steps:
            raise ReplayError(
                f"No logged tool calls for conversation {conversation_id}",
                hint="Durable AI logging (PA_DB_LOGGING_ENABLED) must be on to replay.",
            )
        target = target_conversation_id or f"replay-{uuid.uuid4().hex[:12]}"
        result = ReplayResult(
            original_conversation_id=conversation_id,
            replay_conversation_id=target,
            steps=steps,
        )
        for step in steps:
            if not include_mutations and not self._is_read(step.tool_name):
                continue
            outcome = await self._dispatcher.dispatch(
                ToolCallRequest(
                    tool_name=step.tool_name,
                    parameters=step.parameters,
                    user_id=user_id,
                    conversation_id=target,
                )
            )
            step.replayed = True
            step.success = outcome.success
            step.error_kind = outcome.error.kind.value if outcome.error else None
            step.result = outcome.to_dict()
        logger.info(
            "Replayed %d/%d calls of %s into %s (%d diverged)",
            sum(1 for s in steps if s.replayed),
            len(steps),
            conversation_id,
            target,
            result.diverged,
        )
        return result

    def _is_read(self, tool_name: str) -> bool:
        try:
            return self._dispatcher.registry.lookup(tool_name).is_read
        except ToolNotRegisteredError:
            # Unknown tools replay so the validation failure shows up again
            return True
