"""Structured, leveled trace of tool dispatch.

Every event goes to the ``plannerai.ai`` stdlib logger (the console sink)
and to any extra sinks attached: a bounded in-memory buffer for the log
viewer and tests, and an optional database sink.  A failing sink never
affects the caller; failures are counted on ``AiLogger.failed_writes``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plannerai.db.models import AiLog

logger = logging.getLogger(__name__)

console_logger = logging.getLogger("plannerai.ai")


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @property
    def stdlib_level(self) -> int:
        return getattr(logging, self.value)


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


@dataclass(frozen=True)
class LogEvent:
    """One trace event; the context is a read-only JSON-safe copy."""

    timestamp: datetime
    level: LogLevel
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)
    execution_time_ms: float | None = None

    @property
    def tool_name(self) -> str | None:
        return self.context.get("toolName")

    @property
    def conversation_id(self) -> str | None:
        return self.context.get("conversationId")

    @property
    def user_id(self) -> str | None:
        return self.context.get("userId")

    def to_dict(self) -> dict[str, Any]:
        entry = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.execution_time_ms is not None:
            entry["executionTimeMs"] = self.execution_time_ms
        return entry


class LogSink(Protocol):
    def emit(self, event: LogEvent) -> None: ...


class MemoryLogSink:
    """Bounded buffer of recent events, queryable by tool/conversation/level."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._events: deque[LogEvent] = deque(maxlen=maxlen)

    def emit(self, event: LogEvent) -> None:
        self._events.append(event)

    def events(self) -> list[LogEvent]:
        return list(self._events)

    def query(
        self,
        *,
        tool_name: str | None = None,
        conversation_id: str | None = None,
        user_id: str | None = None,
        level: LogLevel | str | None = None,
        limit: int = 100,
    ) -> list[LogEvent]:
        """Most recent matching events, newest last."""
        wanted_level = LogLevel(level) if level else None
        matched = [
            e
            for e in self._events
            if (tool_name is None or e.tool_name == tool_name)
            and (conversation_id is None or e.conversation_id == conversation_id)
            and (user_id is None or e.user_id == user_id)
            and (wanted_level is None or e.level is wanted_level)
        ]
        return matched[-limit:] if limit else matched

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class DatabaseLogSink:
    """Durable sink writing ``ai_logs`` rows from background tasks.

    ``emit`` never waits on the database; ``flush`` awaits pending writes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()
        self.written = 0
        self.failed_writes = 0

    def emit(self, event: LogEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.failed_writes += 1
            return
        task = loop.create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, event: LogEvent) -> None:
        try:
            async with self._session_factory.begin() as session:
                session.add(
                    AiLog(
                        user_id=event.user_id,
                        conversation_id=event.conversation_id,
                        tool_name=event.tool_name,
                        level=event.level.value,
                        message=event.message,
                        context=dict(event.context),
                        execution_time_ms=event.execution_time_ms,
                        created_at=event.timestamp.replace(tzinfo=None),
                    )
                )
            self.written += 1
        except Exception:  # Intentional catch-all: the trace must never break dispatch
            self.failed_writes += 1
            logger.warning("Failed to write AI log to database", exc_info=True)

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def fetch(
        self,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        tool_name: str | None = None,
        level: str | None = None,
        message_prefix: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Read stored events back in chronological order."""
        stmt = select(AiLog)
        if user_id:
            stmt = stmt.where(AiLog.user_id == user_id)
        if conversation_id:
            stmt = stmt.where(AiLog.conversation_id == conversation_id)
        if tool_name:
            stmt = stmt.where(AiLog.tool_name == tool_name)
        if level:
            stmt = stmt.where(AiLog.level == level.upper())
        if message_prefix:
            stmt = stmt.where(AiLog.message.startswith(message_prefix, autoescape=True))
        stmt = stmt.order_by(AiLog.created_at, AiLog.id).offset(offset).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": r.id,
                "timestamp": r.created_at.isoformat() if r.created_at else None,
                "level": r.level,
                "message": r.message,
                "toolName": r.tool_name,
                "conversationId": r.conversation_id,
                "userId": r.user_id,
                "context": r.context or {},
                "executionTimeMs": r.execution_time_ms,
            }
            for r in rows
        ]


class _Counters:
    def __init__(self) -> None:
        self.failed_writes = 0


TOOL_CALLED = "Tool called: "
TOOL_RESULT = "Tool result: "


class AiLogger:
    """Leveled trace logger with bound context.

    ``bind`` returns a logger sharing the same sinks whose events carry
    the extra context (user, conversation, tool) automatically.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        verbose: bool = False,
        sinks: list[LogSink] | None = None,
        context: Mapping[str, Any] | None = None,
        _counters: _Counters | None = None,
    ) -> None:
        self.enabled = enabled
        self.verbose = verbose
        self.sinks: list[LogSink] = sinks if sinks is not None else []
        self._context = dict(context or {})
        self._counters = _counters or _Counters()

    @property
    def failed_writes(self) -> int:
        return self._counters.failed_writes

    def bind(self, **context: Any) -> AiLogger:
        merged = {**self._context, **{k: v for k, v in context.items() if v is not None}}
        return AiLogger(
            enabled=self.enabled,
            verbose=self.verbose,
            sinks=self.sinks,
            context=merged,
            _counters=self._counters,
        )

    def log(
        self,
        level: LogLevel | str,
        message: str,
        context: Mapping[str, Any] | None = None,
        execution_time_ms: float | None = None,
    ) -> LogEvent | None:
        if not self.enabled:
            return None
        level = LogLevel(level)
        merged = {**self._context, **(context or {})}
        event = LogEvent(
            timestamp=datetime.now(timezone.utc),
            level=level,
            message=message,
            context=MappingProxyType(_jsonable(merged)),
            execution_time_ms=(
                round(execution_time_ms, 3) if execution_time_ms is not None else None
            ),
        )
        console_logger.log(
            level.stdlib_level,
            message,
            extra={
                "ai_context": dict(event.context),
                "execution_time_ms": event.execution_time_ms,
            },
        )
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception:  # Intentional catch-all: sinks must not fail dispatch
                self._counters.failed_writes += 1
                logger.warning("AI log sink %r failed", sink, exc_info=True)
        return event

    def debug(self, message: str, context: Mapping[str, Any] | None = None) -> LogEvent | None:
        return self.log(LogLevel.DEBUG, message, context)

    def info(self, message: str, context: Mapping[str, Any] | None = None) -> LogEvent | None:
        return self.log(LogLevel.INFO, message, context)

    def warning(self, message: str, context: Mapping[str, Any] | None = None) -> LogEvent | None:
        return self.log(LogLevel.WARNING, message, context)

    def error(self, message: str, context: Mapping[str, Any] | None = None) -> LogEvent | None:
        return self.log(LogLevel.ERROR, message, context)

    # ── helpers ──────────────────────────────────────────────────

    def log_tool_call(self, tool_name: str, parameters: Any) -> LogEvent | None:
        """INFO at call start; the raw input is kept so the call can be replayed."""
        return self.info(
            f"{TOOL_CALLED}{tool_name}",
            {"toolName": tool_name, "input": parameters},
        )

    def log_tool_result(
        self,
        tool_name: str,
        duration_ms: float,
        result: Any,
        context: Mapping[str, Any] | None = None,
    ) -> LogEvent | None:
        """INFO on success, ERROR on failure, always with the elapsed time."""
        payload = result.to_dict() if hasattr(result, "to_dict") else result
        success = bool(payload.get("success")) if isinstance(payload, dict) else False
        ctx: dict[str, Any] = {"toolName": tool_name, "success": success}
        if isinstance(payload, dict) and payload.get("error"):
            ctx["error"] = payload["error"]
        if self.verbose:
            ctx["result"] = payload
        ctx.update(context or {})
        return self.log(
            LogLevel.INFO if success else LogLevel.ERROR,
            f"{TOOL_RESULT}{tool_name} ({duration_ms:.1f}ms)",
            ctx,
            execution_time_ms=duration_ms,
        )

    def log_query(
        self,
        kind: str,
        conditions: Mapping[str, Any],
        result_count: int,
        operation: str = "select",
    ) -> LogEvent | None:
        return self.debug(
            f"Database query: {operation} on {kind}",
            {
                "operation": operation,
                "table": kind,
                "conditions": dict(conditions),
                "resultCount": result_count,
            },
        )

    def log_search(
        self, query: str, kinds: list[str], counts: Mapping[str, int]
    ) -> LogEvent | None:
        return self.debug(
            f'Search executed: "{query}"',
            {
                "query": query,
                "entityTypes": kinds,
                "resultCounts": dict(counts),
                "totalResults": sum(counts.values()),
            },
        )
