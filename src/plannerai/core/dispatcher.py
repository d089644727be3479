"""Tool dispatcher: Validate -> Resolve -> Execute for every model tool call.

The dispatcher is the only boundary the model talks to.  Expected failures
(bad parameters, unknown or ambiguous references, repository faults and
timeouts) come back as ``ToolCallResult(success=False)`` with a structured
error; anything else is logged at ERROR and re-raised.

Calls for the same conversation are serialized with the context tracker's
turn lock.  Reads run under a timeout and are retried once on transient
transport errors; writes are never retried and run shielded, so a cancelled
caller cannot abandon a half-finished mutation without a trace.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, TypeVar

from pydantic.alias_generators import to_camel
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plannerai.core import tool_inputs as ti
from plannerai.core.ai_logger import AiLogger, DatabaseLogSink, LogSink, MemoryLogSink
from plannerai.core.context_tracker import ContextTracker
from plannerai.core.exceptions import (
    ErrorKind,
    ExecutionError,
    NotFoundError,
    PlannerError,
    UnauthorizedError,
)
from plannerai.core.query_engine import QueryEngine, QuerySpec, SearchSpec
from plannerai.core.repository import EntityRepository, ListFilters
from plannerai.core.resolver import EntityResolver, to_ref
from plannerai.core.statistics_engine import StatisticsEngine
from plannerai.core.tool_registry import ToolRegistry, ToolSpec, registry as default_registry
from plannerai.core.types import EntityKind, EntityRef, ToolCallRequest, ToolCallResult

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, ConnectionError)
REPOSITORY_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

EMPTY_SEARCH_HINT = (
    "No items contain that text. If the user wants a list rather than a "
    "keyword match, call query_entities instead."
)


def _ref_key(kind: EntityKind, identifier: str) -> tuple[EntityKind, str]:
    return kind, " ".join(identifier.lower().split())


@dataclass
class _Call:
    """Everything the execute stage needs for one validated call."""

    request: ToolCallRequest
    spec: ToolSpec
    params: Any
    log: AiLogger
    refs: dict[tuple[EntityKind, str], EntityRef] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def conversation_id(self) -> str:
        return self.request.conversation_id

    def ref(self, kind: EntityKind, identifier: str | None) -> EntityRef | None:
        if identifier is None:
            return None
        return self.refs[_ref_key(kind, identifier)]

    def ref_id(self, kind: EntityKind, identifier: str | None) -> str | None:
        ref = self.ref(kind, identifier)
        return ref.id if ref else None


class ToolDispatcher:
    """Executes tool calls on behalf of one process; safe to share across conversations."""

    def __init__(
        self,
        repository: EntityRepository,
        *,
        tracker: ContextTracker | None = None,
        ai_logger: AiLogger | None = None,
        registry: ToolRegistry = default_registry,
        default_limit: int = 10,
        max_limit: int = 50,
        max_candidates: int = 5,
        timeout_seconds: float = 10.0,
        retry_backoff_seconds: float = 0.2,
        trash_retention_days: int = 30,
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.tracker = tracker or ContextTracker()
        self.ai_logger = ai_logger or AiLogger()
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.trash_retention_days = trash_retention_days
        self.resolver = EntityResolver(
            repository, self.tracker, self.ai_logger, max_candidates=max_candidates
        )
        self.queries = QueryEngine(
            repository, self.ai_logger, default_limit=default_limit, max_limit=max_limit
        )
        self.statistics = StatisticsEngine(repository, self.ai_logger, tz=tz, clock=clock)

        self._handlers: dict[str, Callable[[_Call], Awaitable[ToolCallResult]]] = {
            "create_task": self._create_task,
            "create_event": self._create_event,
            "create_note": self._create_note,
            "create_project": self._create_project,
            "query_entities": self._query_entities,
            "search_entities": self._search_entities,
            "update_task": partial(self._update_one, EntityKind.TASK, "task_identifier"),
            "update_event": partial(self._update_one, EntityKind.EVENT, "event_identifier"),
            "update_note": partial(self._update_one, EntityKind.NOTE, "note_identifier"),
            "update_project": partial(self._update_one, EntityKind.PROJECT, "project_identifier"),
            "bulk_update_tasks": self._bulk_update_tasks,
            "delete_entity": self._delete_entity,
            "restore_entity": self._restore_entity,
            "get_statistics": self._get_statistics,
        }
        unhandled = set(registry.names()) - set(self._handlers)
        if unhandled:
            raise RuntimeError(f"Registered tools without a handler: {sorted(unhandled)}")

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings,
        *,
        extra_sinks: list[LogSink] | None = None,
        tracker: ContextTracker | None = None,
    ) -> ToolDispatcher:
        """Build a dispatcher, its repository and trace sinks from ``Settings``."""
        sinks: list[LogSink] = [MemoryLogSink(settings.log_buffer_size)]
        if settings.db_logging_enabled:
            sinks.append(DatabaseLogSink(session_factory))
        sinks.extend(extra_sinks or [])
        ai_logger = AiLogger(
            enabled=settings.ai_logging_enabled,
            verbose=settings.verbose_logging,
            sinks=sinks,
        )
        return cls(
            EntityRepository(session_factory),
            tracker=tracker,
            ai_logger=ai_logger,
            default_limit=settings.default_limit,
            max_limit=settings.max_limit,
            max_candidates=settings.max_candidates,
            timeout_seconds=settings.repository_timeout_seconds,
            retry_backoff_seconds=settings.read_retry_backoff_seconds,
            trash_retention_days=settings.trash_retention_days,
            tz=settings.timezone,
        )

    def sink(self, sink_type: type[T]) -> T | None:
        for sink in self.ai_logger.sinks:
            if isinstance(sink, sink_type):
                return sink
        return None

    # ── entry points ─────────────────────────────────────────────

    async def dispatch(self, request: ToolCallRequest) -> ToolCallResult:
        """Run one tool call and return its structured result."""
        log = self.ai_logger.bind(
            userId=request.user_id or None,
            conversationId=request.conversation_id or None,
            toolName=request.tool_name,
        )
        log.log_tool_call(request.tool_name, request.parameters)
        started = time.perf_counter()
        try:
            if not request.user_id.strip():
                raise UnauthorizedError("No authenticated user for this request")
            async with self.tracker.turn_lock(request.user_id, request.conversation_id):
                result = await self._run(request, log)
        except PlannerError as e:
            result = self._failure(e)
        except REPOSITORY_ERRORS as e:
            log.warning(
                "Repository failure",
                {"exceptionType": type(e).__name__, "detail": str(e)[:500]},
            )
            timed_out = isinstance(e, asyncio.TimeoutError)
            result = self._failure(
                ExecutionError(
                    "The data store timed out" if timed_out else "The data store could not complete the request",
                    hint="This may be temporary; retry once before telling the user it failed.",
                )
            )
        except asyncio.CancelledError:
            log.warning(
                f"Tool call cancelled: {request.tool_name}",
                {"elapsedMs": round((time.perf_counter() - started) * 1000, 3)},
            )
            raise
        except Exception as e:
            log.log(
                "ERROR",
                f"Unexpected failure in {request.tool_name}",
                {
                    "exceptionType": type(e).__name__,
                    "detail": str(e),
                    "traceback": traceback.format_exc(),
                },
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )
            raise
        log.log_tool_result(request.tool_name, (time.perf_counter() - started) * 1000, result)
        return result

    async def dispatch_turn(self, requests: list[ToolCallRequest]) -> list[ToolCallResult]:
        """Run one model turn's calls in order; later calls see earlier mentions."""
        results = []
        for request in requests:
            results.append(await self.dispatch(request))
        return results

    @staticmethod
    def _failure(error: PlannerError) -> ToolCallResult:
        return ToolCallResult.fail(
            error.kind,
            error.message,
            candidates=getattr(error, "candidates", None),
            hint=error.hint,
        )

    # ── stages ───────────────────────────────────────────────────

    async def _run(self, request: ToolCallRequest, log: AiLogger) -> ToolCallResult:
        spec = self.registry.lookup(request.tool_name)
        params = spec.validate(request.parameters)
        if log.verbose:
            log.debug(
                "Validated input",
                {"validated": params.model_dump(mode="json", by_alias=True)},
            )
        call = _Call(request=request, spec=spec, params=params, log=log)
        await self._resolve_references(call)
        return await self._handlers[spec.name](call)

    async def _resolve_references(self, call: _Call) -> None:
        """Resolve every identifier the call carries before anything executes."""
        for kind, identifier in call.params.references():
            key = _ref_key(kind, identifier)
            if key in call.refs:
                continue
            call.refs[key] = await self._read(
                call.log,
                f"resolve {kind.value}",
                partial(
                    self.resolver.require,
                    identifier,
                    kind,
                    call.user_id,
                    call.conversation_id,
                    ai_log=call.log,
                ),
            )

    async def _read(self, log: AiLogger, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(fn(), self.timeout_seconds)
        except TRANSIENT_ERRORS as e:
            log.warning(
                f"Transient error during {operation}; retrying once",
                {"exceptionType": type(e).__name__, "backoffSeconds": self.retry_backoff_seconds},
            )
        await asyncio.sleep(self.retry_backoff_seconds)
        return await asyncio.wait_for(fn(), self.timeout_seconds)

    async def _write(self, log: AiLogger, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(asyncio.wait_for(fn(), self.timeout_seconds))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                log.warning(f"Caller cancelled during {operation}; letting the write finish")
                task.add_done_callback(partial(_log_detached_write, log, operation))
            raise

    # ── create ───────────────────────────────────────────────────

    async def _create_batch(
        self, call: _Call, kind: EntityKind, items: list[tuple[str, dict, list[str]]]
    ) -> ToolCallResult:
        store = self.repository.store(kind)
        outcomes: list[dict[str, Any]] = []
        created: list[dict] = []
        for title, values, tags in items:
            try:
                record = await self._write(
                    call.log, f"create {kind.value}", partial(store.create, call.user_id, values, tags)
                )
            except (*REPOSITORY_ERRORS, PlannerError) as e:
                call.log.warning(
                    f"Failed to create {kind.value}",
                    {"title": title, "exceptionType": type(e).__name__},
                )
                outcomes.append({"title": title, "success": False, "error": _item_error(e)})
                continue
            created.append(record)
            outcomes.append({"title": record["title"], "success": True, "id": record["id"]})
        if created:
            self.tracker.record_mention(call.user_id, call.conversation_id, to_ref(kind, created[-1]))
        return _batch_result(f"{kind.value}s created", outcomes, {"created": created})

    async def _create_task(self, call: _Call) -> ToolCallResult:
        items = []
        for task in call.params.tasks:
            values = task.model_dump(exclude={"project_name", "tags"})
            values["project_id"] = call.ref_id(EntityKind.PROJECT, task.project_name)
            items.append((task.title, values, task.tags))
        return await self._create_batch(call, EntityKind.TASK, items)

    async def _create_event(self, call: _Call) -> ToolCallResult:
        items = []
        for event in call.params.events:
            values = event.model_dump(exclude={"project_name", "tags"})
            values["project_id"] = call.ref_id(EntityKind.PROJECT, event.project_name)
            items.append((event.title, values, event.tags))
        return await self._create_batch(call, EntityKind.EVENT, items)

    async def _create_note(self, call: _Call) -> ToolCallResult:
        p = call.params
        values = p.model_dump(exclude={"project_name", "tags"})
        values["project_id"] = call.ref_id(EntityKind.PROJECT, p.project_name)
        return await self._create_batch(call, EntityKind.NOTE, [(p.title or "", values, p.tags)])

    async def _create_project(self, call: _Call) -> ToolCallResult:
        p = call.params
        values = p.model_dump(exclude={"tags"})
        return await self._create_batch(call, EntityKind.PROJECT, [(p.name, values, p.tags)])

    # ── listing / search ─────────────────────────────────────────

    def _list_filters(self, call: _Call, filters: ti.EntityFilters | None) -> ListFilters:
        if filters is None:
            return ListFilters()
        date_range = filters.date_range
        return ListFilters(
            status=filters.status,
            priority=filters.priority,
            note_type=filters.note_type,
            project_id=call.ref_id(EntityKind.PROJECT, filters.project_name),
            tags=tuple(filters.tags or ()),
            date_start=date_range.start if date_range else None,
            date_end=date_range.end if date_range else None,
        )

    async def _query_entities(self, call: _Call) -> ToolCallResult:
        p: ti.QueryEntitiesInput = call.params
        spec = QuerySpec(
            entity_kinds=tuple(p.entity_types),
            filters=self._list_filters(call, p.filters),
            sort_by=p.sort_by,
            sort_order=p.sort_order,
            limit=p.limit,
        )
        grouped = await self._read(
            call.log,
            "list entities",
            partial(self.queries.list_entities, call.user_id, spec, ai_log=call.log),
        )
        return ToolCallResult.ok(grouped.to_dict())

    async def _search_entities(self, call: _Call) -> ToolCallResult:
        p: ti.SearchEntitiesInput = call.params
        spec = SearchSpec(
            query_text=p.query,
            entity_kinds=tuple(p.entity_types or EntityKind),
            filters=self._list_filters(call, p.filters),
            limit=p.limit,
        )
        grouped = await self._read(
            call.log,
            "search entities",
            partial(self.queries.search_entities, call.user_id, spec, ai_log=call.log),
        )
        data = grouped.to_dict()
        if grouped.total == 0:
            data["hint"] = EMPTY_SEARCH_HINT
        return ToolCallResult.ok(data)

    # ── update ───────────────────────────────────────────────────

    async def _update_one(self, kind: EntityKind, identifier_field: str, call: _Call) -> ToolCallResult:
        ref = call.ref(kind, getattr(call.params, identifier_field))
        changes = call.params.updates.as_changes()
        record = await self._write(
            call.log,
            f"update {kind.value}",
            partial(self.repository.store(kind).update, call.user_id, ref.id, changes),
        )
        if record is None:
            raise NotFoundError(f"The {kind.value} '{ref.display_name}' no longer exists")
        self.tracker.record_mention(call.user_id, call.conversation_id, to_ref(kind, record))
        changed = sorted(to_camel(name) for name in call.params.updates.model_fields_set)
        return ToolCallResult.ok({"updated": record, "changedFields": changed})

    async def _bulk_update_tasks(self, call: _Call) -> ToolCallResult:
        p: ti.BulkUpdateTasksInput = call.params
        store = self.repository.tasks
        changes = p.updates.as_changes()
        refs: dict[str, EntityRef] = {}
        for ident in p.task_identifiers:
            ref = call.ref(EntityKind.TASK, ident)
            refs.setdefault(ref.id, ref)
        outcomes: list[dict[str, Any]] = []
        updated: list[dict] = []
        for ref in refs.values():
            try:
                record = await self._write(
                    call.log, "bulk update task", partial(store.update, call.user_id, ref.id, dict(changes))
                )
            except (*REPOSITORY_ERRORS, PlannerError) as e:
                call.log.warning(
                    "Bulk item failed",
                    {"entityId": ref.id, "exceptionType": type(e).__name__},
                )
                outcomes.append({"id": ref.id, "title": ref.display_name, "success": False, "error": _item_error(e)})
                continue
            if record is None:
                outcomes.append({
                    "id": ref.id,
                    "title": ref.display_name,
                    "success": False,
                    "error": {"kind": ErrorKind.NOT_FOUND.value, "message": "Task no longer exists"},
                })
                continue
            updated.append(record)
            outcomes.append({"id": ref.id, "title": record["title"], "success": True})
        if updated:
            self.tracker.record_mention(call.user_id, call.conversation_id, to_ref(EntityKind.TASK, updated[-1]))
        return _batch_result("tasks updated", outcomes, {"updated": updated})

    # ── delete / restore ─────────────────────────────────────────

    async def _delete_entity(self, call: _Call) -> ToolCallResult:
        p: ti.DeleteEntityInput = call.params
        kind = p.entity_type
        store = self.repository.store(kind)
        if p.permanent:
            ref = await self._resolve_for_purge(call, kind, p.entity_identifier)
            done = await self._write(
                call.log, f"hard delete {kind.value}", partial(store.hard_delete, call.user_id, ref.id)
            )
        else:
            ref = call.ref(kind, p.entity_identifier)
            done = await self._write(
                call.log, f"soft delete {kind.value}", partial(store.soft_delete, call.user_id, ref.id)
            )
        if not done:
            raise NotFoundError(f"The {kind.value} '{ref.display_name}' no longer exists")
        if p.permanent:
            self.tracker.forget_entity(call.user_id, call.conversation_id, kind, ref.id)
        else:
            self.tracker.record_deletion(call.user_id, call.conversation_id, ref)
        data: dict[str, Any] = {
            "deleted": ref.to_dict(),
            "permanent": p.permanent,
            "reversible": not p.permanent,
            "confirmed": p.confirmed,
            "requiresConfirmation": call.spec.requires_confirmation,
        }
        if not p.permanent:
            data["retentionDays"] = self.trash_retention_days
        return ToolCallResult.ok(data)

    async def _resolve_for_purge(self, call: _Call, kind: EntityKind, identifier: str) -> EntityRef:
        """Live records first; an item already in the trash can still be purged."""
        try:
            return await self._read(
                call.log,
                f"resolve {kind.value}",
                partial(self.resolver.require, identifier, kind, call.user_id, call.conversation_id, ai_log=call.log),
            )
        except NotFoundError:
            return await self._read(
                call.log,
                f"resolve trashed {kind.value}",
                partial(
                    self.resolver.require,
                    identifier,
                    kind,
                    call.user_id,
                    call.conversation_id,
                    trashed=True,
                    ai_log=call.log,
                ),
            )

    async def _restore_entity(self, call: _Call) -> ToolCallResult:
        p: ti.RestoreEntityInput = call.params
        kind = p.entity_type
        ref = await self._read(
            call.log,
            f"resolve trashed {kind.value}",
            partial(
                self.resolver.require,
                p.entity_identifier,
                kind,
                call.user_id,
                call.conversation_id,
                trashed=True,
                ai_log=call.log,
            ),
        )
        store = self.repository.store(kind)
        restored = await self._write(
            call.log, f"restore {kind.value}", partial(store.restore, call.user_id, ref.id)
        )
        if not restored:
            raise NotFoundError(f"The {kind.value} '{ref.display_name}' is no longer in the trash")
        self.tracker.record_mention(call.user_id, call.conversation_id, ref)
        return ToolCallResult.ok({"restored": ref.to_dict()})

    # ── statistics ───────────────────────────────────────────────

    async def _get_statistics(self, call: _Call) -> ToolCallResult:
        p: ti.GetStatisticsInput = call.params
        project_id = call.ref_id(EntityKind.PROJECT, p.project_name)
        stats = await self._read(
            call.log,
            f"statistics {p.metric}",
            partial(self.statistics.compute, call.user_id, p.metric, project_id=project_id, ai_log=call.log),
        )
        return ToolCallResult.ok(stats)


def _item_error(error: BaseException) -> dict[str, str]:
    if isinstance(error, PlannerError):
        return {"kind": error.kind.value, "message": error.message}
    return {"kind": ErrorKind.EXECUTION_ERROR.value, "message": "The data store could not complete this item"}


def _batch_result(label: str, outcomes: list[dict[str, Any]], data: dict[str, Any]) -> ToolCallResult:
    succeeded = sum(1 for o in outcomes if o["success"])
    payload = {
        **data,
        "outcomes": outcomes,
        "succeeded": succeeded,
        "failed": len(outcomes) - succeeded,
    }
    if succeeded:
        return ToolCallResult.ok(payload)
    return ToolCallResult.fail(
        ErrorKind.EXECUTION_ERROR,
        f"No {label}: every item failed",
        data=payload,
    )


def _log_detached_write(log: AiLogger, operation: str, task: asyncio.Future) -> None:
    if task.cancelled():
        log.error(f"{operation} was cancelled before completing")
        return
    error = task.exception()
    if error is not None:
        log.error(
            f"{operation} failed after the caller was cancelled",
            {"exceptionType": type(error).__name__},
        )
    else:
        log.info(f"{operation} completed after the caller was cancelled")
