"""Entity repository: owner-scoped persistence for tasks, events, notes, projects.

Each store opens a short-lived session per operation from the shared
``async_sessionmaker``, so per-kind reads can run concurrently.  Every query
is filtered on ``user_id``; soft-deleted rows are only visible when the
``trashed`` scope is requested explicitly.

Records leave the repository as plain camelCase dicts.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from pydantic.alias_generators import to_camel
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plannerai.core.exceptions import ToolValidationError
from plannerai.core.tool_inputs import PROJECT_STATUSES, TASK_STATUSES
from plannerai.core.types import EntityKind
from plannerai.db.models import EntityTag, Event, Note, Project, Task, _utcnow

logger = logging.getLogger(__name__)

PROJECT_COLORS = (
    "#3b82f6", "#ef4444", "#10b981", "#f59e0b",
    "#8b5cf6", "#ec4899", "#06b6d4", "#84cc16",
)
UNTITLED_NOTE = "Untitled Note"


@dataclass(frozen=True)
class ListFilters:
    """Repository-level filter set.

    Filters that do not apply to a kind are ignored for that kind.
    ``date_start``/``date_end`` bound the kind's primary date column
    (task due date, event start, note last update, project start).
    """

    status: str | None = None
    priority: str | None = None
    note_type: str | None = None
    project_id: str | None = None
    tags: tuple[str, ...] = ()
    date_start: datetime | None = None
    date_end: datetime | None = None
    completed_from: datetime | None = None
    completed_to: datetime | None = None
    exclude_statuses: tuple[str, ...] = ()


class EntityStore(Protocol):
    kind: EntityKind

    async def find_by_id(self, user_id: str, entity_id: str, *, trashed: bool = False) -> dict | None: ...
    async def find_by_title(self, user_id: str, title: str, *, trashed: bool = False) -> list[dict]: ...
    async def find_by_title_substring(self, user_id: str, text: str, *, limit: int, trashed: bool = False) -> list[dict]: ...
    async def list_filtered(self, user_id: str, filters: ListFilters, sort_by: str, sort_order: str, limit: int) -> list[dict]: ...
    async def search_text(self, user_id: str, text: str, filters: ListFilters, limit: int) -> list[dict]: ...
    async def create(self, user_id: str, values: dict[str, Any], tags: list[str] | None = None) -> dict: ...
    async def update(self, user_id: str, entity_id: str, changes: dict[str, Any]) -> dict | None: ...
    async def soft_delete(self, user_id: str, entity_id: str) -> bool: ...
    async def restore(self, user_id: str, entity_id: str) -> bool: ...
    async def hard_delete(self, user_id: str, entity_id: str) -> bool: ...
    async def count(self, user_id: str, filters: ListFilters) -> int: ...
    async def count_grouped(self, user_id: str, column: str, filters: ListFilters) -> dict[str, int]: ...


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class _SqlStore:
    """Shared SQLAlchemy implementation; subclasses bind a model."""

    kind: EntityKind
    model: Any
    statuses: frozenset[str] = frozenset()

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── columns ──────────────────────────────────────────────────

    @property
    def title_column(self):
        return self.model.title

    @property
    def date_column(self):
        raise NotImplementedError

    def text_columns(self) -> list:
        return [self.title_column, self.model.description]

    def sort_column(self, sort_by: str):
        columns = {
            "createdAt": self.model.created_at,
            "updatedAt": self.model.updated_at,
            "title": self.title_column,
        }
        columns.update(self._extra_sort_columns())
        # Sort fields a kind lacks fall back to last update
        return columns.get(sort_by, self.model.updated_at)

    def _extra_sort_columns(self) -> dict:
        return {}

    # ── statement helpers ────────────────────────────────────────

    def _owned(self, stmt, user_id: str, *, trashed: bool = False):
        stmt = stmt.where(self.model.user_id == user_id)
        if trashed:
            return stmt.where(self.model.deleted_at.is_not(None))
        return stmt.where(self.model.deleted_at.is_(None))

    def _apply_filters(self, stmt, user_id: str, filters: ListFilters):
        if filters.status and self.statuses and filters.status in self.statuses:
            stmt = stmt.where(self.model.status == filters.status)
        if filters.exclude_statuses and self.statuses:
            stmt = stmt.where(self.model.status.not_in(filters.exclude_statuses))
        if filters.project_id and hasattr(self.model, "project_id"):
            stmt = stmt.where(self.model.project_id == filters.project_id)
        if filters.project_id and self.kind is EntityKind.PROJECT:
            stmt = stmt.where(self.model.id == filters.project_id)
        if filters.date_start is not None:
            stmt = stmt.where(self.date_column >= filters.date_start)
        if filters.date_end is not None:
            stmt = stmt.where(self.date_column <= filters.date_end)
        if filters.tags:
            lowered = [t.lower() for t in filters.tags]
            tagged = select(EntityTag.entity_id).where(
                EntityTag.user_id == user_id,
                EntityTag.entity_kind == self.kind.value,
                func.lower(EntityTag.tag).in_(lowered),
            )
            stmt = stmt.where(self.model.id.in_(tagged))
        return self._apply_kind_filters(stmt, filters)

    def _apply_kind_filters(self, stmt, filters: ListFilters):
        return stmt

    def _order(self, stmt, sort_by: str, sort_order: str):
        col = self.sort_column(sort_by)
        direction = col.asc() if sort_order == "asc" else col.desc()
        # Nulls last regardless of dialect, id as the final tie-breaker
        return stmt.order_by(case((col.is_(None), 1), else_=0), direction, self.model.id.asc())

    # ── serialization ────────────────────────────────────────────

    def _to_dict(self, row: Any, tags: list[str]) -> dict[str, Any]:
        data: dict[str, Any] = {"id": row.id, "kind": self.kind.value}
        for column in self.model.__table__.columns:
            if column.key in ("id", "user_id"):
                continue
            data[to_camel(column.key)] = _serialize(getattr(row, column.key))
        data["title"] = self.display_title(row)
        data["tags"] = tags
        return data

    def display_title(self, row: Any) -> str:
        return row.title

    async def _tags_for(self, session: AsyncSession, user_id: str, ids: list[str]) -> dict[str, list[str]]:
        if not ids:
            return {}
        result = await session.execute(
            select(EntityTag.entity_id, EntityTag.tag)
            .where(
                EntityTag.user_id == user_id,
                EntityTag.entity_kind == self.kind.value,
                EntityTag.entity_id.in_(ids),
            )
            .order_by(EntityTag.id)
        )
        tags: dict[str, list[str]] = {}
        for entity_id, tag in result.all():
            tags.setdefault(entity_id, []).append(tag)
        return tags

    async def _fetch(self, stmt, user_id: str) -> list[dict]:
        async with self._session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())
            tags = await self._tags_for(session, user_id, [r.id for r in rows])
        return [self._to_dict(r, tags.get(r.id, [])) for r in rows]

    # ── reads ────────────────────────────────────────────────────

    async def find_by_id(self, user_id: str, entity_id: str, *, trashed: bool = False) -> dict | None:
        stmt = self._owned(select(self.model), user_id, trashed=trashed).where(
            self.model.id == entity_id
        )
        rows = await self._fetch(stmt, user_id)
        return rows[0] if rows else None

    async def find_by_title(self, user_id: str, title: str, *, trashed: bool = False) -> list[dict]:
        """Exact, case-insensitive title match."""
        stmt = self._owned(select(self.model), user_id, trashed=trashed).where(
            func.lower(self.title_column) == title.strip().lower()
        )
        return await self._fetch(self._order(stmt, "updatedAt", "desc"), user_id)

    async def find_by_title_substring(
        self, user_id: str, text: str, *, limit: int, trashed: bool = False
    ) -> list[dict]:
        pattern = f"%{escape_like(text.strip())}%"
        stmt = self._owned(select(self.model), user_id, trashed=trashed).where(
            self.title_column.ilike(pattern, escape="\\")
        )
        stmt = self._order(stmt, "updatedAt", "desc").limit(limit)
        return await self._fetch(stmt, user_id)

    async def list_filtered(
        self,
        user_id: str,
        filters: ListFilters,
        sort_by: str = "updatedAt",
        sort_order: str = "desc",
        limit: int = 10,
    ) -> list[dict]:
        stmt = self._apply_filters(self._owned(select(self.model), user_id), user_id, filters)
        stmt = self._order(stmt, sort_by, sort_order).limit(limit)
        return await self._fetch(stmt, user_id)

    async def search_text(
        self, user_id: str, text: str, filters: ListFilters, limit: int = 10
    ) -> list[dict]:
        pattern = f"%{escape_like(text.strip())}%"
        stmt = self._apply_filters(self._owned(select(self.model), user_id), user_id, filters)
        stmt = stmt.where(or_(*(c.ilike(pattern, escape="\\") for c in self.text_columns())))
        stmt = self._order(stmt, "updatedAt", "desc").limit(limit)
        return await self._fetch(stmt, user_id)

    async def count(self, user_id: str, filters: ListFilters) -> int:
        stmt = self._apply_filters(
            self._owned(select(func.count()).select_from(self.model), user_id),
            user_id,
            filters,
        )
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def count_grouped(self, user_id: str, column: str, filters: ListFilters) -> dict[str, int]:
        col = getattr(self.model, column)
        stmt = self._apply_filters(
            self._owned(select(col, func.count()).select_from(self.model), user_id),
            user_id,
            filters,
        ).group_by(col)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {str(key): int(n) for key, n in rows}

    # ── writes ───────────────────────────────────────────────────

    def _prepare_create(self, values: dict[str, Any]) -> dict[str, Any]:
        return values

    def _apply_changes(self, row: Any, changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            setattr(row, key, value)

    async def create(
        self, user_id: str, values: dict[str, Any], tags: list[str] | None = None
    ) -> dict:
        row = self.model(user_id=user_id, **self._prepare_create(dict(values)))
        unique_tags = _dedupe_tags(tags or [])
        async with self._session_factory.begin() as session:
            session.add(row)
            await session.flush()
            for tag in unique_tags:
                session.add(
                    EntityTag(
                        user_id=user_id,
                        entity_kind=self.kind.value,
                        entity_id=row.id,
                        tag=tag,
                    )
                )
            record = self._to_dict(row, unique_tags)
        logger.debug("Created %s %s for user %s", self.kind.value, record["id"], user_id)
        return record

    async def _get_row(self, session: AsyncSession, user_id: str, entity_id: str, *, trashed: bool = False):
        stmt = self._owned(select(self.model), user_id, trashed=trashed).where(
            self.model.id == entity_id
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def update(self, user_id: str, entity_id: str, changes: dict[str, Any]) -> dict | None:
        async with self._session_factory.begin() as session:
            row = await self._get_row(session, user_id, entity_id)
            if row is None:
                return None
            self._apply_changes(row, dict(changes))
            row.updated_at = _utcnow()
            await session.flush()
            tags = await self._tags_for(session, user_id, [row.id])
            record = self._to_dict(row, tags.get(row.id, []))
        return record

    async def soft_delete(self, user_id: str, entity_id: str) -> bool:
        stmt = self._owned(update(self.model), user_id).where(self.model.id == entity_id)
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt.values(deleted_at=_utcnow()))
        return result.rowcount > 0

    async def restore(self, user_id: str, entity_id: str) -> bool:
        stmt = self._owned(update(self.model), user_id, trashed=True).where(
            self.model.id == entity_id
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(
                stmt.values(deleted_at=None, updated_at=_utcnow())
            )
        return result.rowcount > 0

    async def hard_delete(self, user_id: str, entity_id: str) -> bool:
        """Irreversibly remove a record (live or trashed) and its tags."""
        async with self._session_factory.begin() as session:
            stmt = select(self.model).where(
                self.model.user_id == user_id, self.model.id == entity_id
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return False
            await session.execute(
                delete(EntityTag).where(
                    EntityTag.user_id == user_id,
                    EntityTag.entity_kind == self.kind.value,
                    EntityTag.entity_id == entity_id,
                )
            )
            await self._detach_dependents(session, user_id, entity_id)
            await session.delete(row)
        logger.debug("Hard-deleted %s %s for user %s", self.kind.value, entity_id, user_id)
        return True

    async def _detach_dependents(self, session: AsyncSession, user_id: str, entity_id: str) -> None:
        return None


def _dedupe_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for tag in tags:
        key = tag.lower()
        if key not in seen:
            seen.add(key)
            unique.append(tag)
    return unique


class TaskStore(_SqlStore):
    kind = EntityKind.TASK
    model = Task
    statuses = TASK_STATUSES

    @property
    def date_column(self):
        return Task.due_date

    def _extra_sort_columns(self) -> dict:
        return {"dueDate": Task.due_date}

    def _apply_kind_filters(self, stmt, filters: ListFilters):
        if filters.priority:
            stmt = stmt.where(Task.priority == filters.priority)
        if filters.completed_from is not None:
            stmt = stmt.where(Task.completed_at >= filters.completed_from)
        if filters.completed_to is not None:
            stmt = stmt.where(Task.completed_at < filters.completed_to)
        return stmt

    def _prepare_create(self, values):
        if values.get("status") == "done":
            values["completed_at"] = _utcnow()
        return values

    def _apply_changes(self, row, changes):
        if "status" in changes:
            # completed_at tracks the done state
            if changes["status"] == "done":
                if row.status != "done" or row.completed_at is None:
                    row.completed_at = _utcnow()
            else:
                row.completed_at = None
        super()._apply_changes(row, changes)


class EventStore(_SqlStore):
    kind = EntityKind.EVENT
    model = Event

    @property
    def date_column(self):
        return Event.start_time

    def text_columns(self):
        return [Event.title, Event.description, Event.location]

    def _extra_sort_columns(self) -> dict:
        return {"startTime": Event.start_time}

    def _prepare_create(self, values):
        if values.get("end_time") is None:
            values["end_time"] = values["start_time"] + timedelta(hours=1)
        return values

    def _apply_changes(self, row, changes):
        if "start_time" in changes and "end_time" not in changes:
            # Moving the start keeps the duration
            changes["end_time"] = changes["start_time"] + (row.end_time - row.start_time)
        super()._apply_changes(row, changes)
        if row.end_time < row.start_time:
            raise ToolValidationError(
                "Event end must not be before its start",
                issues=[{"field": "updates.endTime", "message": "before startTime", "type": "value_error"}],
            )


class NoteStore(_SqlStore):
    kind = EntityKind.NOTE
    model = Note

    @property
    def title_column(self):
        return func.coalesce(Note.title, "")

    @property
    def date_column(self):
        return Note.updated_at

    def text_columns(self):
        return [Note.title, Note.content]

    def sort_column(self, sort_by: str):
        if sort_by == "title":
            return Note.title
        return super().sort_column(sort_by)

    def _apply_kind_filters(self, stmt, filters: ListFilters):
        if filters.note_type:
            stmt = stmt.where(Note.type == filters.note_type)
        return stmt

    def display_title(self, row) -> str:
        return row.title or UNTITLED_NOTE

    def _prepare_create(self, values):
        if not values.get("title"):
            values["title"] = title_from_content(values.get("content", ""))
        return values


def title_from_content(content: str) -> str:
    first_line = content.strip().split("\n", 1)[0]
    title = first_line.lstrip("#").strip()[:100]
    return title or UNTITLED_NOTE


class ProjectStore(_SqlStore):
    kind = EntityKind.PROJECT
    model = Project
    statuses = PROJECT_STATUSES

    @property
    def title_column(self):
        return Project.name

    @property
    def date_column(self):
        return Project.start_date

    def text_columns(self):
        return [Project.name, Project.description]

    def display_title(self, row) -> str:
        return row.name

    def _prepare_create(self, values):
        if not values.get("color"):
            values["color"] = random.choice(PROJECT_COLORS)
        return values

    async def _detach_dependents(self, session, user_id, entity_id):
        for model in (Task, Event, Note):
            await session.execute(
                update(model)
                .where(model.user_id == user_id, model.project_id == entity_id)
                .values(project_id=None)
            )

    async def progress(self, user_id: str, project_id: str | None = None) -> list[dict]:
        """Per-project task totals: [{id, name, status, total, done, percent}]."""
        done = func.sum(case((Task.status == "done", 1), else_=0))
        stmt = (
            select(Project.id, Project.name, Project.status, func.count(Task.id), done)
            .select_from(Project)
            .outerjoin(
                Task,
                (Task.project_id == Project.id)
                & (Task.user_id == user_id)
                & Task.deleted_at.is_(None),
            )
            .where(Project.user_id == user_id, Project.deleted_at.is_(None))
            .group_by(Project.id, Project.name, Project.status)
            .order_by(Project.name, Project.id)
        )
        if project_id:
            stmt = stmt.where(Project.id == project_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [
            {
                "id": pid,
                "name": name,
                "status": status,
                "total": int(total),
                "done": int(done_n or 0),
                "percent": round(100 * int(done_n or 0) / int(total)) if total else 0,
            }
            for pid, name, status, total, done_n in rows
        ]


class EntityRepository:
    """Maps every entity kind to its store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.tasks = TaskStore(session_factory)
        self.events = EventStore(session_factory)
        self.notes = NoteStore(session_factory)
        self.projects = ProjectStore(session_factory)
        self._stores: dict[EntityKind, _SqlStore] = {
            EntityKind.TASK: self.tasks,
            EntityKind.EVENT: self.events,
            EntityKind.NOTE: self.notes,
            EntityKind.PROJECT: self.projects,
        }
        missing = set(EntityKind) - set(self._stores)
        if missing:
            raise RuntimeError(f"No store registered for: {sorted(k.value for k in missing)}")

    def store(self, kind: EntityKind) -> _SqlStore:
        return self._stores[kind]
