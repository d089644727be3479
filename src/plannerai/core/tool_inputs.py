"""Validated parameter models for every registered tool.

Parameters arrive from the model as untrusted JSON.  Each tool gets a frozen
pydantic model with strict primitive types, closed enums and no unknown keys.
Wire names are camelCase (``dueDate``), Python attributes snake_case.

``references()`` lists the entity identifiers a call carries so the
dispatcher can resolve all of them before executing anything.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, ClassVar, Literal

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    StringConstraints,
    model_validator,
)
from pydantic.alias_generators import to_camel

from plannerai.core.types import EntityKind

TaskStatus = Literal["todo", "in_progress", "done", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
NoteType = Literal["note", "document", "research", "idea", "snippet"]
ProjectStatus = Literal["active", "on_hold", "completed", "archived", "cancelled"]
AnyStatus = Literal[
    "todo", "in_progress", "done", "cancelled",
    "active", "on_hold", "completed", "archived",
]
SortField = Literal["createdAt", "updatedAt", "dueDate", "startTime", "title"]
SortOrder = Literal["asc", "desc"]
Metric = Literal[
    "tasks_completed_today",
    "tasks_completed_this_week",
    "tasks_completed_this_month",
    "overdue_tasks",
    "upcoming_events",
    "project_progress",
    "tasks_by_priority",
    "tasks_by_status",
]

TASK_STATUSES: frozenset[str] = frozenset(TaskStatus.__args__)
PROJECT_STATUSES: frozenset[str] = frozenset(ProjectStatus.__args__)

MAX_LIMIT = 50
MAX_BATCH = 50


def _require_iso_string(value):
    if not isinstance(value, (str, datetime)):
        raise ValueError("expected an ISO 8601 date-time string")
    return value


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


IsoDateTime = Annotated[
    datetime, BeforeValidator(_require_iso_string), AfterValidator(_to_naive_utc)
]
Title = Annotated[StrictStr, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]
Identifier = Annotated[StrictStr, StringConstraints(strip_whitespace=True, max_length=500)]
TagName = Annotated[StrictStr, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Color = Annotated[StrictStr, StringConstraints(pattern=r"^#[0-9a-fA-F]{6}$")]
Limit = Annotated[StrictInt, Field(ge=1)]


class ToolInput(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def references(self) -> list[tuple[EntityKind, str]]:
        return []


class _Changes(ToolInput):
    """Partial update: at least one field must be present.

    An explicit ``null`` clears an optional column; columns listed in
    ``non_nullable`` cannot be cleared.
    """

    non_nullable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_fields_set:
            raise ValueError("updates must contain at least one field")
        cleared = sorted(
            name for name in self.model_fields_set & self.non_nullable
            if getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"cannot clear required field(s): {', '.join(cleared)}")
        return self

    def as_changes(self) -> dict:
        return self.model_dump(include=self.model_fields_set, exclude={"tags"})


def _check_range(start: datetime | None, end: datetime | None, what: str) -> None:
    if start is not None and end is not None and end < start:
        raise ValueError(f"{what} end must not be before start")


# ── create ─────────────────────────────────────────────────────────


class NewTask(ToolInput):
    title: Title
    description: StrictStr | None = None
    due_date: IsoDateTime | None = None
    duration: Annotated[StrictInt, Field(ge=1)] | None = None
    priority: TaskPriority = "medium"
    project_name: Identifier | None = None
    tags: list[TagName] = Field(default_factory=list)


class CreateTaskInput(ToolInput):
    tasks: list[NewTask] = Field(min_length=1, max_length=MAX_BATCH)

    def references(self):
        return [(EntityKind.PROJECT, t.project_name) for t in self.tasks if t.project_name]


class NewEvent(ToolInput):
    title: Title
    start_time: IsoDateTime
    end_time: IsoDateTime | None = None
    description: StrictStr | None = None
    location: StrictStr | None = None
    all_day: StrictBool = False
    project_name: Identifier | None = None
    tags: list[TagName] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_times(self):
        _check_range(self.start_time, self.end_time, "event")
        return self


class CreateEventInput(ToolInput):
    events: list[NewEvent] = Field(min_length=1, max_length=MAX_BATCH)

    def references(self):
        return [(EntityKind.PROJECT, e.project_name) for e in self.events if e.project_name]


class CreateNoteInput(ToolInput):
    content: Annotated[StrictStr, StringConstraints(min_length=1)]
    title: Title | None = None
    type: NoteType = "note"
    project_name: Identifier | None = None
    tags: list[TagName] = Field(default_factory=list)

    def references(self):
        return [(EntityKind.PROJECT, self.project_name)] if self.project_name else []


class CreateProjectInput(ToolInput):
    name: Title
    description: StrictStr | None = None
    status: ProjectStatus = "active"
    color: Color | None = None
    start_date: IsoDateTime | None = None
    end_date: IsoDateTime | None = None
    tags: list[TagName] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_dates(self):
        _check_range(self.start_date, self.end_date, "project")
        return self


# ── listing / search ───────────────────────────────────────────────


class DateRange(ToolInput):
    start: IsoDateTime | None = None
    end: IsoDateTime | None = None

    @model_validator(mode="after")
    def _check_bounds(self):
        _check_range(self.start, self.end, "dateRange")
        return self


class EntityFilters(ToolInput):
    """Filters shared by listing and search.

    ``status`` applies to every kind whose status set contains the value
    (task statuses to tasks, project statuses to projects).
    """

    status: AnyStatus | None = None
    priority: TaskPriority | None = None
    note_type: NoteType | None = None
    project_name: Identifier | None = None
    tags: list[TagName] | None = None
    date_range: DateRange | None = None


def _filter_refs(filters: EntityFilters | None) -> list[tuple[EntityKind, str]]:
    if filters is not None and filters.project_name:
        return [(EntityKind.PROJECT, filters.project_name)]
    return []


class QueryEntitiesInput(ToolInput):
    entity_types: list[EntityKind] = Field(
        min_length=1,
        validation_alias=AliasChoices("entityTypes", "entityKinds", "entity_types"),
        serialization_alias="entityTypes",
    )
    filters: EntityFilters | None = None
    sort_by: SortField = "updatedAt"
    sort_order: SortOrder = "desc"
    limit: Limit | None = None

    def references(self):
        return _filter_refs(self.filters)


class SearchEntitiesInput(ToolInput):
    query: Annotated[StrictStr, StringConstraints(strip_whitespace=True, min_length=1)] = Field(
        validation_alias=AliasChoices("query", "queryText", "query_text"),
        serialization_alias="query",
    )
    entity_types: list[EntityKind] | None = Field(
        default=None,
        validation_alias=AliasChoices("entityTypes", "entityKinds", "entity_types"),
        serialization_alias="entityTypes",
    )
    filters: EntityFilters | None = None
    limit: Limit | None = None

    def references(self):
        return _filter_refs(self.filters)


# ── update ─────────────────────────────────────────────────────────


class TaskChanges(_Changes):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"title", "status", "priority"})

    title: Title | None = None
    description: StrictStr | None = None
    status: TaskStatus | None = None
    due_date: IsoDateTime | None = None
    duration: Annotated[StrictInt, Field(ge=1)] | None = None
    priority: TaskPriority | None = None


class EventChanges(_Changes):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"title", "start_time", "end_time", "all_day"})

    title: Title | None = None
    description: StrictStr | None = None
    start_time: IsoDateTime | None = None
    end_time: IsoDateTime | None = None
    location: StrictStr | None = None
    all_day: StrictBool | None = None

    @model_validator(mode="after")
    def _check_times(self):
        _check_range(self.start_time, self.end_time, "event")
        return self


class NoteChanges(_Changes):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"content", "type"})

    title: Title | None = None
    content: StrictStr | None = None
    type: NoteType | None = None


class ProjectChanges(_Changes):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"name", "status", "color"})

    name: Title | None = None
    description: StrictStr | None = None
    status: ProjectStatus | None = None
    color: Color | None = None
    start_date: IsoDateTime | None = None
    end_date: IsoDateTime | None = None


class UpdateTaskInput(ToolInput):
    task_identifier: Identifier
    updates: TaskChanges

    def references(self):
        return [(EntityKind.TASK, self.task_identifier)]


class UpdateEventInput(ToolInput):
    event_identifier: Identifier
    updates: EventChanges

    def references(self):
        return [(EntityKind.EVENT, self.event_identifier)]


class UpdateNoteInput(ToolInput):
    note_identifier: Identifier
    updates: NoteChanges

    def references(self):
        return [(EntityKind.NOTE, self.note_identifier)]


class UpdateProjectInput(ToolInput):
    project_identifier: Identifier
    updates: ProjectChanges

    def references(self):
        return [(EntityKind.PROJECT, self.project_identifier)]


class BulkUpdateTasksInput(ToolInput):
    task_identifiers: list[Identifier] = Field(min_length=1, max_length=MAX_BATCH)
    updates: TaskChanges

    def references(self):
        return [(EntityKind.TASK, ident) for ident in self.task_identifiers]


# ── delete / restore ───────────────────────────────────────────────


class DeleteEntityInput(ToolInput):
    entity_type: EntityKind
    entity_identifier: Identifier
    permanent: StrictBool = False
    confirmed: StrictBool = False

    @model_validator(mode="after")
    def _permanent_needs_confirmation(self):
        if self.permanent and not self.confirmed:
            raise ValueError(
                "permanent deletion cannot be undone and requires confirmed=true; "
                "ask the user first, or omit permanent to move the item to trash"
            )
        return self

    def references(self):
        # Permanent deletes also look in the trash; the dispatcher resolves those
        if self.permanent:
            return []
        return [(self.entity_type, self.entity_identifier)]


class RestoreEntityInput(ToolInput):
    entity_type: EntityKind
    entity_identifier: Identifier

    # Resolved among trashed records by the dispatcher, not through references()


# ── statistics ─────────────────────────────────────────────────────


class GetStatisticsInput(ToolInput):
    metric: Metric
    project_name: Identifier | None = None

    def references(self):
        return [(EntityKind.PROJECT, self.project_name)] if self.project_name else []
