"""Static catalog of tools the assistant may call."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from plannerai.core import tool_inputs as ti
from plannerai.core.exceptions import ToolNotRegisteredError, ToolValidationError


class ToolCategory(str, Enum):
    LISTING = "listing"
    SEARCH = "search"
    CREATE = "create"
    MUTATE = "mutate"
    DESTRUCTIVE = "destructive"


READ_CATEGORIES = frozenset({ToolCategory.LISTING, ToolCategory.SEARCH})


def _input_schema(model: type[ti.ToolInput]) -> dict[str, Any]:
    schema = model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    return schema


@dataclass(frozen=True)
class ToolSpec:
    """Registered tool: name, parameter contract and safety category."""

    name: str
    description: str
    category: ToolCategory
    input_model: type[ti.ToolInput]
    input_schema: dict[str, Any] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_schema", _input_schema(self.input_model))

    @property
    def requires_confirmation(self) -> bool:
        return self.category is ToolCategory.DESTRUCTIVE

    @property
    def is_read(self) -> bool:
        return self.category in READ_CATEGORIES

    def validate(self, parameters: Any) -> ti.ToolInput:
        """Validate untrusted parameters into the tool's input model.

        Raises:
            ToolValidationError: with one issue per offending field.
        """
        if not isinstance(parameters, dict):
            raise ToolValidationError(
                f"{self.name}: parameters must be a JSON object",
                issues=[{"field": "", "message": "expected object", "type": "type_error"}],
            )
        try:
            return self.input_model.model_validate(parameters)
        except PydanticValidationError as e:
            issues = [
                {
                    "field": ".".join(str(p) for p in err["loc"]),
                    "message": err["msg"],
                    "type": err["type"],
                }
                for err in e.errors(include_url=False, include_input=False)
            ]
            summary = "; ".join(
                f"{i['field'] or '(root)'}: {i['message']}" for i in issues
            )
            raise ToolValidationError(
                f"Invalid parameters for {self.name}: {summary}",
                issues=issues,
            ) from None

    def to_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
        }


_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="create_task",
        description=(
            "Create one or multiple tasks. Tasks can have titles, descriptions, "
            "due dates (ISO 8601), durations in minutes, priorities, tags and be "
            "assigned to a project by name."
        ),
        category=ToolCategory.CREATE,
        input_model=ti.CreateTaskInput,
    ),
    ToolSpec(
        name="create_event",
        description=(
            "Create one or multiple calendar events. startTime is required; "
            "endTime defaults to one hour after the start."
        ),
        category=ToolCategory.CREATE,
        input_model=ti.CreateEventInput,
    ),
    ToolSpec(
        name="create_note",
        description=(
            "Create a note or document (Markdown). The title is generated from "
            "the first line of content when omitted."
        ),
        category=ToolCategory.CREATE,
        input_model=ti.CreateNoteInput,
    ),
    ToolSpec(
        name="create_project",
        description=(
            "Create a project: a container for related tasks, events and notes."
        ),
        category=ToolCategory.CREATE,
        input_model=ti.CreateProjectInput,
    ),
    ToolSpec(
        name="query_entities",
        description=(
            "List entities without a text query: 'show my notes', 'latest tasks', "
            "'overdue high priority tasks'. Supports filters, sorting and a limit "
            "per entity type (default 10, max 50). Prefer this over "
            "search_entities when there is no search term."
        ),
        category=ToolCategory.LISTING,
        input_model=ti.QueryEntitiesInput,
    ),
    ToolSpec(
        name="search_entities",
        description=(
            "Search titles, descriptions and content for a text query. "
            "For listing without a search term use query_entities instead."
        ),
        category=ToolCategory.SEARCH,
        input_model=ti.SearchEntitiesInput,
    ),
    ToolSpec(
        name="update_task",
        description=(
            "Update a task identified by id, title, or 'it'. Use status 'done' "
            "to mark it complete."
        ),
        category=ToolCategory.MUTATE,
        input_model=ti.UpdateTaskInput,
    ),
    ToolSpec(
        name="update_event",
        description="Update an event identified by id, title, or 'it'.",
        category=ToolCategory.MUTATE,
        input_model=ti.UpdateEventInput,
    ),
    ToolSpec(
        name="update_note",
        description="Update a note identified by id, title, or 'it'.",
        category=ToolCategory.MUTATE,
        input_model=ti.UpdateNoteInput,
    ),
    ToolSpec(
        name="update_project",
        description="Update a project identified by id, name, or 'it'.",
        category=ToolCategory.MUTATE,
        input_model=ti.UpdateProjectInput,
    ),
    ToolSpec(
        name="bulk_update_tasks",
        description=(
            "Apply the same updates to several tasks at once, e.g. mark them done. "
            "Every identifier must match exactly one task before anything changes."
        ),
        category=ToolCategory.MUTATE,
        input_model=ti.BulkUpdateTasksInput,
    ),
    ToolSpec(
        name="delete_entity",
        description=(
            "Delete a task, event, note or project. By default the item moves to "
            "trash and can be restored. permanent=true deletes irreversibly and "
            "requires confirmed=true, set only after the user explicitly agreed."
        ),
        category=ToolCategory.DESTRUCTIVE,
        input_model=ti.DeleteEntityInput,
    ),
    ToolSpec(
        name="restore_entity",
        description="Restore a task, event, note or project from the trash.",
        category=ToolCategory.MUTATE,
        input_model=ti.RestoreEntityInput,
    ),
    ToolSpec(
        name="get_statistics",
        description=(
            "Productivity statistics: completions today/this week/this month, "
            "overdue tasks, upcoming events, project progress, tasks by priority "
            "or status. Optionally scoped to a project by name."
        ),
        category=ToolCategory.LISTING,
        input_model=ti.GetStatisticsInput,
    ),
)


class ToolRegistry:
    """Immutable name -> ToolSpec map built once at import time."""

    def __init__(self, specs: tuple[ToolSpec, ...] = _SPECS) -> None:
        by_name: dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            by_name[spec.name] = spec
        self._specs = MappingProxyType(by_name)

    def lookup(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise ToolNotRegisteredError(
                f"Unknown tool: {name!r}",
                hint=f"Available tools: {', '.join(self.names())}",
            )
        return spec

    def names(self) -> list[str]:
        return list(self._specs)

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def export_schemas(self) -> list[dict[str, Any]]:
        return [spec.to_schema() for spec in self._specs.values()]


registry = ToolRegistry()
