"""Query engine: structured listing and free-text search across entity kinds."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from plannerai.core.ai_logger import AiLogger
from plannerai.core.repository import EntityRepository, ListFilters
from plannerai.core.types import EntityKind

ALL_KINDS: tuple[EntityKind, ...] = tuple(EntityKind)
SORT_FIELDS = frozenset({"createdAt", "updatedAt", "dueDate", "startTime", "title"})


@dataclass(frozen=True)
class QuerySpec:
    """Listing request.

    Attrs:
        entity_kinds: Kinds to list; each is queried independently.
        filters: Constraints; those not applicable to a kind are ignored.
        sort_by: createdAt | updatedAt | dueDate | startTime | title.
        sort_order: asc | desc.
        limit: Per-kind maximum, clamped to the engine's hard cap.
    """

    entity_kinds: tuple[EntityKind, ...]
    filters: ListFilters = field(default_factory=ListFilters)
    sort_by: str = "updatedAt"
    sort_order: str = "desc"
    limit: int | None = None


@dataclass(frozen=True)
class SearchSpec:
    query_text: str
    entity_kinds: tuple[EntityKind, ...] = ALL_KINDS
    filters: ListFilters = field(default_factory=ListFilters)
    limit: int | None = None


@dataclass
class GroupedResults:
    """Per-kind result lists; every kind key is always present."""

    by_kind: dict[EntityKind, list[dict[str, Any]]] = field(
        default_factory=lambda: {kind: [] for kind in EntityKind}
    )

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.by_kind.values())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {kind.value: list(self.by_kind[kind]) for kind in EntityKind}
        data["total"] = self.total
        return data


class QueryEngine:
    """Runs one repository query per requested kind, concurrently."""

    def __init__(
        self,
        repository: EntityRepository,
        ai_logger: AiLogger | None = None,
        *,
        default_limit: int = 10,
        max_limit: int = 50,
    ) -> None:
        self._repo = repository
        self._log = ai_logger or AiLogger(enabled=False)
        self.default_limit = default_limit
        self.max_limit = max_limit

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit < 1:
            return self.default_limit
        return min(limit, self.max_limit)

    async def list_entities(
        self, user_id: str, spec: QuerySpec, *, ai_log: AiLogger | None = None
    ) -> GroupedResults:
        log = ai_log or self._log
        limit = self.clamp_limit(spec.limit)
        sort_by = spec.sort_by if spec.sort_by in SORT_FIELDS else "updatedAt"
        sort_order = "asc" if spec.sort_order == "asc" else "desc"
        kinds = _unique(spec.entity_kinds)

        async def _one(kind: EntityKind) -> list[dict]:
            rows = await self._repo.store(kind).list_filtered(
                user_id, spec.filters, sort_by, sort_order, limit
            )
            log.log_query(
                kind.value,
                {
                    "filters": _describe(spec.filters),
                    "sortBy": sort_by,
                    "sortOrder": sort_order,
                    "limit": limit,
                },
                len(rows),
                "list",
            )
            return rows

        return await self._gather(kinds, _one)

    async def search_entities(
        self, user_id: str, spec: SearchSpec, *, ai_log: AiLogger | None = None
    ) -> GroupedResults:
        log = ai_log or self._log
        limit = self.clamp_limit(spec.limit)
        kinds = _unique(spec.entity_kinds or ALL_KINDS)

        async def _one(kind: EntityKind) -> list[dict]:
            rows = await self._repo.store(kind).search_text(
                user_id, spec.query_text, spec.filters, limit
            )
            log.log_query(
                kind.value,
                {"query": spec.query_text, "filters": _describe(spec.filters), "limit": limit},
                len(rows),
                "search",
            )
            return rows

        results = await self._gather(kinds, _one)
        log.log_search(
            spec.query_text,
            [k.value for k in kinds],
            {k.value: len(v) for k, v in results.by_kind.items()},
        )
        return results

    async def _gather(self, kinds, fetch) -> GroupedResults:
        rows_per_kind = await asyncio.gather(*(fetch(kind) for kind in kinds))
        results = GroupedResults()
        for kind, rows in zip(kinds, rows_per_kind):
            results.by_kind[kind] = rows
        return results


def _unique(kinds) -> tuple[EntityKind, ...]:
    return tuple(dict.fromkeys(kinds))


def _describe(filters: ListFilters) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(filters).items()
        if value not in (None, (), "")
    }
