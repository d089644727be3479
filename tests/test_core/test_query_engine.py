"""Tests for QueryEngine: structured listing and free-text search."""

from __future__ import annotations

from datetime import datetime

import pytest

from plannerai.core.query_engine import QueryEngine, QuerySpec, SearchSpec
from plannerai.core.repository import ListFilters
from plannerai.core.types import EntityKind

USER = "user-1"


@pytest.fixture
def engine(repository, ai_logger):
    return QueryEngine(repository, ai_logger, default_limit=10, max_limit=50)


def test_clamp_limit(engine):
    assert engine.clamp_limit(None) == 10
    assert engine.clamp_limit(3) == 3
    assert engine.clamp_limit(500) == 50


@pytest.mark.asyncio
async def test_notes_listing_sorted_by_update(engine, repository):
    for i in range(5):
        await repository.notes.create(USER, {"title": f"Note {i}", "content": f"body {i}"})

    results = await engine.list_entities(
        USER,
        QuerySpec(entity_kinds=(EntityKind.NOTE,), sort_by="updatedAt", sort_order="desc", limit=10),
    )
    data = results.to_dict()

    assert data["total"] == 5
    assert data["task"] == []
    assert len(data["note"]) == 5
    stamps = [datetime.fromisoformat(n["updatedAt"]) for n in data["note"]]
    assert stamps == sorted(stamps, reverse=True)
    assert data["note"][0]["title"] == "Note 4"


@pytest.mark.asyncio
async def test_listing_is_idempotent(engine, repository):
    for title in ("a", "b", "c"):
        await repository.tasks.create(USER, {"title": title})
    spec = QuerySpec(entity_kinds=(EntityKind.TASK, EntityKind.PROJECT), sort_by="title", sort_order="asc")

    first = await engine.list_entities(USER, spec)
    second = await engine.list_entities(USER, spec)

    assert first.to_dict() == second.to_dict()
    assert [t["title"] for t in first.by_kind[EntityKind.TASK]] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_search_matches_substring_only(engine, repository):
    await repository.tasks.create(USER, {"title": "Team meeting prep"})
    await repository.tasks.create(USER, {"title": "Buy milk"})

    results = await engine.search_entities(
        USER, SearchSpec(query_text="meeting", entity_kinds=(EntityKind.TASK,))
    )

    assert [t["title"] for t in results.by_kind[EntityKind.TASK]] == ["Team meeting prep"]
    assert results.total == 1


@pytest.mark.asyncio
async def test_search_covers_descriptions_and_content(engine, repository):
    await repository.tasks.create(USER, {"title": "Call", "description": "about the Invoice"})
    await repository.notes.create(USER, {"title": "Scratch", "content": "invoice numbers"})
    await repository.events.create(
        USER, {"title": "Visit", "start_time": datetime(2026, 1, 5, 9), "location": "Invoice Dept"}
    )

    results = await engine.search_entities(USER, SearchSpec(query_text="invoice"))

    assert results.total == 3
    assert {k for k, rows in results.by_kind.items() if rows} == {
        EntityKind.TASK,
        EntityKind.NOTE,
        EntityKind.EVENT,
    }


@pytest.mark.asyncio
async def test_filters_apply_per_kind(engine, repository):
    project = await repository.projects.create(USER, {"name": "Launch"})
    await repository.tasks.create(
        USER, {"title": "Ship it", "priority": "high", "project_id": project["id"]}, ["release"]
    )
    await repository.tasks.create(USER, {"title": "Tidy desk", "priority": "low"})
    await repository.notes.create(USER, {"title": "Launch plan", "content": "...", "project_id": project["id"]})

    by_priority = await engine.list_entities(
        USER, QuerySpec(entity_kinds=(EntityKind.TASK, EntityKind.NOTE), filters=ListFilters(priority="high"))
    )
    # priority does not apply to notes, so the note is still listed
    assert [t["title"] for t in by_priority.by_kind[EntityKind.TASK]] == ["Ship it"]
    assert len(by_priority.by_kind[EntityKind.NOTE]) == 1

    by_tag = await engine.list_entities(
        USER, QuerySpec(entity_kinds=(EntityKind.TASK,), filters=ListFilters(tags=("RELEASE",)))
    )
    assert [t["title"] for t in by_tag.by_kind[EntityKind.TASK]] == ["Ship it"]
    assert by_tag.by_kind[EntityKind.TASK][0]["tags"] == ["release"]

    by_project = await engine.list_entities(
        USER,
        QuerySpec(
            entity_kinds=(EntityKind.TASK, EntityKind.NOTE),
            filters=ListFilters(project_id=project["id"]),
        ),
    )
    assert by_project.total == 2


@pytest.mark.asyncio
async def test_status_filter_spans_task_and_project_sets(engine, repository):
    await repository.tasks.create(USER, {"title": "Open", "status": "todo"})
    await repository.tasks.create(USER, {"title": "Closed", "status": "done"})
    await repository.projects.create(USER, {"name": "Live", "status": "active"})

    results = await engine.list_entities(
        USER,
        QuerySpec(entity_kinds=(EntityKind.TASK, EntityKind.PROJECT), filters=ListFilters(status="done")),
    )

    assert [t["title"] for t in results.by_kind[EntityKind.TASK]] == ["Closed"]
    # "done" is not a project status, so projects are not narrowed
    assert [p["title"] for p in results.by_kind[EntityKind.PROJECT]] == ["Live"]


@pytest.mark.asyncio
async def test_date_range_on_due_date(engine, repository):
    await repository.tasks.create(USER, {"title": "Early", "due_date": datetime(2026, 1, 1)})
    await repository.tasks.create(USER, {"title": "Mid", "due_date": datetime(2026, 2, 1)})
    await repository.tasks.create(USER, {"title": "Undated"})

    results = await engine.list_entities(
        USER,
        QuerySpec(
            entity_kinds=(EntityKind.TASK,),
            filters=ListFilters(date_start=datetime(2026, 1, 15), date_end=datetime(2026, 3, 1)),
        ),
    )
    assert [t["title"] for t in results.by_kind[EntityKind.TASK]] == ["Mid"]


@pytest.mark.asyncio
async def test_due_date_sort_puts_nulls_last(engine, repository):
    await repository.tasks.create(USER, {"title": "Undated"})
    await repository.tasks.create(USER, {"title": "Later", "due_date": datetime(2026, 5, 1)})
    await repository.tasks.create(USER, {"title": "Sooner", "due_date": datetime(2026, 4, 1)})

    results = await engine.list_entities(
        USER, QuerySpec(entity_kinds=(EntityKind.TASK,), sort_by="dueDate", sort_order="asc")
    )
    assert [t["title"] for t in results.by_kind[EntityKind.TASK]] == ["Sooner", "Later", "Undated"]


@pytest.mark.asyncio
async def test_trashed_records_are_hidden(engine, repository):
    record = await repository.tasks.create(USER, {"title": "Gone"})
    await repository.tasks.soft_delete(USER, record["id"])
    results = await engine.list_entities(USER, QuerySpec(entity_kinds=(EntityKind.TASK,)))
    assert results.total == 0


@pytest.mark.asyncio
async def test_queries_are_logged_at_debug(engine, repository, memory_sink):
    await repository.tasks.create(USER, {"title": "x"})
    await engine.list_entities(USER, QuerySpec(entity_kinds=(EntityKind.TASK, EntityKind.NOTE)))
    events = memory_sink.query(level="DEBUG")
    assert {e.context["table"] for e in events} == {"task", "note"}
    assert all("resultCount" in e.context for e in events)
