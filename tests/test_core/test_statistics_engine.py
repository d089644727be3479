"""Tests for StatisticsEngine with a fixed clock."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from plannerai.core.exceptions import ToolValidationError
from plannerai.core.statistics_engine import StatisticsEngine

USER = "user-1"
# Wednesday
NOW = datetime(2026, 10, 21, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def stats(repository):
    return StatisticsEngine(repository, clock=lambda: NOW)


async def _completed(repository, title, completed_at):
    record = await repository.tasks.create(USER, {"title": title, "status": "done"})
    await repository.tasks.update(USER, record["id"], {"completed_at": completed_at})


def test_period_starts(stats):
    assert stats.period_start("tasks_completed_today") == datetime(2026, 10, 21)
    # weeks start on Sunday
    assert stats.period_start("tasks_completed_this_week") == datetime(2026, 10, 18)
    assert stats.period_start("tasks_completed_this_month") == datetime(2026, 10, 1)


def test_period_start_follows_timezone(repository):
    late_evening_in_new_york = datetime(2026, 10, 21, 2, 0, tzinfo=timezone.utc)
    stats = StatisticsEngine(repository, tz="America/New_York", clock=lambda: late_evening_in_new_york)
    # Local date is still Oct 20; midnight EDT is 04:00 UTC
    assert stats.period_start("tasks_completed_today") == datetime(2026, 10, 20, 4, 0)


@pytest.mark.asyncio
async def test_completion_counts(stats, repository):
    await _completed(repository, "today", datetime(2026, 10, 21, 10, 0))
    await _completed(repository, "monday", datetime(2026, 10, 19, 9, 0))
    await _completed(repository, "early october", datetime(2026, 10, 5, 9, 0))
    await _completed(repository, "september", datetime(2026, 9, 30, 9, 0))
    await repository.tasks.create(USER, {"title": "open"})

    today = await stats.compute(USER, "tasks_completed_today")
    week = await stats.compute(USER, "tasks_completed_this_week")
    month = await stats.compute(USER, "tasks_completed_this_month")

    assert (today["value"], week["value"], month["value"]) == (1, 2, 3)
    assert week["since"] == "2026-10-18T00:00:00"


@pytest.mark.asyncio
async def test_overdue_tasks(stats, repository):
    await repository.tasks.create(USER, {"title": "Late", "due_date": datetime(2026, 10, 20)})
    await repository.tasks.create(USER, {"title": "Future", "due_date": datetime(2026, 10, 22)})
    await repository.tasks.create(USER, {"title": "Done late", "due_date": datetime(2026, 10, 10), "status": "done"})
    await repository.tasks.create(USER, {"title": "Dropped", "due_date": datetime(2026, 10, 10), "status": "cancelled"})
    await repository.tasks.create(USER, {"title": "Undated"})

    result = await stats.compute(USER, "overdue_tasks")

    assert result["count"] == 1
    assert [t["title"] for t in result["tasks"]] == ["Late"]


@pytest.mark.asyncio
async def test_upcoming_events(stats, repository):
    for title, start in (
        ("Yesterday", datetime(2026, 10, 20, 9)),
        ("Tomorrow", datetime(2026, 10, 22, 9)),
        ("Next week", datetime(2026, 10, 27, 9)),
        ("Far off", datetime(2026, 11, 30, 9)),
    ):
        await repository.events.create(USER, {"title": title, "start_time": start})

    result = await stats.compute(USER, "upcoming_events")

    assert result["count"] == 2
    assert [e["title"] for e in result["events"]] == ["Tomorrow", "Next week"]


@pytest.mark.asyncio
async def test_breakdowns_include_zero_buckets(stats, repository):
    await repository.tasks.create(USER, {"title": "a", "priority": "high"})
    await repository.tasks.create(USER, {"title": "b", "priority": "high", "status": "in_progress"})
    await repository.tasks.create(USER, {"title": "c", "priority": "low"})
    await repository.tasks.create("someone-else", {"title": "d", "priority": "urgent"})

    by_priority = await stats.compute(USER, "tasks_by_priority")
    by_status = await stats.compute(USER, "tasks_by_status")

    assert by_priority["breakdown"] == {"low": 1, "medium": 0, "high": 2, "urgent": 0}
    assert by_priority["total"] == 3
    assert by_status["breakdown"] == {"cancelled": 0, "done": 0, "in_progress": 1, "todo": 2}


@pytest.mark.asyncio
async def test_project_progress_scoped(stats, repository):
    alpha = await repository.projects.create(USER, {"name": "Alpha"})
    await repository.projects.create(USER, {"name": "Beta"})
    await repository.tasks.create(USER, {"title": "a1", "project_id": alpha["id"], "status": "done"})
    await repository.tasks.create(USER, {"title": "a2", "project_id": alpha["id"]})
    await repository.tasks.create(USER, {"title": "a3", "project_id": alpha["id"]})
    await repository.tasks.create(USER, {"title": "a4", "project_id": alpha["id"]})

    everything = await stats.compute(USER, "project_progress")
    scoped = await stats.compute(USER, "project_progress", project_id=alpha["id"])

    assert [(p["name"], p["total"], p["percent"]) for p in everything["projects"]] == [
        ("Alpha", 4, 25),
        ("Beta", 0, 0),
    ]
    assert [p["name"] for p in scoped["projects"]] == ["Alpha"]
    assert scoped["projectId"] == alpha["id"]


@pytest.mark.asyncio
async def test_unknown_metric(stats):
    with pytest.raises(ToolValidationError):
        await stats.compute(USER, "vibes")
