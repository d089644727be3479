"""Statistics engine: small aggregate answers about the user's work."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from plannerai.core.ai_logger import AiLogger
from plannerai.core.exceptions import ToolValidationError
from plannerai.core.repository import EntityRepository, ListFilters
from plannerai.core.tool_inputs import TASK_STATUSES, Metric, TaskPriority

METRICS: tuple[str, ...] = Metric.__args__
PRIORITIES: tuple[str, ...] = TaskPriority.__args__
UPCOMING_WINDOW = timedelta(days=7)
LIST_CAP = 10


def _utc_naive(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class StatisticsEngine:
    """Computes one metric at a time for a user, optionally scoped to a project.

    Calendar boundaries (today, this week, this month) follow ``tz``; weeks
    start on Sunday.
    """

    def __init__(
        self,
        repository: EntityRepository,
        ai_logger: AiLogger | None = None,
        *,
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._log = ai_logger or AiLogger(enabled=False)
        self._tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now_local(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self._tz)

    def period_start(self, metric: str) -> datetime:
        """Start of the calendar period for a completion metric, as naive UTC."""
        today = self._now_local().date()
        if metric == "tasks_completed_today":
            start = today
        elif metric == "tasks_completed_this_week":
            # isoweekday: Monday=1 .. Sunday=7
            start = today - timedelta(days=today.isoweekday() % 7)
        elif metric == "tasks_completed_this_month":
            start = today.replace(day=1)
        else:
            raise ValueError(f"{metric} has no calendar period")
        return _utc_naive(datetime.combine(start, time.min, tzinfo=self._tz))

    async def compute(
        self,
        user_id: str,
        metric: str,
        *,
        project_id: str | None = None,
        ai_log: AiLogger | None = None,
    ) -> dict[str, Any]:
        log = ai_log or self._log
        if metric not in METRICS:
            raise ToolValidationError(f"Unknown metric: {metric}")
        scope = {"projectId": project_id} if project_id else {}

        if metric.startswith("tasks_completed_"):
            since = self.period_start(metric)
            filters = ListFilters(status="done", project_id=project_id, completed_from=since)
            value = await self._repo.tasks.count(user_id, filters)
            log.log_query("task", {"metric": metric, "completedFrom": since.isoformat(), **scope}, value, "count")
            return {"metric": metric, "value": value, "since": since.isoformat(), **scope}

        if metric == "overdue_tasks":
            now = _utc_naive(self._now_local())
            filters = ListFilters(
                project_id=project_id,
                date_end=now,
                exclude_statuses=("done", "cancelled"),
            )
            count = await self._repo.tasks.count(user_id, filters)
            rows = await self._repo.tasks.list_filtered(user_id, filters, "dueDate", "asc", LIST_CAP)
            log.log_query("task", {"metric": metric, "dueBefore": now.isoformat(), **scope}, count, "count")
            return {
                "metric": metric,
                "count": count,
                "tasks": [
                    {
                        "id": t["id"],
                        "title": t["title"],
                        "dueDate": t["dueDate"],
                        "priority": t["priority"],
                        "status": t["status"],
                    }
                    for t in rows
                ],
                **scope,
            }

        if metric == "upcoming_events":
            now = _utc_naive(self._now_local())
            filters = ListFilters(
                project_id=project_id,
                date_start=now,
                date_end=now + UPCOMING_WINDOW,
            )
            count = await self._repo.events.count(user_id, filters)
            rows = await self._repo.events.list_filtered(user_id, filters, "startTime", "asc", LIST_CAP)
            log.log_query("event", {"metric": metric, "from": now.isoformat(), **scope}, count, "count")
            return {
                "metric": metric,
                "count": count,
                "events": [
                    {
                        "id": e["id"],
                        "title": e["title"],
                        "startTime": e["startTime"],
                        "endTime": e["endTime"],
                        "location": e["location"],
                    }
                    for e in rows
                ],
                **scope,
            }

        if metric == "project_progress":
            projects = await self._repo.projects.progress(user_id, project_id)
            log.log_query("project", {"metric": metric, **scope}, len(projects), "aggregate")
            return {"metric": metric, "projects": projects, **scope}

        column, keys = (
            ("priority", PRIORITIES) if metric == "tasks_by_priority" else ("status", sorted(TASK_STATUSES))
        )
        grouped = await self._repo.tasks.count_grouped(user_id, column, ListFilters(project_id=project_id))
        log.log_query("task", {"metric": metric, "groupBy": column, **scope}, len(grouped), "aggregate")
        breakdown = {key: grouped.get(key, 0) for key in keys}
        return {
            "metric": metric,
            "breakdown": breakdown,
            "total": sum(grouped.values()),
            **scope,
        }
