"""Shared helpers for CLI commands."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from typing import Any

from plannerai.config import settings
from plannerai.core.ai_logger import DatabaseLogSink
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.db.engine import close_db, get_session_factory, init_db

DEFAULT_USER = "cli-user"
ROW_KEYS = ("tools", "events", "steps", "results")
MAX_CELL_WIDTH = 60


def get_user_id(explicit: str | None = None) -> str:
    return explicit or os.environ.get("PA_USER_ID") or DEFAULT_USER


def run_async(coro: Awaitable[int | None]) -> int:
    """Run a command coroutine, then dispose of the engine it opened."""

    async def _runner() -> int | None:
        try:
            return await coro
        finally:
            await close_db()

    return int(asyncio.run(_runner()) or 0)


async def with_dispatcher(fn: Callable[[ToolDispatcher], Awaitable[Any]]) -> Any:
    """Call ``fn`` with a dispatcher built from settings.

    Pending trace writes are flushed before returning so a short-lived CLI
    process does not drop them when the engine is closed.
    """
    await init_db()
    dispatcher = ToolDispatcher.from_settings(get_session_factory(), settings)
    try:
        return await fn(dispatcher)
    finally:
        db_sink = dispatcher.sink(DatabaseLogSink)
        if db_sink is not None:
            await db_sink.flush()


def parse_json_arg(value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    parsed = json.loads(value)
    if not isinstance(parsed, dict):
        raise ValueError("parameters must be a JSON object")
    return parsed


def emit(payload: Any, fmt: str = "table") -> None:
    if fmt == "json":
        print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
        return
    if isinstance(payload, list):
        print_table(payload)
        return
    if not isinstance(payload, dict):
        print(payload)
        return

    rows_key = next((k for k in ROW_KEYS if isinstance(payload.get(k), list)), None)
    if rows_key is None:
        for key, value in payload.items():
            print(f"{key}: {cell(value, width=None)}")
        return
    print_table(payload[rows_key])


def cell(value: Any, width: int | None = MAX_CELL_WIDTH) -> str:
    if value is None:
        text = "-"
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, ensure_ascii=False, default=str, separators=(",", ":"))
    else:
        text = str(value)
    if width is not None and len(text) > width:
        text = text[: width - 3] + "..."
    return text


def print_table(rows: list[dict[str, Any]]) -> None:
    if not rows:
        print("(no rows)")
        return
    columns = list(dict.fromkeys(key for row in rows for key in row))
    rendered = [{col: cell(row.get(col)) for col in columns} for row in rows]
    widths = {col: max(len(col), *(len(r[col]) for r in rendered)) for col in columns}

    print("  ".join(col.ljust(widths[col]) for col in columns))
    print("  ".join("-" * widths[col] for col in columns))
    for row in rendered:
        print("  ".join(row[col].ljust(widths[col]) for col in columns).rstrip())
