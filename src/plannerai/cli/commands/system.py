"""Process and environment CLI commands: serve, init, config, health."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys

import httpx
from sqlalchemy.engine import make_url

from plannerai.cli.commands.common import emit, run_async
from plannerai.config import settings
from plannerai.sdk import PlannerClient

SECRET_SETTINGS = ("api_key",)


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    help_cmd = subparsers.add_parser("help", help="Show help")
    help_cmd.set_defaults(_handler=lambda _args: 0)

    api_cmd = subparsers.add_parser("api", help="Serve the REST API and MCP endpoint")
    api_cmd.add_argument("--host", default=settings.host)
    api_cmd.add_argument("--port", type=int, default=settings.port)
    api_cmd.add_argument("--reload", action="store_true")
    api_cmd.add_argument(
        "--db-logging",
        action="store_true",
        help="Persist the AI trace so conversations can be replayed",
    )
    api_cmd.set_defaults(_handler=cmd_api)

    init_cmd = subparsers.add_parser("init", help="Create entity and trace tables")
    init_cmd.add_argument("--format", choices=["table", "json"], default="table")
    init_cmd.set_defaults(_handler=cmd_init)

    config_cmd = subparsers.add_parser("config", help="Show effective settings (secrets masked)")
    config_cmd.add_argument("--format", choices=["table", "json"], default="table")
    config_cmd.set_defaults(_handler=cmd_config)

    health_cmd = subparsers.add_parser("health", help="Check a running API and its tool catalog")
    health_cmd.add_argument("--base-url", default=f"http://{settings.host}:{settings.port}")
    health_cmd.add_argument("--api-key", default=settings.api_key or None)
    health_cmd.add_argument("--format", choices=["table", "json"], default="table")
    health_cmd.set_defaults(_handler=cmd_health)


def masked_database_url(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


def effective_settings() -> dict:
    values = settings.model_dump()
    for key in SECRET_SETTINGS:
        if values.get(key):
            values[key] = "***"
    values["database_url"] = masked_database_url(values["database_url"])
    return values


def cmd_api(args: argparse.Namespace) -> int:
    env = dict(os.environ)
    if args.db_logging:
        env["PA_DB_LOGGING_ENABLED"] = "true"
    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "plannerai.api.app:app",
        "--host",
        args.host,
        "--port",
        str(args.port),
    ]
    if args.reload:
        cmd.append("--reload")
    return subprocess.call(cmd, env=env)


def cmd_init(args: argparse.Namespace) -> int:
    return run_async(_cmd_init(args))


async def _cmd_init(args: argparse.Namespace) -> int:
    from plannerai.db.engine import init_db
    from plannerai.db.models import Base

    await init_db()
    emit(
        {
            "database": masked_database_url(settings.database_url),
            "tables": sorted(Base.metadata.tables),
        },
        args.format,
    )
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    emit(effective_settings(), args.format)
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    report: dict = {"url": args.base_url}
    try:
        with PlannerClient(args.base_url, api_key=args.api_key, timeout=3.0) as client:
            report.update(client.health())
            report["tools"] = client.list_tools()["count"]
    except httpx.HTTPStatusError as exc:
        report.update(status="error", detail=str(exc))
        if exc.response.status_code == 401:
            report["hint"] = "Pass --api-key or set PA_API_KEY"
    except httpx.HTTPError as exc:
        report.update(status="error", detail=str(exc))

    emit(report, args.format)
    return 0 if report.get("status") == "ok" else 1
