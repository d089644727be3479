"""Tool catalog and one-shot dispatch CLI commands."""

from __future__ import annotations

import argparse

from plannerai.cli.commands.common import emit, get_user_id, parse_json_arg, run_async, with_dispatcher
from plannerai.core.types import ToolCallRequest
from plannerai.mcp.tools import export_function_catalog, export_tool_schemas


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    tools_cmd = subparsers.add_parser("tools", help="List registered tools")
    tools_cmd.add_argument(
        "--schema",
        action="store_true",
        help="Print full parameter schemas (function-calling shape)",
    )
    tools_cmd.add_argument("--format", choices=["table", "json"], default="table")
    tools_cmd.set_defaults(_handler=cmd_tools)

    dispatch = subparsers.add_parser("dispatch", help="Dispatch one tool call")
    dispatch.add_argument("tool_name")
    dispatch.add_argument("--params", default="{}", help="JSON object of tool parameters")
    dispatch.add_argument("--user-id")
    dispatch.add_argument("--conversation-id", default="cli")
    dispatch.add_argument("--format", choices=["table", "json"], default="json")
    dispatch.set_defaults(_handler=cmd_dispatch)


def cmd_tools(args: argparse.Namespace) -> int:
    if args.schema:
        emit(export_function_catalog(), "json")
        return 0
    rows = [
        {"name": t["name"], "description": t["description"]}
        for t in export_tool_schemas()
    ]
    emit({"tools": rows, "count": len(rows)}, args.format)
    return 0


def cmd_dispatch(args: argparse.Namespace) -> int:
    try:
        params = parse_json_arg(args.params) or {}
    except ValueError as e:
        print(f"invalid --params: {e}")
        return 2
    return run_async(_cmd_dispatch(args, params))


async def _cmd_dispatch(args: argparse.Namespace, params: dict) -> int:
    async def _run(dispatcher):
        return await dispatcher.dispatch(
            ToolCallRequest(
                tool_name=args.tool_name,
                parameters=params,
                user_id=get_user_id(args.user_id),
                conversation_id=args.conversation_id,
            )
        )

    result = await with_dispatcher(_run)
    emit(result.to_dict(), args.format)
    return 0 if result.success else 1
