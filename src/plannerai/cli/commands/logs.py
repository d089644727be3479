"""AI trace CLI commands: read stored logs and replay a conversation."""

from __future__ import annotations

import argparse

from plannerai.cli.commands.common import emit, get_user_id, run_async, with_dispatcher
from plannerai.core.ai_logger import DatabaseLogSink
from plannerai.core.exceptions import ReplayError
from plannerai.core.replay_engine import ReplayEngine
from plannerai.db.engine import get_session_factory


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    logs_cmd = subparsers.add_parser("logs", help="Show stored AI trace events")
    logs_cmd.add_argument("--user-id")
    logs_cmd.add_argument("--all-users", action="store_true")
    logs_cmd.add_argument("--conversation-id")
    logs_cmd.add_argument("--tool-name")
    logs_cmd.add_argument("--level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    logs_cmd.add_argument("--limit", type=int, default=50)
    logs_cmd.add_argument("--format", choices=["table", "json"], default="table")
    logs_cmd.set_defaults(_handler=cmd_logs)

    replay = subparsers.add_parser("replay", help="Replay a conversation's logged tool calls")
    replay.add_argument("conversation_id")
    replay.add_argument("--user-id")
    replay.add_argument("--target-conversation-id")
    replay.add_argument(
        "--include-mutations",
        action="store_true",
        help="Also replay create/update/delete calls (writes to live data)",
    )
    replay.add_argument("--format", choices=["table", "json"], default="table")
    replay.set_defaults(_handler=cmd_replay)


def cmd_logs(args: argparse.Namespace) -> int:
    return run_async(_cmd_logs(args))


async def _cmd_logs(args: argparse.Namespace) -> int:
    async def _run(_dispatcher):
        sink = DatabaseLogSink(get_session_factory())
        return await sink.fetch(
            user_id=None if args.all_users else get_user_id(args.user_id),
            conversation_id=args.conversation_id,
            tool_name=args.tool_name,
            level=args.level,
            limit=args.limit,
        )

    events = await with_dispatcher(_run)
    if args.format == "table":
        events = [
            {
                "timestamp": e["timestamp"],
                "level": e["level"],
                "message": e["message"],
                "conversationId": e["conversationId"],
                "executionTimeMs": e["executionTimeMs"],
            }
            for e in events
        ]
    emit({"events": events}, args.format)
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    return run_async(_cmd_replay(args))


async def _cmd_replay(args: argparse.Namespace) -> int:
    async def _run(dispatcher):
        sink = dispatcher.sink(DatabaseLogSink) or DatabaseLogSink(get_session_factory())
        return await ReplayEngine(dispatcher, sink).replay(
            get_user_id(args.user_id),
            args.conversation_id,
            target_conversation_id=args.target_conversation_id,
            include_mutations=args.include_mutations,
        )

    try:
        result = await with_dispatcher(_run)
    except ReplayError as e:
        print(f"replay failed: {e.message}")
        if e.hint:
            print(f"hint: {e.hint}")
        return 1

    payload = result.to_dict()
    if args.format == "table":
        payload["steps"] = [
            {
                "toolName": s["toolName"],
                "replayed": s["replayed"],
                "originalSuccess": s["originalSuccess"],
                "success": s["success"],
                "diverged": s["diverged"],
            }
            for s in payload["steps"]
        ]
        print(
            f"replayed {payload['replayed']}/{payload['calls']} calls "
            f"into {payload['replayConversationId']} ({payload['diverged']} diverged)"
        )
    emit(payload, args.format)
    return 1 if payload["diverged"] else 0
