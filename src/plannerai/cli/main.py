"""Argument-based CLI entrypoint for the planner assistant."""

from __future__ import annotations

import argparse

from plannerai.cli.commands import logs, system, tools
from plannerai.logging_config import setup_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plannerai",
        description=(
            "PlannerAI CLI: list tools, dispatch tool calls, "
            "inspect and replay the AI trace, run the API."
        ),
    )
    subparsers = parser.add_subparsers(dest="command")

    tools.register(subparsers)
    logs.register(subparsers)
    system.register(subparsers)
    return parser


def main() -> None:
    setup_logging()
    parser = _build_parser()
    args = parser.parse_args()
    if not getattr(args, "command", None):
        parser.print_help()
        raise SystemExit(0)
    if args.command == "help":
        parser.print_help()
        raise SystemExit(0)

    handler = getattr(args, "_handler", None)
    if handler is None:
        parser.print_help()
        raise SystemExit(1)

    code = int(handler(args) or 0)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
