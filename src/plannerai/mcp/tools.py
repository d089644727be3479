"""MCP tool definitions, generated from the tool registry."""

from __future__ import annotations

from typing import Any

from mcp.types import Tool

from plannerai.core.tool_registry import ToolRegistry, registry


def build_tool_definitions(tools: ToolRegistry = registry) -> list[Tool]:
    return [
        Tool(
            name=spec.name,
            description=spec.description,
            inputSchema=spec.input_schema,
        )
        for spec in tools.specs()
    ]


TOOL_DEFINITIONS: list[Tool] = build_tool_definitions()


def export_tool_schemas(tools: ToolRegistry = registry) -> list[dict[str, Any]]:
    """``[{name, description, parameters}]`` for every registered tool."""
    return tools.export_schemas()


def export_function_catalog(tools: ToolRegistry = registry) -> list[dict[str, Any]]:
    """Tool schemas wrapped in the chat-completions function-calling shape."""
    return [{"type": "function", "function": schema} for schema in tools.export_schemas()]
