"""Typed response/request shapes for the PlannerAI REST SDK."""

from __future__ import annotations

from typing import Any, Literal, TypedDict


class ToolSchema(TypedDict):
    name: str
    description: str
    parameters: dict[str, Any]


class ToolListResponse(TypedDict):
    tools: list[dict[str, Any]]
    count: int


class ToolErrorPayload(TypedDict, total=False):
    kind: Literal[
        "validation_error",
        "not_found",
        "ambiguous_match",
        "unauthorized",
        "execution_error",
    ]
    message: str
    candidates: list[dict[str, str]]
    hint: str


class ToolCallResultPayload(TypedDict, total=False):
    success: bool
    data: Any
    error: ToolErrorPayload


class TurnCall(TypedDict, total=False):
    toolName: str
    parameters: dict[str, Any]


class TurnResponse(TypedDict):
    results: list[ToolCallResultPayload]
    count: int


class LogEventPayload(TypedDict, total=False):
    timestamp: str
    level: str
    message: str
    context: dict[str, Any]
    executionTimeMs: float


class LogsResponse(TypedDict, total=False):
    events: list[LogEventPayload]
    count: int
    source: str
    failedWrites: int
