"""REST routes for the tool catalog and tool dispatch."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from plannerai.api.deps import get_dispatcher
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.core.types import ToolCallRequest
from plannerai.mcp.tools import export_function_catalog, export_tool_schemas

router = APIRouter()


class TurnCall(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class TurnRequest(BaseModel):
    """All tool calls emitted by one model turn, run in order."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str = ""
    conversation_id: str = ""
    calls: list[TurnCall] = Field(min_length=1, max_length=50)


@router.get("/tools")
async def list_tools(
    format: str = Query("plain", pattern="^(plain|function)$"),
):
    tools = export_function_catalog() if format == "function" else export_tool_schemas()
    return {"tools": tools, "count": len(tools)}


@router.post("/tools/dispatch")
async def dispatch_tool(
    body: ToolCallRequest,
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    result = await dispatcher.dispatch(body)
    return result.to_dict()


@router.post("/tools/dispatch-turn")
async def dispatch_turn(
    body: TurnRequest,
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    results = await dispatcher.dispatch_turn(
        [
            ToolCallRequest(
                tool_name=call.tool_name,
                parameters=call.parameters,
                user_id=body.user_id,
                conversation_id=body.conversation_id,
            )
            for call in body.calls
        ]
    )
    return {"results": [r.to_dict() for r in results], "count": len(results)}
