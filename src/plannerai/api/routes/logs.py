"""REST routes for the AI trace: log viewer and conversation replay."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from plannerai.api.deps import get_dispatcher
from plannerai.core.ai_logger import DatabaseLogSink, LogLevel, MemoryLogSink
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.core.exceptions import ReplayError
from plannerai.core.replay_engine import ReplayEngine

router = APIRouter()


class ReplayRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    conversation_id: str
    target_conversation_id: str | None = None
    include_mutations: bool = False


@router.get("/logs")
async def list_logs(
    tool_name: str | None = None,
    conversation_id: str | None = None,
    user_id: str | None = None,
    level: LogLevel | None = None,
    source: str = Query("memory", pattern="^(memory|db)$"),
    limit: int = Query(100, ge=1, le=1000),
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    if source == "db":
        sink = dispatcher.sink(DatabaseLogSink)
        if sink is None:
            raise HTTPException(status_code=404, detail="Database logging is disabled")
        await sink.flush()
        events = await sink.fetch(
            user_id=user_id,
            conversation_id=conversation_id,
            tool_name=tool_name,
            level=level.value if level else None,
            limit=limit,
        )
        return {"events": events, "count": len(events), "source": source}

    memory = dispatcher.sink(MemoryLogSink)
    if memory is None:
        raise HTTPException(status_code=404, detail="In-memory log buffer is disabled")
    events = [
        e.to_dict()
        for e in memory.query(
            tool_name=tool_name,
            conversation_id=conversation_id,
            user_id=user_id,
            level=level,
            limit=limit,
        )
    ]
    return {
        "events": events,
        "count": len(events),
        "source": source,
        "failedWrites": dispatcher.ai_logger.failed_writes,
    }


@router.post("/replay")
async def replay_conversation(
    body: ReplayRequest,
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
):
    sink = dispatcher.sink(DatabaseLogSink)
    if sink is None:
        raise HTTPException(status_code=400, detail="Replay needs PA_DB_LOGGING_ENABLED=true")
    engine = ReplayEngine(dispatcher, sink)
    try:
        result = await engine.replay(
            body.user_id,
            body.conversation_id,
            target_conversation_id=body.target_conversation_id,
            include_mutations=body.include_mutations,
        )
    except ReplayError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    return result.to_dict()
