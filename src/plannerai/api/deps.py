"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request

from plannerai.core.dispatcher import ToolDispatcher


def get_dispatcher(request: Request) -> ToolDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return dispatcher
