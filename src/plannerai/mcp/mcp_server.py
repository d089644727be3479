"""MCP server for the planner tools, exposed over Streamable HTTP (mounted into FastAPI)."""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import Any

from plannerai.logging_config import setup_logging

setup_logging()

from mcp.server import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.server.transport_security import TransportSecuritySettings
from mcp.types import TextContent, Tool

from plannerai.core.dispatcher import ToolDispatcher
from plannerai.core.types import ToolCallRequest
from plannerai.mcp.tools import TOOL_DEFINITIONS

logger = logging.getLogger("plannerai.mcp")

USER_ID_HEADER = "x-user-id"
CONVERSATION_ID_HEADER = "x-conversation-id"
INTERNAL_ERROR_MESSAGE = "Internal error while running the tool"

app = Server("plannerai")

_dispatcher: ToolDispatcher | None = None
_http_session_manager: StreamableHTTPSessionManager | None = None


def _scope_header(scope: dict[str, Any], name: str) -> str | None:
    header_key = name.lower().encode()
    for key, value in scope.get("headers", []):
        if key.lower() == header_key:
            return value.decode()
    return None


def _request_header(name: str) -> str | None:
    try:
        req = app.request_context.request
    except LookupError:
        return None
    if req is None:
        return None
    return req.headers.get(name)


def request_identity() -> tuple[str, str]:
    """(user_id, conversation_id) for the current MCP request.

    The conversation defaults to the MCP session so pronouns carry across
    calls made over one session.
    """
    user_id = _request_header(USER_ID_HEADER) or ""
    conversation_id = (
        _request_header(CONVERSATION_ID_HEADER) or _request_header(MCP_SESSION_ID_HEADER) or ""
    )
    return user_id, conversation_id


def set_dispatcher(dispatcher: ToolDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def create_http_session_manager() -> StreamableHTTPSessionManager:
    # DNS rebinding protection can be enabled later with explicit host/origin config.
    security = TransportSecuritySettings(enable_dns_rebinding_protection=False)
    return StreamableHTTPSessionManager(
        app=app,
        stateless=False,
        json_response=False,
        security_settings=security,
    )


def set_http_session_manager(manager: StreamableHTTPSessionManager | None) -> None:
    global _http_session_manager
    _http_session_manager = manager


async def _send_json(send, status: HTTPStatus, payload: dict | None = None) -> None:
    body = json.dumps(payload).encode() if payload is not None else b""
    headers = [(b"content-type", b"application/json")] if payload is not None else []
    await send({"type": "http.response.start", "status": int(status), "headers": headers})
    await send({"type": "http.response.body", "body": body})


class MCPHTTPASGIApp:
    """ASGI wrapper for the MCP Streamable HTTP session manager."""

    async def __call__(self, scope, receive, send) -> None:
        if scope.get("type") != "http":
            await _send_json(send, HTTPStatus.NOT_FOUND)
            return

        manager = _http_session_manager
        if manager is None:
            await _send_json(send, HTTPStatus.SERVICE_UNAVAILABLE, {"error": "MCP HTTP not initialized"})
            return

        method = scope.get("method", "").upper()
        session_id = _scope_header(scope, MCP_SESSION_ID_HEADER)
        try:
            await manager.handle_request(scope, receive, send)
        finally:
            if method == "DELETE" and session_id and _dispatcher is not None:
                user_id = _scope_header(scope, USER_ID_HEADER) or ""
                _dispatcher.tracker.forget(user_id, session_id)


mcp_http_asgi_app = MCPHTTPASGIApp()


@app.list_tools()
async def list_tools() -> list[Tool]:
    """Return all registered planner tools."""
    return TOOL_DEFINITIONS


@app.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Route a tool call through the dispatcher and return its JSON result."""
    if _dispatcher is None:
        return [TextContent(type="text", text=json.dumps({"error": "Dispatcher not initialized"}))]
    user_id, conversation_id = request_identity()
    try:
        result = await _dispatcher.dispatch(
            ToolCallRequest(
                tool_name=name,
                parameters=arguments or {},
                user_id=user_id,
                conversation_id=conversation_id,
            )
        )
        return [TextContent(type="text", text=json.dumps(result.to_dict(), default=str))]
    except Exception:  # Intentional catch-all: MCP protocol boundary
        logger.exception("Tool %s failed", name)
        error = {"kind": "execution_error", "message": INTERNAL_ERROR_MESSAGE}
        return [TextContent(type="text", text=json.dumps({"success": False, "error": error}))]
