"""FastAPI application: planner assistant tool dispatch."""

from __future__ import annotations

import logging
import secrets
import time
from collections import deque
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from plannerai.config import settings
from plannerai.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

VERSION = "0.1.0"
RATE_WINDOW_SECONDS = 60.0

from plannerai.api.routes import logs, tools
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.db.engine import close_db, get_session_factory, init_db
from plannerai.mcp import mcp_server


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    dispatcher = ToolDispatcher.from_settings(get_session_factory(), settings)
    app.state.dispatcher = dispatcher
    mcp_server.set_dispatcher(dispatcher)
    logger.info(
        "Planner assistant ready: %d tools, db trace %s",
        len(dispatcher.registry.names()),
        "on" if settings.db_logging_enabled else "off",
    )

    mcp_http_manager = mcp_server.create_http_session_manager()
    mcp_server.set_http_session_manager(mcp_http_manager)
    try:
        async with mcp_http_manager.run():
            yield
    finally:
        mcp_server.set_http_session_manager(None)
        mcp_server.set_dispatcher(None)
        app.state.dispatcher = None
        await close_db()


app = FastAPI(
    title="PlannerAI",
    description="Tool dispatch and entity resolution for a planning assistant",
    version=VERSION,
    lifespan=lifespan,
)

for _mcp_path in ("/mcp", "/mcp/"):
    app.add_route(
        _mcp_path,
        mcp_server.mcp_http_asgi_app,
        methods=["GET", "POST", "DELETE"],
        include_in_schema=False,
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Rate limiting ──────────────────────────────────────────────────
# Sliding window per caller: the planner user when the client names one,
# otherwise the client address.
_recent_requests: dict[str, deque[float]] = {}


def _caller_key(request: Request) -> str:
    user_id = request.headers.get(mcp_server.USER_ID_HEADER)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def _prune_windows(now: float) -> None:
    """Expire old timestamps and drop callers with nothing left in the window."""
    for key in list(_recent_requests):
        window = _recent_requests[key]
        while window and now - window[0] >= RATE_WINDOW_SECONDS:
            window.popleft()
        if not window:
            del _recent_requests[key]


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if settings.rate_limit <= 0 or not request.url.path.startswith("/api/"):
        return await call_next(request)
    now = time.monotonic()
    key = _caller_key(request)
    _prune_windows(now)
    window = _recent_requests.setdefault(key, deque())
    if len(window) >= settings.rate_limit:
        retry_after = max(1, int(RATE_WINDOW_SECONDS - (now - window[0])))
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many requests."},
            headers={"Retry-After": str(retry_after)},
        )
    window.append(now)
    return await call_next(request)


# ── API key auth ───────────────────────────────────────────────────
_bearer = HTTPBearer(auto_error=False)


async def verify_api_key(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
    if not settings.api_key:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


app.include_router(tools.router, prefix="/api/v1", tags=["tools"], dependencies=[Depends(verify_api_key)])
app.include_router(logs.router, prefix="/api/v1", tags=["logs"], dependencies=[Depends(verify_api_key)])


@app.get("/health")
async def health(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    return {
        "status": "ok",
        "version": VERSION,
        "dispatcher": "ready" if dispatcher is not None else "starting",
    }
