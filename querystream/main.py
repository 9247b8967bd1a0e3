"""
querystream - Main Application

Streams the result of an arbitrary SQL query as gzip-compressed JSON
records:

    POST /query  {"query": "SELECT 1 AS a, 2 AS b"}

    {"columns":["a","b"]}
    {"rows":[[1,2]]}

Run with:
    querystream serve
    uvicorn querystream.main:create_app --factory --port 8080
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from querystream.adapters.base import ConnectionPool, CursorAdapter
from querystream.adapters.postgres_adapter import PostgresCursor, PostgresPool
from querystream.core.config import Settings, get_settings
from querystream.core.logging import configure_logging, request_id_var
from querystream.errors import install_error_handlers
from querystream.observability import StreamStats
from querystream.streaming import QueryResultStream, QueryStreamResponse, ResultStreamEncoder

logger = logging.getLogger(__name__)

CursorFactory = Callable[[ConnectionPool, str, int], CursorAdapter]


# =============================================================================
# REQUEST MODELS
# =============================================================================

class QueryRequest(BaseModel):
    """SQL query request; the text is executed verbatim."""
    model_config = ConfigDict(extra="ignore")

    query: str


# =============================================================================
# MIDDLEWARE
# =============================================================================

class RequestIdMiddleware:
    """
    Tag every request with an id for tracing and structured logging.

    Plain ASGI middleware, so streamed bodies pass through untouched.
    """

    header = b"x-request-id"

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = None
        for name, value in scope.get("headers", []):
            if name == self.header:
                request_id = value.decode("latin-1")
                break
        request_id = request_id or str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((self.header, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_pool(request: Request) -> ConnectionPool:
    return request.app.state.pool


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_stats(request: Request) -> StreamStats:
    return request.app.state.stats


def get_cursor_factory(request: Request) -> CursorFactory:
    return request.app.state.cursor_factory


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.post("/query", tags=["Query"])
def run_query(
    req: QueryRequest,
    pool: ConnectionPool = Depends(get_pool),
    settings: Settings = Depends(get_app_settings),
    stats: StreamStats = Depends(get_stats),
    open_cursor: CursorFactory = Depends(get_cursor_factory),
):
    """
    Execute a SQL query and stream its result set.

    Errors raised while opening the cursor (bad SQL, no connection) are
    reported with a status code. Once the response starts, failures can
    only truncate the body.
    """
    logger.info(f"Query received: {len(req.query)} chars")
    cursor = open_cursor(pool, req.query, settings.fetch_size)
    stream = QueryResultStream(
        cursor,
        encoder=ResultStreamEncoder(settings.gzip_level),
        batch_size=settings.batch_size,
        stats=stats,
    )
    return QueryStreamResponse(stream)


@router.get("/health", tags=["Health"])
def health(
    request: Request,
    pool: ConnectionPool = Depends(get_pool),
    stats: StreamStats = Depends(get_stats),
):
    """Liveness plus a round trip to the database."""
    database_ok = pool.health_check()
    body = {
        "status": "ok" if database_ok else "degraded",
        "time": datetime.now(timezone.utc).isoformat(),
        "version": request.app.version,
        "database": database_ok,
        "streams": stats.snapshot(),
    }
    return JSONResponse(body, status_code=200 if database_ok else 503)


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    pool: Optional[ConnectionPool] = None,
    cursor_factory: Optional[CursorFactory] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to settings loaded from the environment
        pool: Pre-built pool; when omitted a PostgresPool is opened on
              startup and closed on shutdown
        cursor_factory: Opens a cursor adapter for a query; defaults to
                        PostgresCursor.open
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_pool = None
        if app.state.pool is None:
            owned_pool = PostgresPool(
                settings.database_url,
                min_size=settings.pool_min_size,
                max_size=settings.pool_max_size,
                acquire_timeout=settings.pool_acquire_timeout,
            )
            owned_pool.connect()
            app.state.pool = owned_pool
        logger.info(f"{settings.app_name} {settings.app_version} ready")
        try:
            yield
        finally:
            if owned_pool is not None:
                owned_pool.close()
                app.state.pool = None

    app = FastAPI(
        title="querystream",
        version=settings.app_version,
        description="Streams SQL query results as compressed JSON records",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pool = pool
    app.state.stats = StreamStats()
    app.state.cursor_factory = cursor_factory or PostgresCursor.open

    install_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Error-Code"],
    )
    # Added last, so outermost: request ids also cover CORS responses
    app.add_middleware(RequestIdMiddleware)

    app.include_router(router)
    return app
