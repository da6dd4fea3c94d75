"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from wamux.config import Settings
from wamux.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from wamux.observability.logging import get_logger
from wamux.sessions.connector import load_connector
from wamux.sessions.registry import InvalidSessionIdError, SessionRegistry

from .routers import public
from .routes import chats, messages, sessions

logger = get_logger(__name__)


def build_registry(settings: Settings) -> SessionRegistry:
    """Build the production registry from settings.

    Raises:
        RuntimeError: If WA_CONNECTOR is not configured.
    """
    if not settings.connector:
        raise RuntimeError("WA_CONNECTOR not configured (expected 'module:attribute')")
    connector = load_connector(settings.connector, settings)
    return SessionRegistry(settings, connector)


def create_app(
    registry: SessionRegistry | None = None,
    settings: Settings | None = None,
    *,
    restore_on_startup: bool = True,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        registry: Pre-built registry (tests). Built from settings on startup
                  when None.
        settings: Explicit settings. Read from the environment when None.
        restore_on_startup: Restore persisted sessions when the app starts.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = registry.settings if registry is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "registry", None) is None:
            app.state.registry = build_registry(settings)
        if restore_on_startup:
            await app.state.registry.restore_all()
        logger.info("service started")
        try:
            yield
        finally:
            await app.state.registry.shutdown()
            logger.info("service stopped")

    app = FastAPI(
        title="wamux",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.registry = registry

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    @app.exception_handler(InvalidSessionIdError)
    async def invalid_session_id_handler(request: Request, exc: InvalidSessionIdError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(public.router)
    app.include_router(sessions.router)
    app.include_router(messages.router)
    app.include_router(chats.router)

    # Captured media (voice notes, images, PDFs)
    settings.media_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=settings.media_dir), name="media")

    return app
