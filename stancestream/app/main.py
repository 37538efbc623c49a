"""
Entry point for the FastAPI debate backend.

This module constructs the FastAPI application and registers the debate,
cache, health and WebSocket routes. On startup it builds the service
container (stores, semantic cache, generation pipeline and turn
scheduler), bootstraps the MySQL schema when that backend is selected
and seeds the default agent profiles. On shutdown every running debate
is stopped and its loop awaited.

Debates run as background asyncio tasks on the scheduler. Their events
are pushed to clients over ``/ws/debate``; the REST routes start and
stop sessions and expose transcripts, profiles and cache metrics.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import cache as cache_routes
from .api import debate as debate_routes
from .api import health as health_routes
from .api import websocket as websocket_module
from .core.config import configure_logging, load_settings
from .core.db import init_db
from .core.errors import DebateServiceError, ErrorKind, SessionNotFoundError
from .debate.profiles import seed_profiles
from .services import Services, build_services

logger = logging.getLogger("debate_app")

_STATUS_BY_KIND = {
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVARIANT_VIOLATION: 500,
    ErrorKind.TRANSIENT: 503,
}


def error_status(exc: DebateServiceError) -> int:
    if isinstance(exc, SessionNotFoundError):
        return 404
    return _STATUS_BY_KIND.get(exc.kind, 500)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        services: Prebuilt service container. When omitted, one is built
            from the environment at startup.

    Returns:
        FastAPI: Configured application instance.
    """
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)
    configure_logging()

    settings = services.settings if services is not None else load_settings()
    app = FastAPI(title="StanceStream Debate Backend")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(debate_routes.router)
    app.include_router(cache_routes.router)
    app.include_router(health_routes.router)
    app.include_router(websocket_module.router)

    @app.exception_handler(DebateServiceError)
    async def debate_error_handler(request: Request, exc: DebateServiceError) -> JSONResponse:
        code = error_status(exc)
        headers = None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers = {"Retry-After": str(max(1, round(retry_after)))}
        if code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            headers=headers,
            content={
                "success": False,
                "error": str(exc),
                "code": exc.code,
                "details": exc.details,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.on_event("startup")
    async def startup_event() -> None:
        """Build the service container and seed the default agents."""
        container = services or build_services(settings)
        if container.settings.store_backend == "mysql":
            await init_db()
            await container.vector_store.purge_expired()
        await seed_profiles(container.profile_store)
        debate_routes.services = container
        cache_routes.services = container
        health_routes.services = container
        app.state.services = container
        logger.info("Debate backend ready (store=%s)", container.settings.store_backend)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        container = getattr(app.state, "services", None)
        if container is None:
            return
        await container.scheduler.shutdown()
        container.cache.clear_embeddings()

    return app


# Create a default application instance for uvicorn to discover.
app = create_app()
