"""
FastAPI application factory for the Voxtier server.

This module creates the FastAPI app with:
- CORS configuration for the web client
- Store, object store and bootstrap lifecycle management
- Error mapping from domain exceptions to HTTP responses
- REST and WebSocket routes under /api/v1

Invariants:
    - Authorization denials never reveal whether the target exists
    - Transient failures are reported as 503 with retryable: true
    - The realtime hub is closed before the object store on shutdown
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..objects.object_store import InvalidObjectPathError, ObjectStoreUnavailableError
from ..store.acl import SYSTEM_ACTOR, AccessDeniedError
from ..store.canonical_store import IntegrityViolationError, StoreUnavailableError
from ..store.participants import ConsistencyError
from ..store.service import DataService
from .routes import router

logger = logging.getLogger(__name__)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccessDeniedError)
    async def access_denied(request: Request, exc: AccessDeniedError) -> JSONResponse:
        return JSONResponse({"error": "not permitted", "error_code": "PERMISSION_DENIED"}, status_code=403)

    @app.exception_handler(IntegrityViolationError)
    async def integrity_violation(request: Request, exc: IntegrityViolationError) -> JSONResponse:
        return JSONResponse({"error": str(exc), "error_code": "INTEGRITY_VIOLATION"}, status_code=409)

    @app.exception_handler(InvalidObjectPathError)
    async def invalid_path(request: Request, exc: InvalidObjectPathError) -> JSONResponse:
        return JSONResponse({"error": str(exc), "error_code": "INVALID_ARGUMENT"}, status_code=400)

    @app.exception_handler(ConsistencyError)
    async def consistency(request: Request, exc: ConsistencyError) -> JSONResponse:
        logger.error(
            "Consistency hazard during request",
            extra={"path": request.url.path, "conversation_id": exc.conversation_id},
        )
        return JSONResponse({"error": "internal error", "error_code": "INTERNAL"}, status_code=500)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        return JSONResponse(
            {"error": "store unavailable", "error_code": "UNAVAILABLE", "retryable": True},
            status_code=503,
        )

    @app.exception_handler(ObjectStoreUnavailableError)
    async def objects_unavailable(request: Request, exc: ObjectStoreUnavailableError) -> JSONResponse:
        return JSONResponse(
            {"error": "object store unavailable", "error_code": "UNAVAILABLE", "retryable": True},
            status_code=503,
        )


def create_app(service: DataService, config: ServerConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Data service the routes operate on
        config: Server configuration (defaults are used when omitted)
    """
    config = config or ServerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage store and object store lifecycle."""
        await service.store.initialize()
        await service.objects.connect()

        if config.bootstrap.admin_id:
            await service.ensure_admin(
                SYSTEM_ACTOR, config.bootstrap.admin_id, config.bootstrap.admin_name
            )

        logger.info("Voxtier API ready")
        yield

        service.hub.close()
        await service.objects.close()
        logger.info("Voxtier API stopped")

    app = FastAPI(
        title="Voxtier",
        description="Voice messaging for training directors, mentors and clients.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    _install_error_handlers(app)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return await service.health()

    return app
