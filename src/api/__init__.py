"""
REST API Layer for the Autopilot service.

Provides:
- FastAPI application with CORS middleware
- Profile endpoints under the /api/v1 prefix
- Exception handlers mapping engine errors to the response envelope
- Root-level health check for container probes
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.routes import router
from src.api.schemas import error_response
from src.config.settings import get_settings
from src.lib.errors import INTERNAL_ERROR, classify_exception
from src.lib.exceptions import AutopilotException
from src.services.behavior.engine import BehavioralEngine, build_engine

logger = logging.getLogger(__name__)

_ALLOWED_HEADERS: list[str] = [
    "Authorization",
    "Content-Type",
    "Accept",
    "X-Request-ID",
]


def create_app(engine: BehavioralEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Engine to serve; built from settings when omitted

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Autopilot",
        description="Behavioral intervention engine for spending patterns",
        version="0.1.0",
    )
    app.state.engine = engine if engine is not None else build_engine()

    # -------------------------------------------------------------------------
    # Exception handlers
    # -------------------------------------------------------------------------
    @app.exception_handler(AutopilotException)
    async def autopilot_exception_handler(
        request: Request, exc: AutopilotException,
    ) -> JSONResponse:
        code, status = classify_exception(exc)
        if status >= 500:
            logger.error("%s on %s %s: %s", code, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status,
            content=error_response(code, exc.message, exc.details or None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception,
    ) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s", request.method, request.url.path,
        )
        return JSONResponse(status_code=500, content=error_response(INTERNAL_ERROR))

    # -------------------------------------------------------------------------
    # CORS Middleware
    # -------------------------------------------------------------------------
    # Configured via AUTOPILOT_CORS_ORIGINS (comma-separated). Empty = no cross-origin requests.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=_ALLOWED_HEADERS,
    )
    if settings.cors_origins:
        logger.info("CORS enabled for origins: %s", list(settings.cors_origins))

    app.include_router(router)

    @app.get("/health")
    async def root_health_check() -> dict[str, str]:
        """Root health check for infrastructure probes."""
        return {"status": "ok"}

    return app


__all__ = ["create_app", "router"]
