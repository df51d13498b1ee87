"""
DocVoice FastAPI Application

Main application factory and configuration.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from docvoice import __version__
from docvoice.config import settings
from docvoice.integrations.openai_realtime import OpenAIRealtimeClient
from docvoice.realtime.registry import SessionRegistry
from docvoice.realtime.tools import DocumentSearch, NullDocumentSearch

from .routes import health, realtime

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# Lifespan Management
# ══════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info(
        "Starting DocVoice API",
        version=__version__,
        environment=settings.app_env,
    )

    yield

    logger.info("Shutting down DocVoice API", active_sessions=len(app.state.registry))
    await app.state.openai_client.close()
    logger.info("DocVoice API shutdown complete")


# ══════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════


def create_app(
    document_search: DocumentSearch | None = None,
    openai_client: OpenAIRealtimeClient | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="DocVoice API",
        description="Voice conversations grounded in your documents",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.state.registry = SessionRegistry()
    app.state.openai_client = openai_client or OpenAIRealtimeClient()
    app.state.document_search = document_search or NullDocumentSearch()

    # ──────────────────────────────────────────────────────────
    # Middleware
    # ──────────────────────────────────────────────────────────

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing."""
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        logger.info(
            "Request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration, 2),
        )

        return response

    # ──────────────────────────────────────────────────────────
    # Routes
    # ──────────────────────────────────────────────────────────

    app.include_router(
        health.router,
        tags=["Health"],
    )

    api_prefix = f"/api/{settings.api_version}"

    app.include_router(
        realtime.router,
        prefix=f"{api_prefix}/realtime",
        tags=["Realtime"],
    )

    app.include_router(
        realtime.ws_router,
        prefix="/ws",
        tags=["Realtime"],
    )

    return app


# Create default app instance
app = create_app()
