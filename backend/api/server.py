# api/server.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - FASTAPI SERVER
# ============================================================================
# Webhook reconciliation, checkout initiation and health endpoints
# ============================================================================

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import Settings, settings as default_settings
from observability import configure_logging

# Configure before the modules below bind their loggers
configure_logging(default_settings.LOG_LEVEL, default_settings.LOG_FORMAT)

from api import checkout, webhooks
from api.deps import ServiceContainer
from tasks.stale_sessions import stale_session_loop

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    services: ServiceContainer = app.state.services
    config = services.settings
    logger.info("server_starting", version=VERSION, base_url=config.PUBLIC_BASE_URL)

    stale_task = None
    if config.STALE_PROCESSING_TIMEOUT_SECONDS > 0:
        stale_task = asyncio.create_task(
            stale_session_loop(
                services.store,
                config.STALE_PROCESSING_TIMEOUT_SECONDS,
                config.STALE_CHECK_INTERVAL_SECONDS,
                guard=services.guard,
            )
        )

    yield

    logger.info("server_shutting_down")
    if stale_task:
        stale_task.cancel()
        with suppress(asyncio.CancelledError):
            await stale_task
    await services.close()


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title="Cayman Mindbody Bridge",
        description="Reconciles Cayman Gateway payments with Mindbody sales",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services or ServiceContainer(settings)
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers."""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)

    @app.get("/")
    async def root():
        return {"service": "cayman-mindbody-bridge", "status": "ok", "version": VERSION}

    app.include_router(webhooks.router)
    app.include_router(checkout.router)
    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_level=default_settings.LOG_LEVEL.lower(),
    )
