"""SOS Dispatch API -- Main Application Entry Point

Creates the FastAPI application, configures logging and CORS, registers
the API routers under the /api/v1 prefix, and mounts the Socket.IO ASGI
application for live tracking.

Run with::

    uvicorn sos_dispatch.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sos_dispatch.core.config import settings
from sos_dispatch.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging.

    Shutdown:
      - Let in-flight notification fan-outs finish.
      - Close the shared Redis client used by the realtime module.
    """
    setup_logging(settings.log_level, settings.log_json)
    logger.info("%s %s starting", settings.app_name, settings.app_version)

    yield

    from sos_dispatch.api.deps import shutdown_broadcaster
    from sos_dispatch.realtime.socketServer import close_redis

    await shutdown_broadcaster()
    try:
        await close_redis()
    except Exception:
        logger.exception("Error closing Redis on shutdown")


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness checks."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from sos_dispatch.api.routes import emergencies, providers  # noqa: E402

_prefix = settings.api_v1_prefix

app.include_router(emergencies.router, prefix=_prefix)
app.include_router(providers.router, prefix=_prefix)


# ---------------------------------------------------------------------------
# Mount Socket.IO ASGI application
# ---------------------------------------------------------------------------

from sos_dispatch.realtime.socketServer import socket_app  # noqa: E402

app.mount("/ws", socket_app)
