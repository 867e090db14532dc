"""FastAPI server for the dental booking backend.

Run with:
    uvicorn dental_booking.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from dental_booking.api.routes import router
from dental_booking.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from dental_booking.container import build_services

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the Dentally client, store, engine and post-call graph once.

    Shutdown: close every open voice channel, then the HTTP clients.
    """
    logger.info("Building booking services…")
    services = build_services()
    application.state.services = services
    logger.info("Booking services ready.")
    yield
    await services.voice.shutdown()
    services.close()
    logger.info("Booking services closed.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Dental Booking Backend",
    description=(
        "Availability search, multi-service slot pairing and booking into "
        "Dentally for the ElevenLabs voice receptionist."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header and prefixed
    to every log line the routes write for this request.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Dental Booking Backend",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/v1/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting dental booking API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "dental_booking.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
