"""FastAPI server for the booking autonomy runtime.

Run with:
    uvicorn autonomy.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from autonomy.api.routes import router
from autonomy.config import CORS_ORIGINS, SEED_DEMO_DATA, SERVER_HOST, SERVER_PORT
from autonomy.demo import seed_demo
from autonomy.orchestrator.runtime import build_in_memory_orchestrator

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: start / stop the orchestrator ──────────────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator once, keep it in app state, drain it on exit."""
    logger.info("Starting autonomy runtime…")
    orchestrator = build_in_memory_orchestrator()
    orchestrator.start()
    if SEED_DEMO_DATA:
        seed_demo(orchestrator)
    application.state.orchestrator = orchestrator
    logger.info("Autonomy runtime ready.")
    yield
    orchestrator.shutdown()
    orchestrator.ctx.metrics.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Booking Autonomy Runtime",
    description=(
        "Event-driven orchestration for a scheduling service: policy-gated "
        "jobs, reminders and compliant outbound SMS."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (operator dashboard) ────────────────────────────────────────
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
    """Attach a request ID to every request and echo it as ``X-Request-ID``."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Booking Autonomy Runtime",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "status": "/api/autonomy/status",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting autonomy API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "autonomy.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
