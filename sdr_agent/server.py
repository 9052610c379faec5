"""FastAPI server: WhatsApp webhook, reactivation triggers and local chat.

Run with:
    python -m sdr_agent.server
    uvicorn sdr_agent.server:app --host 0.0.0.0 --port 8000

Replies are not produced here.  Webhook messages are buffered per contact
and published to the work queue; ``python -m sdr_agent.worker`` consumes
them.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from sdr_agent.api.routes import dashboard_router, reactivation_router, router, webhook_router
from sdr_agent.bootstrap import build_components
from sdr_agent.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from sdr_agent.services.debounce import DebounceCoalescer
from sdr_agent.services.metrics import metrics
from sdr_agent.services.offline_recovery import OfflineRecovery
from sdr_agent.services.work_queue import WorkQueue

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

SERVICE_NAME = "WhatsApp SDR Agent"
VERSION = "1.0.0"


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the components once and keep them on ``app.state``.

    On shutdown the debounce buffer is drained before the queue closes so
    the last fragments a contact typed are still published.
    """
    components = build_components()
    queue = WorkQueue()
    await queue.connect()
    coalescer = DebounceCoalescer(queue.publish)

    application.state.components = components
    application.state.queue = queue
    application.state.coalescer = coalescer
    application.state.recovery = OfflineRecovery(components.whatsapp, components.store, queue)
    logger.info("Server ready.")
    yield

    logger.info("Shutting down: draining %d buffered contact(s)", coalescer.pending_count)
    await coalescer.drain()
    await queue.close()
    components.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title=SERVICE_NAME,
    description="Qualifies WhatsApp leads and books demo meetings.",
    version=VERSION,
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
    """Attach a request ID (echoed or generated) for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(webhook_router, prefix="/webhook")
app.include_router(reactivation_router, prefix="/reactivation")
app.include_router(dashboard_router, prefix="/api/dashboard")
app.include_router(router, prefix="/api")


@app.get("/")
async def root(request: Request):
    """Service info, including the work queue status."""
    queue = getattr(request.app.state, "queue", None)
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "docs": "/docs",
        "health": "/api/health",
        "queue": await queue.status() if queue else {"connected": False},
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting %s on %s:%d", SERVICE_NAME, SERVER_HOST, SERVER_PORT)
    uvicorn.run("sdr_agent.server:app", host=SERVER_HOST, port=SERVER_PORT)
