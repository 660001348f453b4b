"""FastAPI server for the support triage agent.

Run with:
    uv run uvicorn triage_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from triage_agent.agent import EmailAgent
from triage_agent.api.routes import router
from triage_agent.config import (
    CORS_ORIGINS,
    DATABASE_PATH,
    KNOWLEDGE_BASE_DIR,
    OPENAI_API_KEY,
    SERVER_HOST,
    SERVER_PORT,
    VECTOR_STORE_KEY,
    WorkerSettings,
)
from triage_agent.services.metrics import metrics
from triage_agent.services.store import SupportStore
from triage_agent.tools.knowledge import build_knowledge_search
from triage_agent.worker_manager import WorkerManager

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the store, knowledge search, agent and worker manager once.

    Shutdown stops every worker before the store is closed.
    """
    logger.info("Opening store at %s", DATABASE_PATH)
    store = SupportStore(DATABASE_PATH)
    knowledge = build_knowledge_search(KNOWLEDGE_BASE_DIR, OPENAI_API_KEY, VECTOR_STORE_KEY)
    agent = EmailAgent(store, knowledge)
    manager = WorkerManager(agent, WorkerSettings())

    application.state.store = store
    application.state.manager = manager
    logger.info("Agent ready.")
    yield

    logger.info("Shutting down: stopping workers…")
    await manager.stop_all_workers()
    metrics.flush()
    store.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Support Triage Agent",
    description=(
        "AI-assisted support email triage: per-thread workers that tag emails, "
        "consult the knowledge base and draft replies for human review."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the admin frontend) ─────────────────────────────
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

    The ID is echoed back in the ``X-Request-ID`` response header.
    """
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
        "service": "Support Triage Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting support triage API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "triage_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
