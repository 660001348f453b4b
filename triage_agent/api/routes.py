"""FastAPI route definitions for the worker-management API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from triage_agent.api.schemas import (
    ActiveWorkersResponse,
    HealthResponse,
    ProcessEmailResponse,
    StartWorkerRequest,
    StopWorkerRequest,
    WorkerResponse,
    WorkerStatusResponse,
)
from triage_agent.config import WORKER_START_TIMEOUT_SECONDS
from triage_agent.worker import WorkerState
from triage_agent.worker_manager import WorkerManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_manager(request: Request) -> WorkerManager:
    """Retrieve the worker manager built by the lifespan (see ``server.py``)."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return manager


async def _require_thread(manager: WorkerManager, thread_id: int) -> None:
    thread = await asyncio.to_thread(manager.agent.store.get_thread, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(http_request: Request):
    """Health check endpoint."""
    manager = getattr(http_request.app.state, "manager", None)
    active = len(manager.get_active_threads()) if manager is not None else 0
    return HealthResponse(active_workers=active)


@router.post("/workers/start", response_model=WorkerResponse)
async def start_worker(request: StartWorkerRequest, http_request: Request):
    """Start a worker for a thread and wait until its loop is running.

    If the worker does not reach ``running`` within
    ``WORKER_START_TIMEOUT_SECONDS`` it is failed and the request fails
    with 504.
    """
    manager = _get_manager(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    thread_id = request.thread_id
    await _require_thread(manager, thread_id)

    try:
        if request.only_if_not_active:
            worker = await manager.start_worker_for_thread_if_not_active(thread_id)
        else:
            worker = await manager.start_worker_for_thread(thread_id)
        state = await worker.wait_for_state(WorkerState.RUNNING, timeout=WORKER_START_TIMEOUT_SECONDS)
    except TimeoutError as e:
        reason = f"Worker did not reach running within {WORKER_START_TIMEOUT_SECONDS:.0f}s"
        logger.error("[%s] %s (thread %s)", request_id, reason, thread_id)
        await manager.fail_worker_for_thread(thread_id, reason)
        raise HTTPException(
            status_code=504,
            detail=f"Worker for thread {thread_id} did not start within "
                   f"{WORKER_START_TIMEOUT_SECONDS:.0f}s",
        ) from e
    except Exception as e:
        logger.exception("[%s] Error starting worker for thread %s", request_id, thread_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    if state is WorkerState.FAILED:
        raise HTTPException(
            status_code=500,
            detail=f"Worker for thread {thread_id} failed: {worker.last_error or 'unknown error'}",
        )
    return WorkerResponse(
        thread_id=thread_id,
        status="running" if state is WorkerState.RUNNING else "stopped",
        state=state.value,
        message=f"Worker for thread {thread_id} started",
    )


@router.post("/workers/stop/{thread_id}", response_model=WorkerResponse)
async def stop_worker(thread_id: int, http_request: Request, request: StopWorkerRequest | None = None):
    """Cooperatively stop the thread's worker after its current turn."""
    manager = _get_manager(http_request)
    reason = request.reason if request is not None else None
    stopped = await manager.stop_worker_for_thread(thread_id, reason)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"No worker for thread {thread_id}")
    return WorkerResponse(
        thread_id=thread_id,
        status="stopped",
        state=WorkerState.STOPPED.value,
        message=f"Worker for thread {thread_id} stopped",
    )


@router.post("/workers/force-stop/{thread_id}", response_model=WorkerResponse)
async def force_stop_worker(thread_id: int, http_request: Request):
    """Abandon the thread's worker immediately."""
    manager = _get_manager(http_request)
    stopped = await manager.force_stop_worker_for_thread(thread_id)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"No worker for thread {thread_id}")
    return WorkerResponse(
        thread_id=thread_id,
        status="stopped",
        state=WorkerState.STOPPED.value,
        message=f"Worker for thread {thread_id} force-stopped",
    )


@router.get("/workers/status/{thread_id}", response_model=WorkerStatusResponse)
async def worker_status(thread_id: int, http_request: Request):
    manager = _get_manager(http_request)
    return WorkerStatusResponse(thread_id=thread_id, status=manager.get_worker_status(thread_id))


@router.get("/workers/active", response_model=ActiveWorkersResponse)
async def active_workers(http_request: Request):
    manager = _get_manager(http_request)
    thread_ids = manager.get_active_threads()
    return ActiveWorkersResponse(thread_ids=thread_ids, count=len(thread_ids))


@router.post("/threads/{thread_id}/process", response_model=ProcessEmailResponse)
async def process_thread(thread_id: int, http_request: Request):
    """Run the reasoning loop once for the thread and return the draft.

    Blocks until the loop finishes; use ``/workers/start`` for background
    processing.
    """
    manager = _get_manager(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    await _require_thread(manager, thread_id)

    try:
        result = await manager.process_email(thread_id)
    except Exception as e:
        # Log the traceback server-side only.
        logger.exception("[%s] Error processing thread %s", request_id, thread_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ProcessEmailResponse(
        thread_id=thread_id,
        success=result.ok,
        draft=result.draft,
        actions=result.actions,
        error=result.error,
        turns=result.turns,
    )
