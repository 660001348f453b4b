"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from triage_agent.models import AgentAction, DraftResponse


class StartWorkerRequest(BaseModel):
    """Request to start a worker for a thread."""

    thread_id: int = Field(..., ge=1, description="Thread to triage")
    only_if_not_active: bool = Field(
        default=False,
        description="Reuse the thread's active worker instead of replacing it",
    )


class StopWorkerRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class WorkerResponse(BaseModel):
    """Worker lifecycle snapshot returned by start/stop."""

    thread_id: int
    status: Literal["running", "stopped", "not_found"]
    state: str | None = Field(default=None, description="Internal worker state, when known")
    message: str = ""


class WorkerStatusResponse(BaseModel):
    thread_id: int
    status: Literal["running", "stopped", "not_found"]


class ActiveWorkersResponse(BaseModel):
    thread_ids: list[int]
    count: int


class ProcessEmailResponse(BaseModel):
    """Result of running the reasoning loop once for a thread."""

    thread_id: int
    success: bool
    draft: DraftResponse | None = None
    actions: list[AgentAction] = Field(default_factory=list)
    error: str | None = None
    turns: int = 0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "support-triage-agent"
    active_workers: int = 0
