"""Process-wide registry of per-thread workers.

``WorkerManager`` is constructed once by the application (see
``server.lifespan``) and passed to whoever needs it.  It guarantees at most
one live worker per thread:

* all map mutations go through its methods,
* starts and cooperative stops for one thread are serialised by a
  per-thread ``asyncio.Lock``,
* overlapping "start if not active" calls share one pending start task.

Each started worker gets a reaper task that consumes its event stream, logs
every transition and drops the worker from the map once it reaches
``stopped`` or ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Literal

from triage_agent.agent import EmailAgent, RunResult
from triage_agent.config import WorkerSettings
from triage_agent.worker import Worker, WorkerEvent, WorkerState

logger = logging.getLogger(__name__)

WorkerStatus = Literal["running", "stopped", "not_found"]

# Externally, in-flight states read as running and everything else as stopped;
# error details are only available through events and logs.
_STATUS_BY_STATE: dict[WorkerState, WorkerStatus] = {
    WorkerState.STARTING: "running",
    WorkerState.RUNNING: "running",
    WorkerState.STOPPING: "running",
    WorkerState.IDLE: "stopped",
    WorkerState.ERROR: "stopped",
    WorkerState.STOPPED: "stopped",
    WorkerState.FAILED: "stopped",
}


class WorkerManager:
    """Maps thread id to its active ``Worker``."""

    def __init__(self, agent: EmailAgent, settings: WorkerSettings | None = None) -> None:
        self._agent = agent
        self._settings = settings or WorkerSettings()
        self._workers: dict[int, Worker] = {}
        self._starting: dict[int, asyncio.Task[Worker]] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reapers: set[asyncio.Task] = set()

    @property
    def agent(self) -> EmailAgent:
        return self._agent

    # ── Start ────────────────────────────────────────────────────────

    async def start_worker_for_thread(self, thread_id: int) -> Worker:
        """Start a fresh worker, stopping any existing one for the thread first."""
        async with self._locks[thread_id]:
            existing = self._workers.get(thread_id)
            if existing is not None:
                logger.info("Replacing worker for thread %s (state %s)", thread_id, existing.state.value)
                await existing.stop("replaced by a new worker")
                self._forget(thread_id, existing)

            worker = Worker(thread_id, self._agent, self._settings)
            events = worker.subscribe()
            await worker.start()
            self._workers[thread_id] = worker
            self._spawn_reaper(worker, events)
            logger.info("Started worker for thread %s", thread_id)
            return worker

    async def start_worker_for_thread_if_not_active(self, thread_id: int) -> Worker:
        """Return the active or pending worker for the thread, or start one.

        Overlapping calls for the same thread create exactly one worker.
        """
        existing = self._workers.get(thread_id)
        if existing is not None and existing.is_active:
            return existing

        pending = self._starting.get(thread_id)
        if pending is None:
            pending = asyncio.create_task(
                self.start_worker_for_thread(thread_id), name=f"start-thread-{thread_id}",
            )
            self._starting[thread_id] = pending
            pending.add_done_callback(lambda task: self._clear_starting(thread_id, task))
        else:
            logger.debug("Joining pending start for thread %s", thread_id)
        return await asyncio.shield(pending)

    def _clear_starting(self, thread_id: int, task: asyncio.Task) -> None:
        if self._starting.get(thread_id) is task:
            del self._starting[thread_id]

    # ── Stop ─────────────────────────────────────────────────────────

    async def stop_worker_for_thread(self, thread_id: int, reason: str | None = None) -> bool:
        """Cooperatively stop the thread's worker.  Returns ``False`` if none."""
        async with self._locks[thread_id]:
            worker = self._workers.get(thread_id)
            if worker is None:
                return False
            await worker.stop(reason)
            self._forget(thread_id, worker)
            return True

    async def force_stop_worker_for_thread(self, thread_id: int) -> bool:
        """Abandon the thread's worker immediately.  Returns ``False`` if none.

        Does not wait for the per-thread lock so it can cut short a
        cooperative stop that is taking too long.
        """
        worker = self._workers.get(thread_id)
        if worker is None:
            return False
        await worker.force_stop()
        self._forget(thread_id, worker)
        return True

    async def fail_worker_for_thread(self, thread_id: int, reason: str) -> bool:
        """Abandon the thread's worker as ``failed``.  Returns ``False`` if none.

        Like ``force_stop_worker_for_thread`` it skips the per-thread lock.
        The ``failed`` event reaches the reaper, which logs it.
        """
        worker = self._workers.get(thread_id)
        if worker is None:
            return False
        await worker.fail(reason)
        self._forget(thread_id, worker)
        return True

    async def stop_all_workers(self) -> None:
        """Stop every worker, letting pending starts finish first."""
        pending = list(self._starting.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        thread_ids = list(self._workers)
        if thread_ids:
            logger.info("Stopping %d workers", len(thread_ids))
        results = await asyncio.gather(
            *(self.stop_worker_for_thread(t, "shutdown") for t in thread_ids),
            return_exceptions=True,
        )
        for thread_id, outcome in zip(thread_ids, results):
            if isinstance(outcome, Exception):
                logger.error("Failed to stop worker for thread %s: %s", thread_id, outcome)

        reapers = list(self._reapers)
        for task in reapers:
            task.cancel()
        await asyncio.gather(*reapers, return_exceptions=True)

    # ── Queries ──────────────────────────────────────────────────────

    def get_worker_status(self, thread_id: int) -> WorkerStatus:
        worker = self._workers.get(thread_id)
        if worker is None:
            return "not_found"
        return _STATUS_BY_STATE[worker.state]

    def get_active_threads(self) -> list[int]:
        return list(self._workers)

    def get_worker_for_thread(self, thread_id: int) -> Worker | None:
        return self._workers.get(thread_id)

    async def process_email(self, thread_id: int) -> RunResult:
        """Run one reasoning loop to completion without a worker."""
        return await self._agent.process_email(thread_id)

    # ── Internal ─────────────────────────────────────────────────────

    def _forget(self, thread_id: int, worker: Worker) -> None:
        if self._workers.get(thread_id) is worker:
            del self._workers[thread_id]

    def _spawn_reaper(self, worker: Worker, events: AsyncIterator[WorkerEvent]) -> None:
        task = asyncio.create_task(self._reap(worker, events), name=f"reap-thread-{worker.thread_id}")
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, worker: Worker, events: AsyncIterator[WorkerEvent]) -> None:
        async for event in events:
            if event.error:
                logger.warning(
                    "Worker %s: %s -> %s: %s",
                    event.thread_id, event.previous.value, event.state.value, event.error,
                )
            else:
                logger.info(
                    "Worker %s: %s -> %s", event.thread_id, event.previous.value, event.state.value,
                )
        self._forget(worker.thread_id, worker)
