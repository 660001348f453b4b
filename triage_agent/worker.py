"""Per-thread worker: one reasoning loop wrapped in a lifecycle state machine.

States::

    idle → starting → running → stopped              (draft written)
                              → stopping → stopped   (cooperative stop)
                              → error → starting …   (restart with backoff)
                                      → failed       (restart budget spent)

``force_stop`` moves any non-terminal state straight to ``stopped`` and
``fail`` moves it to ``failed`` (through ``error`` when running).  Every
transition is checked against ``_TRANSITIONS`` and published as a
``WorkerEvent`` to each subscription; callers observe progress through
``subscribe`` or ``wait_for_state`` only.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from triage_agent.agent import EmailAgent, RunResult
from triage_agent.config import WorkerSettings
from triage_agent.run_context import RunContext
from triage_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    FAILED = "failed"


TERMINAL_STATES = frozenset({WorkerState.STOPPED, WorkerState.FAILED})

_TRANSITIONS: dict[WorkerState, frozenset[WorkerState]] = {
    WorkerState.IDLE: frozenset({WorkerState.STARTING, WorkerState.STOPPED}),
    WorkerState.STARTING: frozenset({
        WorkerState.RUNNING, WorkerState.STOPPING, WorkerState.STOPPED,
        WorkerState.ERROR, WorkerState.FAILED,
    }),
    WorkerState.RUNNING: frozenset({WorkerState.STOPPING, WorkerState.STOPPED, WorkerState.ERROR}),
    WorkerState.STOPPING: frozenset({WorkerState.STOPPED}),
    WorkerState.ERROR: frozenset({WorkerState.STARTING, WorkerState.STOPPED, WorkerState.FAILED}),
    WorkerState.STOPPED: frozenset(),
    WorkerState.FAILED: frozenset(),
}


def can_transition(current: WorkerState, new: WorkerState) -> bool:
    return new in _TRANSITIONS[current]


class InvalidTransitionError(Exception):
    def __init__(self, current: WorkerState, new: WorkerState):
        self.current = current
        self.new = new
        super().__init__(f"Illegal worker transition {current.value} -> {new.value}")


@dataclass(frozen=True)
class WorkerEvent:
    thread_id: int
    previous: WorkerState
    state: WorkerState
    error: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Worker:
    """Owns the reasoning loop for one thread."""

    def __init__(
        self,
        thread_id: int,
        agent: EmailAgent,
        settings: WorkerSettings | None = None,
    ) -> None:
        self.thread_id = thread_id
        self._agent = agent
        self._settings = settings or WorkerSettings()
        self._state = WorkerState.IDLE
        self._task: asyncio.Task | None = None
        self._ctx: RunContext | None = None
        self._result: RunResult | None = None
        self._last_error: str | None = None
        self._stop_reason: str | None = None
        self._restart_count = 0
        self._stop_event = asyncio.Event()
        self._subscribers: list[asyncio.Queue[WorkerEvent]] = []
        self._waiters: list[tuple[frozenset[WorkerState], asyncio.Future]] = []

    def __repr__(self) -> str:
        return f"<Worker thread={self.thread_id} state={self._state.value}>"

    # ── Introspection ────────────────────────────────────────────────

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True from ``start`` until a terminal state is reached."""
        return self._state is not WorkerState.IDLE and self._state not in TERMINAL_STATES

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def result(self) -> RunResult | None:
        """Result of the most recent loop, if one finished."""
        return self._result

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    # ── Events ───────────────────────────────────────────────────────

    def subscribe(self) -> AsyncIterator[WorkerEvent]:
        """Stream of transitions from now on, ending after a terminal one.

        Subscribing to a worker that already finished yields its terminal
        state once.
        """
        queue: asyncio.Queue[WorkerEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        if self._state in TERMINAL_STATES:
            queue.put_nowait(WorkerEvent(self.thread_id, self._state, self._state, self._last_error))
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[WorkerEvent]) -> AsyncIterator[WorkerEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.state in TERMINAL_STATES:
                    return
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    async def wait_for_state(self, *states: WorkerState, timeout: float | None = None) -> WorkerState:
        """Wait until the worker enters one of *states* or a terminal state.

        Returns the state reached.  Raises ``TimeoutError`` after *timeout*
        seconds.
        """
        wanted = frozenset(states)
        if self._state in wanted or self._state in TERMINAL_STATES:
            return self._state
        waiter = asyncio.get_running_loop().create_future()
        entry = (wanted, waiter)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(waiter, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    def _transition(self, new: WorkerState, error: str | None = None) -> None:
        if not can_transition(self._state, new):
            raise InvalidTransitionError(self._state, new)
        previous, self._state = self._state, new
        if error is not None:
            self._last_error = error
        event = WorkerEvent(self.thread_id, previous, new, error)
        logger.debug("Worker %s: %s -> %s", self.thread_id, previous.value, new.value)
        metrics.record_worker_transition(new.value)

        for queue in list(self._subscribers):
            queue.put_nowait(event)
        for wanted, waiter in list(self._waiters):
            if not waiter.done() and (new in wanted or new in TERMINAL_STATES):
                waiter.set_result(new)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """``idle → starting`` and spawn the run task."""
        self._transition(WorkerState.STARTING)
        self._task = asyncio.create_task(self._run(), name=f"worker-thread-{self.thread_id}")

    async def _run(self) -> None:
        try:
            await self._run_loop()
        except Exception as exc:
            logger.exception("Worker %s crashed", self.thread_id)
            self._fail(f"Worker crashed: {type(exc).__name__}: {exc}")

    def _fail(self, error: str) -> None:
        if self._state in TERMINAL_STATES:
            return
        if self._state in (WorkerState.IDLE, WorkerState.STOPPING):
            self._transition(WorkerState.STOPPED, error=error)
            return
        if self._state is WorkerState.RUNNING:
            self._transition(WorkerState.ERROR, error=error)
        self._transition(WorkerState.FAILED, error=error)

    async def _run_loop(self) -> None:
        while True:
            if self._stop_event.is_set():
                self._transition(WorkerState.STOPPED)
                return

            self._ctx = self._agent.new_context(self.thread_id)
            self._transition(WorkerState.RUNNING)
            try:
                result = await self._agent.run(self._ctx)
            except Exception as exc:
                logger.exception("Reasoning loop for thread %s raised", self.thread_id)
                result = RunResult(
                    actions=self._ctx.action_log.entries,
                    error=f"{type(exc).__name__}: {exc}",
                    turns=self._ctx.turns,
                )
            self._result = result

            if self._state is WorkerState.STOPPING or self._stop_event.is_set():
                if self._state is WorkerState.RUNNING:
                    self._transition(WorkerState.STOPPING)
                self._transition(WorkerState.STOPPED)
                return
            if result.ok:
                self._transition(WorkerState.STOPPED)
                return

            self._transition(WorkerState.ERROR, error=result.error)
            if self._restart_count >= self._settings.max_restarts:
                logger.error(
                    "Worker %s failed after %d restarts: %s",
                    self.thread_id, self._restart_count, result.error,
                )
                self._transition(WorkerState.FAILED, error=result.error)
                return

            self._restart_count += 1
            delay = self._settings.backoff_for(self._restart_count)
            logger.warning(
                "Worker %s errored (%s). Restart %d/%d in %.1fs",
                self.thread_id, result.error, self._restart_count,
                self._settings.max_restarts, delay,
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass
            if self._stop_event.is_set():
                self._transition(WorkerState.STOPPED)
                return
            self._transition(WorkerState.STARTING)

    def _request_stop(self) -> None:
        self._stop_event.set()
        if self._ctx is not None:
            self._ctx.request_stop()

    async def stop(self, reason: str | None = None) -> None:
        """Cooperative stop: let the current turn finish, then ``stopped``.

        Falls back to ``force_stop`` when the loop does not wind down within
        the configured stop timeout.
        """
        if self._state in TERMINAL_STATES:
            return
        self._stop_reason = reason
        logger.info("Stopping worker %s%s", self.thread_id, f" ({reason})" if reason else "")
        if self._state is WorkerState.IDLE:
            self._transition(WorkerState.STOPPED)
            return

        self._request_stop()
        if self._state in (WorkerState.STARTING, WorkerState.RUNNING):
            self._transition(WorkerState.STOPPING)

        if self._task is not None and not self._task.done():
            done, _ = await asyncio.wait({self._task}, timeout=self._settings.stop_timeout_seconds)
            if not done:
                logger.warning(
                    "Worker %s did not stop within %.1fs, forcing",
                    self.thread_id, self._settings.stop_timeout_seconds,
                )
                await self.force_stop()

    async def force_stop(self) -> None:
        """Abandon the in-flight loop and go straight to ``stopped``.

        The tool call in progress, if any, may be left without a logged
        result.
        """
        if self._state in TERMINAL_STATES:
            return
        logger.info("Force-stopping worker %s", self.thread_id)
        self._request_stop()
        task = self._task
        self._transition(WorkerState.STOPPED)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def fail(self, reason: str) -> None:
        """Abandon the in-flight loop and end in ``failed`` with *reason*.

        For lifecycle failures noticed outside the loop, such as a worker
        that never reaches ``running``.  An idle or stopping worker ends in
        ``stopped`` with *reason* as its error.
        """
        if self._state in TERMINAL_STATES:
            return
        logger.error("Failing worker %s: %s", self.thread_id, reason)
        self._request_stop()
        task = self._task
        self._fail(reason)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def wait(self) -> RunResult | None:
        """Wait for the run task to end and return the last loop result."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self._result
