"""Tests for the per-thread worker state machine."""

from __future__ import annotations

import asyncio

import pytest

from triage_agent.agent import RunResult
from triage_agent.config import WorkerSettings
from triage_agent.worker import (
    InvalidTransitionError,
    Worker,
    WorkerState,
    can_transition,
)

S = WorkerState


async def _collect(events) -> list[WorkerState]:
    return [event.state async for event in events]


# ── Transition table ─────────────────────────────────────────────────


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (S.IDLE, S.STARTING),
            (S.STARTING, S.RUNNING),
            (S.RUNNING, S.STOPPING),
            (S.RUNNING, S.ERROR),
            (S.STOPPING, S.STOPPED),
            (S.ERROR, S.STARTING),
            (S.ERROR, S.FAILED),
        ],
    )
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (S.IDLE, S.RUNNING),
            (S.RUNNING, S.STARTING),
            (S.STOPPING, S.RUNNING),
            (S.STOPPED, S.STARTING),
            (S.FAILED, S.STARTING),
            (S.RUNNING, S.FAILED),
        ],
    )
    def test_rejected(self, current, new):
        assert not can_transition(current, new)

    def test_illegal_transition_raises(self, fake_agent):
        worker = Worker(1, fake_agent())
        with pytest.raises(InvalidTransitionError) as exc_info:
            worker._transition(S.RUNNING)
        assert exc_info.value.current is S.IDLE
        assert worker.state is S.IDLE

    def test_backoff_is_exponential_and_capped(self):
        settings = WorkerSettings(restart_backoff_seconds=1, restart_backoff_max_seconds=5)
        assert [settings.backoff_for(n) for n in range(1, 5)] == [1, 2, 4, 5]


# ── Run outcomes ─────────────────────────────────────────────────────


class TestRunOutcomes:
    @pytest.mark.asyncio
    async def test_success_ends_stopped(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([ok_result]), fast_settings)
        events = worker.subscribe()

        await worker.start()
        states = await _collect(events)

        assert states == [S.STARTING, S.RUNNING, S.STOPPED]
        assert worker.result is ok_result
        assert worker.is_active is False
        assert worker.restart_count == 0

    @pytest.mark.asyncio
    async def test_errors_restart_until_budget_spent(self, fake_agent, fast_settings):
        agent = fake_agent([RunResult(error="no draft")] * 3)
        worker = Worker(7, agent, fast_settings)
        events = worker.subscribe()

        await worker.start()
        states = await _collect(events)

        assert states == [
            S.STARTING, S.RUNNING, S.ERROR,
            S.STARTING, S.RUNNING, S.ERROR,
            S.STARTING, S.RUNNING, S.ERROR,
            S.FAILED,
        ]
        assert agent.runs == 3
        assert worker.restart_count == 2
        assert worker.last_error == "no draft"

    @pytest.mark.asyncio
    async def test_restart_then_success(self, fake_agent, ok_result, fast_settings):
        agent = fake_agent([RunResult(error="model down"), ok_result])
        worker = Worker(7, agent, fast_settings)

        await worker.start()
        assert await worker.wait() is ok_result

        assert worker.state is S.STOPPED
        assert worker.restart_count == 1
        # Each run gets a fresh context
        assert len(agent.contexts) == 2
        assert agent.contexts[0] is not agent.contexts[1]

    @pytest.mark.asyncio
    async def test_raising_run_is_treated_as_error(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([RuntimeError("boom"), ok_result]), fast_settings)
        events = worker.subscribe()

        await worker.start()
        collected = [event async for event in events]

        error_event = next(e for e in collected if e.state is S.ERROR)
        assert error_event.error == "RuntimeError: boom"
        assert collected[-1].state is S.STOPPED

    @pytest.mark.asyncio
    async def test_no_restarts_allowed(self, fake_agent):
        settings = WorkerSettings(max_restarts=0, restart_backoff_seconds=0, restart_backoff_max_seconds=0)
        worker = Worker(7, fake_agent([RunResult(error="no draft")]), settings)

        await worker.start()
        assert await worker.wait_for_state(S.STOPPED, timeout=1) is S.FAILED


# ── Stopping ─────────────────────────────────────────────────────────


class TestStop:
    @pytest.mark.asyncio
    async def test_cooperative_stop(self, fake_agent, fast_settings):
        agent = fake_agent(mode="until_stopped")
        worker = Worker(7, agent, fast_settings)
        events = worker.subscribe()

        await worker.start()
        await worker.wait_for_state(S.RUNNING, timeout=1)
        await worker.stop("operator request")

        assert worker.state is S.STOPPED
        assert worker.stop_reason == "operator request"
        assert await _collect(events) == [S.STARTING, S.RUNNING, S.STOPPING, S.STOPPED]
        assert agent.runs == 1
        assert agent.contexts[0].stopping

    @pytest.mark.asyncio
    async def test_stop_before_task_runs(self, fake_agent, ok_result, fast_settings):
        agent = fake_agent([ok_result])
        worker = Worker(7, agent, fast_settings)

        await worker.start()
        await worker.stop()

        assert worker.state is S.STOPPED
        assert agent.runs == 0

    @pytest.mark.asyncio
    async def test_stop_during_restart_backoff(self, fake_agent):
        settings = WorkerSettings(
            max_restarts=3, restart_backoff_seconds=30, restart_backoff_max_seconds=30,
            stop_timeout_seconds=1,
        )
        agent = fake_agent([RunResult(error="no draft")])
        worker = Worker(7, agent, settings)

        await worker.start()
        await worker.wait_for_state(S.ERROR, timeout=1)
        await worker.stop()

        assert worker.state is S.STOPPED
        assert agent.runs == 1

    @pytest.mark.asyncio
    async def test_stop_falls_back_to_force_after_timeout(self, fake_agent, fast_settings):
        worker = Worker(7, fake_agent(mode="hang"), fast_settings)

        await worker.start()
        await worker.wait_for_state(S.RUNNING, timeout=1)
        await worker.stop()

        assert worker.state is S.STOPPED
        assert worker._task.done()

    @pytest.mark.asyncio
    async def test_force_stop_cancels_run(self, fake_agent, fast_settings):
        worker = Worker(7, fake_agent(mode="hang"), fast_settings)
        events = worker.subscribe()

        await worker.start()
        await worker.wait_for_state(S.RUNNING, timeout=1)
        await worker.force_stop()

        assert worker.state is S.STOPPED
        assert worker._task.cancelled()
        assert await _collect(events) == [S.STARTING, S.RUNNING, S.STOPPED]

    @pytest.mark.asyncio
    async def test_fail_running_worker_emits_error_then_failed(self, fake_agent, fast_settings):
        worker = Worker(7, fake_agent(mode="hang"), fast_settings)
        events = worker.subscribe()

        await worker.start()
        await worker.wait_for_state(S.RUNNING, timeout=1)
        await worker.fail("did not reach running in time")

        collected = [event async for event in events]
        assert [e.state for e in collected] == [S.STARTING, S.RUNNING, S.ERROR, S.FAILED]
        assert collected[-1].error == "did not reach running in time"
        assert worker.last_error == "did not reach running in time"
        assert worker._task.cancelled()

    @pytest.mark.asyncio
    async def test_fail_while_starting(self, fake_agent, ok_result, fast_settings):
        agent = fake_agent([ok_result])
        worker = Worker(7, agent, fast_settings)
        events = worker.subscribe()

        await worker.start()
        await worker.fail("start timed out")

        assert await _collect(events) == [S.STARTING, S.FAILED]
        assert worker.state is S.FAILED
        assert agent.runs == 0

    @pytest.mark.asyncio
    async def test_fail_is_noop_once_terminal(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([ok_result]), fast_settings)
        await worker.start()
        await worker.wait()

        await worker.fail("too late")

        assert worker.state is S.STOPPED
        assert worker.last_error is None

    @pytest.mark.asyncio
    async def test_stop_idle_worker(self, fake_agent):
        worker = Worker(7, fake_agent())
        await worker.stop()
        assert worker.state is S.STOPPED
        assert worker.is_active is False

    @pytest.mark.asyncio
    async def test_stop_is_noop_once_terminal(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([ok_result]), fast_settings)
        await worker.start()
        await worker.wait()

        await worker.stop()
        await worker.force_stop()

        assert worker.state is S.STOPPED


# ── Observation ──────────────────────────────────────────────────────


class TestObservation:
    @pytest.mark.asyncio
    async def test_wait_for_state_times_out(self, fake_agent, fast_settings):
        worker = Worker(7, fake_agent(mode="hang"), fast_settings)
        await worker.start()

        with pytest.raises(asyncio.TimeoutError):
            await worker.wait_for_state(S.STOPPED, timeout=0.01)

        await worker.force_stop()
        assert worker._waiters == []

    @pytest.mark.asyncio
    async def test_wait_for_current_state_returns_immediately(self, fake_agent):
        worker = Worker(7, fake_agent())
        assert await worker.wait_for_state(S.IDLE) is S.IDLE

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_terminal_state(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([ok_result]), fast_settings)
        await worker.start()
        await worker.wait()

        assert await _collect(worker.subscribe()) == [S.STOPPED]
        assert worker._subscribers == []

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_event(self, fake_agent, ok_result, fast_settings):
        worker = Worker(7, fake_agent([ok_result]), fast_settings)
        first, second = worker.subscribe(), worker.subscribe()

        await worker.start()

        assert await _collect(first) == await _collect(second) == [S.STARTING, S.RUNNING, S.STOPPED]
