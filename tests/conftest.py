"""Shared test fixtures for the support triage test suite."""

from __future__ import annotations

import os
import uuid

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["METRICS_ENABLED"] = "false"


CUSTOMER = "jordan.lee@example.com"
SUPPORT = "support@example.com"

RETURNS_DOC = """# Returns & Refunds

## Return policy

Items can be returned within 30 days of delivery for a full refund.

## Refund timing

Refunds are issued within 5 business days of the return arriving.
"""

SHIPPING_DOC = """# Shipping

## Delivery times

Standard delivery takes 3-5 business days.
"""


class ScriptedLLM:
    """Stand-in for the tool-bound chat model.

    Each ``ainvoke`` consumes the next step: an ``AIMessage`` is returned,
    an exception is raised, a callable is called with the messages.  Once
    the script runs out it answers with plain text.
    """

    def __init__(self, steps):
        self.steps = list(steps)
        self.calls: list[list] = []

    async def ainvoke(self, messages):
        from langchain_core.messages import AIMessage

        self.calls.append(list(messages))
        if not self.steps:
            return AIMessage(content="I have nothing further to do.")
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(messages)
        return step


@pytest.fixture
def tool_call():
    """Factory for AIMessages that request tool calls.

    ``tool_call(("read_thread", {}), ("tag_email", {...}))``
    """
    from langchain_core.messages import AIMessage

    def _make(*calls: tuple[str, dict], content: str = "") -> AIMessage:
        return AIMessage(
            content=content,
            tool_calls=[
                {"name": name, "args": args, "id": f"call_{uuid.uuid4().hex[:8]}"}
                for name, args in calls
            ],
        )

    return _make


@pytest.fixture
def store():
    from triage_agent.services.store import SupportStore

    s = SupportStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def return_policy_thread(store):
    """A thread with one inbound email asking about the return policy."""
    thread = store.create_thread("Return policy", participant_emails=[CUSTOMER, SUPPORT])
    email = store.add_email(
        thread.id, CUSTOMER, [SUPPORT], "Return policy",
        "Hi, what is your return policy? I'd like to send back a jacket.",
    )
    return thread, email


@pytest.fixture
def knowledge_dir(tmp_path):
    (tmp_path / "returns-policy.md").write_text(RETURNS_DOC, encoding="utf-8")
    guides = tmp_path / "guides"
    guides.mkdir()
    (guides / "shipping.md").write_text(SHIPPING_DOC, encoding="utf-8")
    return tmp_path


@pytest.fixture
def knowledge(knowledge_dir):
    from triage_agent.tools.knowledge import MarkdownKnowledgeBase

    return MarkdownKnowledgeBase(knowledge_dir)


@pytest.fixture
def make_context(store, knowledge):
    """Factory for a ``RunContext`` bound to *thread_id* on the test store."""
    from triage_agent.action_log import ActionLog
    from triage_agent.run_context import RunContext

    def _make(thread_id: int) -> RunContext:
        return RunContext(
            thread_id=thread_id,
            store=store,
            knowledge=knowledge,
            action_log=ActionLog(store, thread_id),
        )

    return _make


@pytest.fixture
def make_agent(store, knowledge):
    """Factory for an ``EmailAgent`` driven by a ``ScriptedLLM``.

    Backoff is zeroed so retry tests run instantly.
    """
    from triage_agent.agent import EmailAgent

    def _make(steps, **kwargs) -> EmailAgent:
        kwargs.setdefault("initial_backoff_seconds", 0)
        kwargs.setdefault("max_turns", 10)
        return EmailAgent(store, knowledge, llm=ScriptedLLM(steps), **kwargs)

    return _make


class FakeAgent:
    """Agent double for worker tests.

    ``outcomes`` are consumed one per run: a ``RunResult`` is returned, an
    exception is raised.  ``mode="until_stopped"`` blocks each run until a
    stop is requested; ``mode="hang"`` ignores stop requests entirely.
    """

    def __init__(self, outcomes=(), mode: str = "script"):
        self.outcomes = list(outcomes)
        self.mode = mode
        self.runs = 0
        self.contexts = []

    def new_context(self, thread_id: int):
        from unittest.mock import MagicMock

        from triage_agent.action_log import ActionLog
        from triage_agent.run_context import RunContext

        store = MagicMock()
        ctx = RunContext(
            thread_id=thread_id,
            store=store,
            knowledge=MagicMock(),
            action_log=ActionLog(store, thread_id),
        )
        self.contexts.append(ctx)
        return ctx

    async def run(self, ctx):
        import asyncio

        from triage_agent.agent import RunResult

        self.runs += 1
        if self.mode == "until_stopped":
            await ctx.stop_requested.wait()
            return RunResult(error="Run stopped before a draft was written.")
        if self.mode == "hang":
            await asyncio.sleep(3600)
        outcome = self.outcomes.pop(0) if self.outcomes else RunResult(error="No draft was created.")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def process_email(self, thread_id: int):
        return await self.run(self.new_context(thread_id))


@pytest.fixture
def ok_result():
    from unittest.mock import MagicMock

    from triage_agent.agent import RunResult

    return RunResult(draft=MagicMock(name="draft"), turns=3)


@pytest.fixture
def fast_settings():
    """Worker settings with no restart backoff and a short stop timeout."""
    from triage_agent.config import WorkerSettings

    return WorkerSettings(
        max_restarts=2,
        restart_backoff_seconds=0,
        restart_backoff_max_seconds=0,
        stop_timeout_seconds=0.05,
    )


@pytest.fixture
def fake_agent():
    return FakeAgent
