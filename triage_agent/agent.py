"""LangGraph reasoning loop that triages one support thread into a draft reply.

Architecture:
  A two-node LangGraph StateGraph, compiled once per ``EmailAgent``:

    1. **agent**: Claude, bound to the tool registry's schemas, decides the
                   next step from the system prompt and the run history
    2. **tools**: dispatches every tool call of the turn through the
                   ``ToolRegistry``, sequentially and in request order

  Routing:
    agent → (tool calls?)         → tools → (draft / stop / max turns?) → END
                                          → agent (loop)
    agent → (no tool calls?)      → reminder → agent (loop), or END on stop /
                                                max turns

  The explicit ``RunContext`` travels in the graph config
  (``configurable.run_context``), never in module state, so several runs
  for different threads can share the compiled graph.

  Model calls are retried with exponential backoff on transient errors
  (rate limit, timeout, connection, 5xx).  Every retry is written to the
  action log as a ``model_retry`` action.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Annotated, Any

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from triage_agent.action_log import ActionLog
from triage_agent.config import (
    ANTHROPIC_API_KEY,
    MAX_TURNS,
    MODEL_INITIAL_BACKOFF_SECONDS,
    MODEL_MAX_RETRIES,
    MODEL_MAX_TOKENS,
    MODEL_NAME,
    MODEL_TEMPERATURE,
    MODEL_TIMEOUT_SECONDS,
)
from triage_agent.models import AgentAction, DraftResponse
from triage_agent.prompts import DRAFT_REMINDER, build_thread_context, get_system_prompt
from triage_agent.run_context import RunContext
from triage_agent.services.metrics import metrics
from triage_agent.services.store import StoreError, SupportStore
from triage_agent.tools import ToolRegistry, build_default_registry
from triage_agent.tools.knowledge import KnowledgeSearch

logger = logging.getLogger(__name__)

RETRYABLE_MODEL_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,  # includes APITimeoutError
    anthropic.InternalServerError,
    TimeoutError,
    ConnectionError,
)


class ModelCallError(Exception):
    """The language model could not be reached within the retry budget."""


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer so each node appends to
    the history.  ``next_step`` is written by every node and read by the
    conditional edges; it is internal plumbing and never sent to the model.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    next_step: str


@dataclass
class RunResult:
    """Outcome of one reasoning loop.

    On success ``draft`` is set and ``error`` is ``None``.  On failure
    ``error`` explains why, and ``actions`` still holds every action logged
    before the run ended.  ``messages`` is the conversation as of the last
    completed graph step, for replay and debugging.
    """

    draft: DraftResponse | None = None
    actions: list[AgentAction] = field(default_factory=list)
    error: str | None = None
    turns: int = 0
    messages: list[AnyMessage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.draft is not None and self.error is None


def _message_text(message: AIMessage) -> str:
    """Plain text of a model reply (Anthropic content may be a block list)."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "\n".join(p for p in parts if p)


def _run_context(config: RunnableConfig) -> RunContext:
    return config["configurable"]["run_context"]


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm(registry: ToolRegistry):
    """Build Claude with the registry's tool schemas bound.

    SDK-level retries are disabled; the loop retries itself so every retry
    lands in the action log.
    """
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,
        max_tokens=MODEL_MAX_TOKENS,
        max_retries=0,
    )
    return llm.bind_tools(registry.model_schemas())


class EmailAgent:
    """Runs reasoning loops over support threads.

    One instance is shared by every worker; per-run state lives in the
    ``RunContext`` passed to ``run``.
    """

    def __init__(
        self,
        store: SupportStore,
        knowledge: KnowledgeSearch,
        *,
        registry: ToolRegistry | None = None,
        llm: Any = None,
        max_turns: int = MAX_TURNS,
        model_max_retries: int = MODEL_MAX_RETRIES,
        initial_backoff_seconds: float = MODEL_INITIAL_BACKOFF_SECONDS,
        model_timeout_seconds: float = MODEL_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._knowledge = knowledge
        self._registry = registry or build_default_registry()
        self._llm = llm if llm is not None else _build_llm(self._registry)
        self._max_turns = max_turns
        self._model_max_retries = model_max_retries
        self._initial_backoff = initial_backoff_seconds
        self._model_timeout = model_timeout_seconds
        self._graph = self._build_graph()

    @property
    def store(self) -> SupportStore:
        return self._store

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def new_context(self, thread_id: int) -> RunContext:
        """Fresh run context (and action log) for *thread_id*."""
        return RunContext(
            thread_id=thread_id,
            store=self._store,
            knowledge=self._knowledge,
            action_log=ActionLog(self._store, thread_id),
        )

    # ── Model call with retries ──────────────────────────────────────

    async def _invoke_model(self, ctx: RunContext, messages: list[AnyMessage]) -> AIMessage:
        attempts = self._model_max_retries + 1
        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    self._llm.ainvoke(messages), timeout=self._model_timeout,
                )
            except RETRYABLE_MODEL_ERRORS as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                if attempt == attempts:
                    raise ModelCallError(
                        f"Model call failed after {attempts} attempts: "
                        f"{type(exc).__name__}: {exc}"
                    ) from exc
                delay = self._initial_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Model call for thread %s failed (%s), attempt %d/%d. Retrying in %.1fs…",
                    ctx.thread_id, type(exc).__name__, attempt, attempts, delay,
                )
                await ctx.action_log.record_model_retry(attempt, self._model_max_retries, exc, delay)
                await asyncio.sleep(delay)
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise ModelCallError(f"Model call failed: {type(exc).__name__}: {exc}") from exc
            else:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
                logger.debug("Model responded for thread %s in %.0fms", ctx.thread_id, elapsed)
                return response
        raise ModelCallError("Model call was not attempted")

    # ── Graph assembly ───────────────────────────────────────────────

    def _out_of_turns(self, ctx: RunContext) -> bool:
        return ctx.turns >= self._max_turns

    def _build_graph(self):
        async def agent_node(state: AgentState, config: RunnableConfig) -> dict:
            """Ask the model for the next step."""
            ctx = _run_context(config)
            if ctx.stopping:
                return {"next_step": END}

            ctx.turns += 1
            system = SystemMessage(content=get_system_prompt())
            response = await self._invoke_model(ctx, [system] + state["messages"])

            if response.tool_calls:
                logger.debug(
                    "Thread %s turn %d: %s", ctx.thread_id, ctx.turns,
                    ", ".join(call["name"] for call in response.tool_calls),
                )
                return {"messages": [response], "next_step": "tools"}

            # Text-only reply: keep it in the trail and nudge towards write_draft.
            await ctx.action_log.record_assistant_message(
                _message_text(response), raw={"content": response.content},
            )
            next_step = END if ctx.stopping or self._out_of_turns(ctx) else "agent"
            return {
                "messages": [response, HumanMessage(content=DRAFT_REMINDER)],
                "next_step": next_step,
            }

        async def tools_node(state: AgentState, config: RunnableConfig) -> dict:
            """Execute the turn's tool calls one after another."""
            ctx = _run_context(config)
            last = state["messages"][-1]
            results: list[ToolMessage] = []
            for call in last.tool_calls:
                call_id = call.get("id") or ""
                result = await self._registry.dispatch(ctx, call["name"], call.get("args"), call_id=call_id)
                results.append(
                    ToolMessage(
                        content=json.dumps(result, default=str),
                        tool_call_id=call_id,
                        name=call["name"],
                        status="success" if result.success else "error",
                    )
                )

            if ctx.has_draft or ctx.stopping or self._out_of_turns(ctx):
                next_step = END
            else:
                next_step = "agent"
            return {"messages": results, "next_step": next_step}

        def route(state: AgentState) -> str:
            return state["next_step"]

        graph = StateGraph(AgentState)
        graph.add_node("agent", agent_node)
        graph.add_node("tools", tools_node)
        graph.set_entry_point("agent")
        graph.add_conditional_edges("agent", route, {"tools": "tools", "agent": "agent", END: END})
        graph.add_conditional_edges("tools", route, {"agent": "agent", END: END})

        compiled = graph.compile()
        logger.debug(
            "Email agent compiled with %d tools, max_turns=%d", len(self._registry), self._max_turns,
        )
        return compiled

    # ── Entry points ─────────────────────────────────────────────────

    async def _initial_message(self, thread_id: int) -> str | None:
        email = await asyncio.to_thread(self._store.get_latest_email_in_thread, thread_id)
        if email is None:
            return None
        history = await asyncio.to_thread(self._store.get_sorted_emails_by_thread, thread_id)
        return build_thread_context(thread_id, email, history)

    def _failure_reason(self, ctx: RunContext) -> str:
        if ctx.stopping:
            return "Run stopped before a draft was written."
        if self._out_of_turns(ctx):
            return f"Reached the maximum of {self._max_turns} turns without writing a draft."
        return "No draft was created. Agent may have failed to call write_draft tool."

    async def run(self, ctx: RunContext) -> RunResult:
        """Drive one reasoning loop for ``ctx.thread_id`` to completion.

        Never raises for model or storage failures: they come back as
        ``RunResult.error``.  ``asyncio.CancelledError`` propagates.
        """
        try:
            message = await self._initial_message(ctx.thread_id)
        except StoreError as exc:
            logger.error("Could not load thread %s: %s", ctx.thread_id, exc)
            return RunResult(actions=ctx.action_log.entries, error=f"Could not load thread: {exc}")
        if message is None:
            return RunResult(
                actions=ctx.action_log.entries,
                error=f"Thread {ctx.thread_id} has no emails to process.",
            )

        logger.info("Processing thread %s", ctx.thread_id)
        config: RunnableConfig = {
            "configurable": {"run_context": ctx},
            "recursion_limit": 2 * self._max_turns + 5,
        }
        history: list[AnyMessage] = []
        try:
            async for values in self._graph.astream(
                {"messages": [HumanMessage(content=message)], "next_step": "agent"},
                config=config,
                stream_mode="values",
            ):
                history = values["messages"]
        except ModelCallError as exc:
            logger.error("Thread %s run aborted: %s", ctx.thread_id, exc)
            return RunResult(
                draft=ctx.draft, actions=ctx.action_log.entries, error=str(exc),
                turns=ctx.turns, messages=history,
            )
        except GraphRecursionError:
            logger.error("Thread %s run exceeded the graph recursion limit", ctx.thread_id)
            return RunResult(
                draft=ctx.draft, actions=ctx.action_log.entries,
                error=self._failure_reason(ctx), turns=ctx.turns, messages=history,
            )

        if ctx.draft is None:
            error = self._failure_reason(ctx)
            logger.warning("Thread %s finished without a draft: %s", ctx.thread_id, error)
            return RunResult(
                actions=ctx.action_log.entries, error=error, turns=ctx.turns, messages=history,
            )

        logger.info(
            "Thread %s drafted (draft %s, %d turns, %d actions)",
            ctx.thread_id, ctx.draft.id, ctx.turns, len(ctx.action_log.entries),
        )
        return RunResult(
            draft=ctx.draft, actions=ctx.action_log.entries, turns=ctx.turns, messages=history,
        )

    async def process_email(self, thread_id: int) -> RunResult:
        """Run one loop for the latest email of *thread_id* and return the result."""
        return await self.run(self.new_context(thread_id))
