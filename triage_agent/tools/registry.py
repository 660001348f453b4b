"""The closed set of tools the reasoning loop may call.

Every tool is a ``ToolSpec``: a name from ``ToolName``, a model-facing
description, a Pydantic argument schema and an async ``execute`` function
that receives the explicit ``RunContext``.  ``ToolRegistry`` is the single
dispatch table; ``dispatch`` validates the raw arguments, runs the tool and
appends exactly one entry to the action log, whatever the outcome.

Tools never raise into the loop.  Bad arguments, unknown tool names and
unexpected exceptions all come back as ``{"success": False, "error": ...}``
so the model can read the error and adapt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from triage_agent.run_context import RunContext
from triage_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    SEARCH_EMAILS = "search_emails"
    GET_CUSTOMER_HISTORY = "get_customer_history"
    SEARCH_CUSTOMER_EMAILS = "search_customer_emails"
    TAG_EMAIL = "tag_email"
    SEARCH_KNOWLEDGE_BASE = "search_knowledge_base"
    READ_THREAD = "read_thread"
    WRITE_DRAFT = "write_draft"
    EXPLAIN_NEXT_TOOL_CALL = "explain_next_tool_call"


class ToolArgs(BaseModel):
    """Base for tool argument schemas: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ToolResult(dict):
    """Structured tool outcome, always carrying a ``success`` flag."""

    @classmethod
    def ok(cls, **payload: Any) -> ToolResult:
        return cls(success=True, **payload)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    @property
    def success(self) -> bool:
        return bool(self.get("success"))

    @property
    def error(self) -> str | None:
        return self.get("error")


def failure(error: str) -> ToolResult:
    return ToolResult.fail(error)


ToolExecutor = Callable[[RunContext, Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    args_schema: type[ToolArgs]
    execute: ToolExecutor

    def model_schema(self) -> dict[str, Any]:
        """Function-calling schema in the format LangChain's ``bind_tools`` accepts."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.args_schema.model_json_schema(by_alias=True),
            },
        }


class ToolRegistry:
    """Dispatch table keyed by tool name, built once and shared by every run."""

    def __init__(self, tools: Iterable[ToolSpec]) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for spec in tools:
            if spec.name.value in self._tools:
                raise ValueError(f"Duplicate tool: {spec.name.value}")
            self._tools[spec.name.value] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def model_schemas(self) -> list[dict[str, Any]]:
        return [spec.model_schema() for spec in self._tools.values()]

    async def dispatch(
        self,
        ctx: RunContext,
        name: str,
        raw_args: dict[str, Any] | None,
        call_id: str = "",
    ) -> ToolResult:
        """Run one tool call and record it in the action log.

        ``asyncio.CancelledError`` is not caught: a force-stopped run may
        leave the in-flight call without a logged result.
        """
        raw_args = raw_args or {}
        t0 = time.perf_counter()
        result = await self._execute(ctx, name, raw_args)
        elapsed = (time.perf_counter() - t0) * 1000

        if result.success:
            metrics.record_success("tools", name, latency_ms=elapsed)
        else:
            metrics.record_failure("tools", name, error_type="tool_error", latency_ms=elapsed)
            logger.info("Tool %s failed for thread %s: %s", name, ctx.thread_id, result.error)

        await ctx.action_log.record_tool_call(name, raw_args, result, call_id=call_id)
        return result

    async def _execute(self, ctx: RunContext, name: str, raw_args: dict[str, Any]) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return failure(
                f"Unknown tool: {name}. Available tools: {', '.join(self._tools)}"
            )

        try:
            args = spec.args_schema.model_validate(raw_args)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            return failure(f"Invalid arguments for {name}: {problems}")

        try:
            return await spec.execute(ctx, args)
        except Exception as exc:
            logger.exception("Tool %s raised for thread %s", name, ctx.thread_id)
            return failure(f"{name} failed unexpectedly: {exc}")


def build_default_registry() -> ToolRegistry:
    """Build the registry with every support tool, in prompt order."""
    from triage_agent.tools.drafts import EXPLAIN_NEXT_TOOL_CALL, WRITE_DRAFT  # noqa: PLC0415
    from triage_agent.tools.email import (  # noqa: PLC0415
        GET_CUSTOMER_HISTORY,
        READ_THREAD,
        SEARCH_CUSTOMER_EMAILS,
        SEARCH_EMAILS,
        TAG_EMAIL,
    )
    from triage_agent.tools.knowledge import SEARCH_KNOWLEDGE_BASE  # noqa: PLC0415

    return ToolRegistry(
        [
            READ_THREAD,
            EXPLAIN_NEXT_TOOL_CALL,
            GET_CUSTOMER_HISTORY,
            SEARCH_CUSTOMER_EMAILS,
            SEARCH_EMAILS,
            TAG_EMAIL,
            SEARCH_KNOWLEDGE_BASE,
            WRITE_DRAFT,
        ]
    )
