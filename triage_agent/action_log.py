"""Append-only audit trail of everything the agent does on a thread.

Every tool call becomes one ``AgentAction`` row whose metadata follows the
same shape regardless of the tool::

    {"callId": ..., "parameters": {...}, "result": {...} | None,
     "error": str | None, "status": "success" | "error", "timestamp": ms}

Assistant text turns are recorded as ``assistant_message`` and model retries
as ``model_retry`` so the trail also explains gaps between tool calls.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from triage_agent.models import AgentAction
from triage_agent.services.store import StoreError, SupportStore

logger = logging.getLogger(__name__)

ASSISTANT_MESSAGE = "assistant_message"
MODEL_RETRY = "model_retry"


def _tags(params: dict[str, Any]) -> str:
    tags = params.get("tags") or []
    if isinstance(tags, list) and tags:
        return ", ".join(str(t) for t in tags)
    return "unknown"


def _describe_email_search(params: dict[str, Any]) -> str:
    sender = params.get("senderEmail") or "all senders"
    query = params.get("query") or params.get("searchQuery")
    if query:
        return f'Searched for emails from {sender} containing "{query}"'
    return f"Searched for emails from {sender}"


_DESCRIPTIONS: dict[str, Callable[[dict[str, Any]], str]] = {
    "explain_next_tool_call": lambda p: str(p.get("explanation") or "Explained next tool call"),
    "search_emails": _describe_email_search,
    "search_customer_emails": _describe_email_search,
    "get_customer_history": lambda p: (
        f"Retrieved email history for {p.get('senderEmail') or 'unknown customer'}"
    ),
    "tag_email": lambda p: f"Tagged email {p.get('emailId')} as {_tags(p)}",
    "search_knowledge_base": lambda p: (
        f'Searched knowledge base for: "{p.get("query") or "unknown query"}"'
    ),
    "read_thread": lambda p: "Read the full email thread",
    "write_draft": lambda p: f"Wrote draft reply to email {p.get('emailId')}",
}


def describe_tool_call(name: str, params: dict[str, Any]) -> str:
    """Short natural-language description of a tool call for the audit trail."""
    describe = _DESCRIPTIONS.get(name)
    if describe is not None:
        try:
            text = describe(params)
        except (TypeError, AttributeError):
            text = ""
        if text.strip():
            return text
    return f"Called {name} tool"


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class ActionLog:
    """Writes actions for one thread and keeps the ones written in this run."""

    def __init__(self, store: SupportStore, thread_id: int) -> None:
        self._store = store
        self._thread_id = thread_id
        self._entries: list[AgentAction] = []

    @property
    def thread_id(self) -> int:
        return self._thread_id

    @property
    def entries(self) -> list[AgentAction]:
        """Actions appended during this run, in order."""
        return list(self._entries)

    async def record_tool_call(
        self,
        name: str,
        params: dict[str, Any],
        result: dict[str, Any],
        call_id: str = "",
    ) -> AgentAction:
        success = bool(result.get("success"))
        metadata: dict[str, Any] = {
            "callId": call_id,
            "parameters": params,
            "result": dict(result) if success else None,
            "error": None if success else result.get("error") or "Unknown error",
            "status": "success" if success else "error",
            "timestamp": _timestamp_ms(),
        }
        return await self._append(name, describe_tool_call(name, params), metadata)

    async def record_assistant_message(self, text: str, raw: dict[str, Any] | None = None) -> AgentAction:
        description = text.strip() or "Assistant replied without calling a tool"
        return await self._append(
            ASSISTANT_MESSAGE,
            description,
            {"output": raw or {"content": text}, "timestamp": _timestamp_ms()},
        )

    async def record_model_retry(self, attempt: int, max_attempts: int, error: BaseException, delay: float) -> AgentAction:
        return await self._append(
            MODEL_RETRY,
            f"Model call failed ({type(error).__name__}); retry {attempt}/{max_attempts} in {delay:.1f}s",
            {
                "error": str(error),
                "errorType": type(error).__name__,
                "attempt": attempt,
                "maxAttempts": max_attempts,
                "delaySeconds": delay,
                "timestamp": _timestamp_ms(),
            },
        )

    async def _append(self, action: str, description: str, metadata: dict[str, Any]) -> AgentAction:
        try:
            entry = await asyncio.to_thread(
                self._store.log_agent_action, self._thread_id, action, description, metadata,
            )
        except StoreError:
            # Keep the in-run trail complete even when the row could not be written.
            logger.exception("Failed to persist %s action for thread %s", action, self._thread_id)
            entry = AgentAction(
                id=0,
                thread_id=self._thread_id,
                action=action,
                description=description,
                metadata=metadata,
                created_at=datetime.now(UTC),
            )
        self._entries.append(entry)
        return entry
