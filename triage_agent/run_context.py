"""The explicit per-run context handed to every tool call."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from triage_agent.models import DraftResponse, KnowledgeResult

if TYPE_CHECKING:
    from triage_agent.action_log import ActionLog
    from triage_agent.services.store import SupportStore
    from triage_agent.tools.knowledge import KnowledgeSearch


@dataclass
class RunContext:
    """Everything one reasoning loop needs about the thread it works on.

    ``knowledge_results`` accumulates every snippet returned by
    ``search_knowledge_base`` during the run; ``write_draft`` only accepts a
    citation that appears there.  ``stop_requested`` is the cooperative stop
    signal checked between turns; ``turns`` counts model calls made so far.
    """

    thread_id: int
    store: SupportStore
    knowledge: KnowledgeSearch
    action_log: ActionLog
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    knowledge_results: list[KnowledgeResult] = field(default_factory=list)
    draft: DraftResponse | None = None
    turns: int = 0

    def request_stop(self) -> None:
        self.stop_requested.set()

    @property
    def stopping(self) -> bool:
        return self.stop_requested.is_set()

    @property
    def has_draft(self) -> bool:
        return self.draft is not None
