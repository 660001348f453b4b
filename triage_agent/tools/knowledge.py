"""Knowledge-base search: the collaborator contract and the agent tool.

Two implementations of ``KnowledgeSearch`` ship with the agent:

* ``MarkdownKnowledgeBase``: splits a directory of markdown documents into
  heading sections and ranks them by keyword overlap.  Used locally and in
  tests.
* ``VectorStoreKnowledgeSearch``: delegates to the hosted vector store the
  documentation sync job keeps up to date (see
  ``services/vector_store_client.py``).

The reasoning loop only sees the typed ``{filename, score, text}`` results.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import Field

from triage_agent.models import KnowledgeResult
from triage_agent.run_context import RunContext
from triage_agent.services.vector_store_client import VectorStoreClient
from triage_agent.tools.registry import ToolArgs, ToolName, ToolResult, ToolSpec, failure

logger = logging.getLogger(__name__)

DEFAULT_RESULT_LIMIT = 5


class KnowledgeSearch(Protocol):
    async def search(self, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> list[KnowledgeResult]:
        ...


# ── Local markdown knowledge base ────────────────────────────────────


def _split_into_sections(content: str) -> list[dict[str, str]]:
    """Split a markdown document into heading/body sections.

    Returns a list of dicts like:
      {"heading": "Return policy", "body": "Items can be returned within..."}

    Text before the first heading is kept as an untitled section so short
    documents without headings are still searchable.
    """
    sections: list[dict[str, str]] = []
    parts = re.split(r"^#{1,3}\s+(.+?)$", content, flags=re.MULTILINE)

    preamble = parts[0].strip()
    if preamble:
        sections.append({"heading": "", "body": preamble})

    for i in range(1, len(parts), 2):
        heading = parts[i].strip()
        body = parts[i + 1].strip() if i + 1 < len(parts) else ""
        body = re.sub(r"\n---\s*$", "", body).strip()
        sections.append({"heading": heading, "body": body})

    return sections


class MarkdownKnowledgeBase:
    """Keyword search over every ``*.md`` file below a directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._sections: list[tuple[str, dict[str, str]]] = []
        self.reload()

    def reload(self) -> None:
        """(Re)read every markdown file under the root directory."""
        self._sections = []
        if not self._root.is_dir():
            logger.error("Knowledge base directory not found at %s", self._root)
            return
        for path in sorted(self._root.rglob("*.md")):
            filename = path.relative_to(self._root).as_posix()
            content = path.read_text(encoding="utf-8")
            for section in _split_into_sections(content):
                self._sections.append((filename, section))
        logger.debug(
            "Loaded %d knowledge base sections from %s", len(self._sections), self._root,
        )

    @property
    def section_count(self) -> int:
        return len(self._sections)

    def rank(self, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> list[KnowledgeResult]:
        """Score every section against *query* and return the best matches.

        The score is the share of significant query words (longer than two
        characters) found in the section, plus a bonus when a longer word
        appears in the heading, capped at 1.0.
        """
        query_words = {w for w in re.findall(r"[\w']+", query.lower()) if len(w) > 2}
        if not query_words or not self._sections:
            return []

        scored: list[tuple[float, int, KnowledgeResult]] = []
        for index, (filename, section) in enumerate(self._sections):
            text = f"{section['heading']} {section['body']}".lower()
            matches = sum(1 for w in query_words if w in text)
            if matches == 0:
                continue
            score = matches / len(query_words)
            heading_lower = section["heading"].lower()
            if any(w in heading_lower for w in query_words if len(w) > 3):
                score += 0.25
            body = section["body"]
            if section["heading"]:
                body = f"{section['heading']}\n\n{body}"
            scored.append(
                (min(score, 1.0), index, KnowledgeResult(
                    filename=filename, score=round(min(score, 1.0), 3), text=body,
                ))
            )

        # Highest score first; document order breaks ties.
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [result for _, _, result in scored[:limit]]

    async def search(self, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> list[KnowledgeResult]:
        return self.rank(query, limit)


# ── Hosted vector store ──────────────────────────────────────────────


class VectorStoreKnowledgeSearch:
    """Adapter from the blocking ``VectorStoreClient`` to ``KnowledgeSearch``."""

    def __init__(self, client: VectorStoreClient) -> None:
        self._client = client

    async def search(self, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> list[KnowledgeResult]:
        hits = await asyncio.to_thread(self._client.search, query, limit)
        return [
            KnowledgeResult(filename=h["filename"], score=h["score"], text=h["text"])
            for h in hits
        ]


def build_knowledge_search(
    knowledge_dir: str,
    openai_api_key: str | None = None,
    vector_store_key: str | None = None,
) -> KnowledgeSearch:
    """Pick the hosted vector store when an OpenAI key is configured."""
    if openai_api_key:
        logger.info("Using hosted vector store for knowledge search")
        return VectorStoreKnowledgeSearch(
            VectorStoreClient(api_key=openai_api_key, vector_store_key=vector_store_key),
        )
    logger.info("Using local markdown knowledge base at %s", knowledge_dir)
    return MarkdownKnowledgeBase(knowledge_dir)


# ── Tool: search_knowledge_base ──────────────────────────────────────


class SearchKnowledgeBaseArgs(ToolArgs):
    query: str = Field(description="Search query to find relevant knowledge base articles")
    limit: int = Field(
        default=DEFAULT_RESULT_LIMIT, ge=1, le=20,
        description="Maximum number of snippets to return",
    )


async def search_knowledge_base(ctx: RunContext, args: SearchKnowledgeBaseArgs) -> ToolResult:
    if not args.query.strip():
        return failure("Search query cannot be empty.")
    try:
        results = await ctx.knowledge.search(args.query, args.limit)
    except Exception as exc:
        logger.error("Knowledge search failed for %r: %s", args.query, exc)
        return failure(f"Failed to search knowledge base: {exc}")

    ctx.knowledge_results.extend(results)
    return ToolResult.ok(
        query=args.query,
        results=[r.model_dump() for r in results],
        count=len(results),
    )


SEARCH_KNOWLEDGE_BASE = ToolSpec(
    name=ToolName.SEARCH_KNOWLEDGE_BASE,
    description=(
        "Search the company knowledge base for help articles and policy documentation. "
        "Returns ranked snippets with filename, relevance score and text. If you use a "
        "snippet in your draft, pass the highest-scoring one to write_draft as the citation."
    ),
    args_schema=SearchKnowledgeBaseArgs,
    execute=search_knowledge_base,
)
