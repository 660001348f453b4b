"""Drafting tools: ``write_draft`` (terminal action of a run) and the
``explain_next_tool_call`` transparency tool."""

from __future__ import annotations

import asyncio
import logging

from pydantic import Field

from triage_agent.models import Citation, KnowledgeResult
from triage_agent.run_context import RunContext
from triage_agent.services.store import StoreError
from triage_agent.tools.registry import ToolArgs, ToolName, ToolResult, ToolSpec, failure

logger = logging.getLogger(__name__)


# ── Tool: write_draft ────────────────────────────────────────────────


class WriteDraftArgs(ToolArgs):
    email_id: int = Field(description="ID of the email being responded to")
    thread_id: int = Field(description="ID of the thread this draft belongs to")
    message_body: str = Field(min_length=1, description="The body text of the draft email response")
    citation_filename: str | None = Field(
        default=None,
        description="Filename of the knowledge base source if search results were used",
    )
    citation_score: float | None = Field(
        default=None,
        description="Relevance score of the knowledge base source if search results were used",
    )
    citation_text: str | None = Field(
        default=None,
        description="Text excerpt from the knowledge base source if search results were used",
    )
    confidence: float = Field(default=0.85, description="Confidence score for this draft (0-1)")


def build_citation(args: WriteDraftArgs) -> Citation | None:
    """Reconstruct the citation only when filename, score and text are all present."""
    if not args.citation_filename or args.citation_score is None or not args.citation_text:
        return None
    return Citation(
        filename=args.citation_filename,
        score=args.citation_score,
        text=args.citation_text,
    )


def _returned_result(ctx: RunContext, citation: Citation) -> KnowledgeResult | None:
    """The search result from this run that *citation* quotes, if any.

    The cited text may be an excerpt of the returned snippet but never adds
    to it.
    """
    excerpt = citation.text.strip()
    for result in ctx.knowledge_results:
        if result.filename == citation.filename and excerpt and excerpt in result.text:
            return result
    return None


async def write_draft(ctx: RunContext, args: WriteDraftArgs) -> ToolResult:
    if args.thread_id != ctx.thread_id:
        return failure(
            f"Thread mismatch: this run is working on thread {ctx.thread_id}, "
            f"not {args.thread_id}."
        )

    citation = build_citation(args)
    citation_dropped = False
    if citation is not None:
        source = _returned_result(ctx, citation)
        if source is None:
            logger.warning(
                "Dropping citation %r for thread %s: not returned by a knowledge search in this run",
                citation.filename, ctx.thread_id,
            )
            citation = None
            citation_dropped = True
        else:
            # Score and text come from the search, not from the model
            citation = Citation(filename=source.filename, score=source.score, text=source.text)

    try:
        email = await asyncio.to_thread(ctx.store.get_email_by_id, args.email_id)
        if email is None or email.thread_id != ctx.thread_id:
            return failure(f"Email {args.email_id} not found in thread {ctx.thread_id}")

        draft = await asyncio.to_thread(
            ctx.store.save_draft_response,
            args.email_id,
            ctx.thread_id,
            args.message_body,
            args.confidence,
            citation,
        )
    except StoreError as exc:
        logger.error("write_draft failed for thread %s: %s", ctx.thread_id, exc)
        return failure(f"Failed to create draft: {exc}")

    ctx.draft = draft
    result = ToolResult.ok(
        draftId=draft.id,
        version=draft.version,
        message="Draft created successfully",
        hasCitation=draft.citation is not None,
    )
    if citation_dropped:
        result["warning"] = (
            "Citation was not stored: it does not match any knowledge base result "
            "returned in this run."
        )
    return result


WRITE_DRAFT = ToolSpec(
    name=ToolName.WRITE_DRAFT,
    description=(
        "Create the draft email response for human review. This ends your work on the "
        "thread. IMPORTANT: if you used knowledge base results to construct the draft, you "
        "MUST include the highest scoring one as the citation (filename, score and text). "
        "DO NOT add a citation if you did not use knowledge base results."
    ),
    args_schema=WriteDraftArgs,
    execute=write_draft,
)


# ── Tool: explain_next_tool_call ─────────────────────────────────────


class ExplainNextToolCallArgs(ToolArgs):
    explanation: str = Field(
        description="A brief explanation of what you plan to do with your next tool call",
    )
    next_tool_name: str = Field(
        description=(
            "The name of the tool you plan to use next (e.g., get_customer_history, "
            "search_customer_emails, tag_email, search_knowledge_base, write_draft)"
        ),
    )


async def explain_next_tool_call(ctx: RunContext, args: ExplainNextToolCallArgs) -> ToolResult:
    logger.debug(
        "Thread %s next action: %s [next tool: %s]",
        ctx.thread_id, args.explanation, args.next_tool_name,
    )
    return ToolResult.ok(message="Explanation noted", nextToolCall=args.next_tool_name)


EXPLAIN_NEXT_TOOL_CALL = ToolSpec(
    name=ToolName.EXPLAIN_NEXT_TOOL_CALL,
    description=(
        "Explain what you're about to do with your next tool call and why. Call it "
        "before every other tool to keep your decision-making transparent."
    ),
    args_schema=ExplainNextToolCallArgs,
    execute=explain_next_tool_call,
)
