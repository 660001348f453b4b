"""Tools over the customer's correspondence: history, search, tagging, thread.

Each tool wraps a ``SupportStore`` call, offloaded with ``asyncio.to_thread``
because the store is blocking SQLite.  Storage failures come back as
structured failures the model can read.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import Field

from triage_agent.models import TagName, normalize_confidence
from triage_agent.run_context import RunContext
from triage_agent.services.store import StoreError
from triage_agent.tools.registry import ToolArgs, ToolName, ToolResult, ToolSpec, failure

logger = logging.getLogger(__name__)


def confidence_from_model(value: float) -> float:
    """Read a model-supplied confidence as a fraction in [0, 1].

    Values above 1 are treated as percentages (the tagging contract used to
    be 0-100), then clamped and rounded.
    """
    value = float(value)
    if value > 1:
        value = value / 100
    return normalize_confidence(value)


# ── Tool 1: search_emails ────────────────────────────────────────────


class SearchEmailsArgs(ToolArgs):
    sender_email: str = Field(description="Email address of the sender to search for")
    query: str = Field(
        default="",
        description="Text to search for in email content (pass empty string if not needed)",
    )
    limit: int = Field(default=10, ge=1, le=100, description="Maximum number of emails to return")


async def search_emails(ctx: RunContext, args: SearchEmailsArgs) -> ToolResult:
    try:
        emails = await asyncio.to_thread(
            ctx.store.search_emails, args.sender_email, args.query, args.limit,
        )
    except StoreError as exc:
        logger.error("search_emails failed: %s", exc)
        return failure(f"Failed to search emails: {exc}")

    return ToolResult.ok(
        emails=[e.model_dump(mode="json") for e in emails],
        count=len(emails),
    )


SEARCH_EMAILS = ToolSpec(
    name=ToolName.SEARCH_EMAILS,
    description=(
        "Search for emails from a specific sender, newest first. An empty query "
        "returns every email from that sender."
    ),
    args_schema=SearchEmailsArgs,
    execute=search_emails,
)


# ── Tool 2: get_customer_history ─────────────────────────────────────


class GetCustomerHistoryArgs(ToolArgs):
    sender_email: str = Field(description="Email address of the customer to get history for")
    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of emails to return")


async def get_customer_history(ctx: RunContext, args: GetCustomerHistoryArgs) -> ToolResult:
    try:
        emails = await asyncio.to_thread(
            ctx.store.search_emails, args.sender_email, "", args.limit,
        )
    except StoreError as exc:
        logger.error("get_customer_history failed: %s", exc)
        return failure(f"Failed to get customer history: {exc}")

    return ToolResult.ok(
        emails=[e.model_dump(mode="json") for e in emails],
        count=len(emails),
        summary=f"Found {len(emails)} emails from {args.sender_email}",
    )


GET_CUSTOMER_HISTORY = ToolSpec(
    name=ToolName.GET_CUSTOMER_HISTORY,
    description=(
        "Get the complete email history for a customer: previous issues, requests, "
        "resolutions and support interactions. Use it after reading the current "
        "thread, before any targeted search."
    ),
    args_schema=GetCustomerHistoryArgs,
    execute=get_customer_history,
)


# ── Tool 3: search_customer_emails ───────────────────────────────────


class SearchCustomerEmailsArgs(ToolArgs):
    sender_email: str = Field(description="Email address of the customer to search within")
    search_query: str = Field(
        description="Specific text, keywords, or phrases to search for in email content",
    )
    limit: int = Field(default=10, ge=1, le=100, description="Maximum number of matching emails")


async def search_customer_emails(ctx: RunContext, args: SearchCustomerEmailsArgs) -> ToolResult:
    if not args.search_query.strip():
        return failure(
            "Search query cannot be empty. Use get_customer_history tool for general context instead."
        )

    try:
        emails = await asyncio.to_thread(
            ctx.store.search_emails, args.sender_email, args.search_query, args.limit,
        )
    except StoreError as exc:
        logger.error("search_customer_emails failed: %s", exc)
        return failure(f"Failed to search customer emails: {exc}")

    return ToolResult.ok(
        emails=[e.model_dump(mode="json") for e in emails],
        count=len(emails),
        searchQuery=args.search_query,
        summary=(
            f'Found {len(emails)} emails from {args.sender_email} '
            f'containing "{args.search_query}"'
        ),
    )


SEARCH_CUSTOMER_EMAILS = ToolSpec(
    name=ToolName.SEARCH_CUSTOMER_EMAILS,
    description=(
        "Search for specific content within a customer's email history: product or "
        "feature names, error messages, refunds, order numbers, earlier promises. "
        "Use when you need specific information rather than general context."
    ),
    args_schema=SearchCustomerEmailsArgs,
    execute=search_customer_emails,
)


# ── Tool 4: tag_email ────────────────────────────────────────────────


class TagEmailArgs(ToolArgs):
    email_id: str | int = Field(description="ID of the email to tag")
    tags: list[TagName] = Field(min_length=1, description="Categories to tag the email with")
    confidence: float = Field(default=0.8, description="Confidence for the tagging (0-1)")


async def tag_email(ctx: RunContext, args: TagEmailArgs) -> ToolResult:
    try:
        email_id = int(str(args.email_id).strip())
    except ValueError:
        return failure(f"Invalid email ID: {args.email_id}")

    try:
        email = await asyncio.to_thread(ctx.store.get_email_by_id, email_id)
        if email is None:
            return failure(f"Email not found: {args.email_id}")

        confidence = confidence_from_model(args.confidence)
        inserted = await asyncio.to_thread(
            ctx.store.insert_email_tags,
            [{"email_id": email_id, "tag": tag.value, "confidence": confidence} for tag in args.tags],
        )
    except StoreError as exc:
        logger.error("tag_email failed for %s: %s", args.email_id, exc)
        return failure(f"Failed to tag email: {exc}")

    return ToolResult.ok(
        emailId=email_id,
        tags=[t.tag.value for t in inserted],
        confidence=confidence,
    )


TAG_EMAIL = ToolSpec(
    name=ToolName.TAG_EMAIL,
    description=(
        "Tag/categorize an email as spam, legal, sales, support, billing, technical "
        "or general. Tag the email before searching the knowledge base."
    ),
    args_schema=TagEmailArgs,
    execute=tag_email,
)


# ── Tool 5: read_thread ──────────────────────────────────────────────


class ReadThreadArgs(ToolArgs):
    pass


async def read_thread(ctx: RunContext | None, args: ReadThreadArgs) -> ToolResult:
    if ctx is None:
        return failure("No context available")

    try:
        thread = await asyncio.to_thread(ctx.store.get_thread, ctx.thread_id)
        if thread is None:
            return failure(f"No context available: thread {ctx.thread_id} does not exist")
        emails = await asyncio.to_thread(ctx.store.get_sorted_emails_by_thread, ctx.thread_id)
        entries = []
        for email in emails:
            tags = await asyncio.to_thread(ctx.store.get_tags_for_email, email.id)
            entry = email.model_dump(mode="json")
            entry["tags"] = [{"tag": t.tag.value, "confidence": t.confidence} for t in tags]
            entries.append(entry)
    except StoreError as exc:
        logger.error("read_thread failed for %s: %s", ctx.thread_id, exc)
        return failure(f"Failed to read thread: {exc}")

    return ToolResult.ok(
        threadId=thread.id,
        subject=thread.subject,
        status=thread.status,
        emails=entries,
        count=len(entries),
    )


READ_THREAD = ToolSpec(
    name=ToolName.READ_THREAD,
    description=(
        "Read the full email thread context. Returns all emails in the current "
        "thread, oldest first, with any tags already attached."
    ),
    args_schema=ReadThreadArgs,
    execute=read_thread,
)
