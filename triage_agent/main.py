"""CLI entry point for the support triage agent.

Runs one reasoning loop for a thread and prints the draft and the action
trail.  For background processing use the FastAPI server
(``triage_agent/server.py``).

Usage:
    uv run python -m triage_agent.main --seed-demo          # seed a thread, triage it
    uv run python -m triage_agent.main --thread-id 3        # triage an existing thread
    uv run python -m triage_agent.main --thread-id 3 --debug
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from triage_agent.agent import EmailAgent, RunResult
from triage_agent.config import DATABASE_PATH, KNOWLEDGE_BASE_DIR, OPENAI_API_KEY, VECTOR_STORE_KEY
from triage_agent.services.store import SupportStore
from triage_agent.tools.knowledge import build_knowledge_search

logger = logging.getLogger(__name__)

DEMO_CUSTOMER = "jordan.lee@example.com"
DEMO_SUPPORT = "support@example.com"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("triage_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def seed_demo_thread(store: SupportStore) -> int:
    """Create a small two-email thread about returns.  Returns its id."""
    thread = store.create_thread(
        "Returning my order", participant_emails=[DEMO_CUSTOMER, DEMO_SUPPORT],
    )
    store.add_email(
        thread.id, DEMO_CUSTOMER, [DEMO_SUPPORT], "Returning my order",
        "Hi, the jacket I ordered last week doesn't fit. Can I send it back?",
    )
    store.add_email(
        thread.id, DEMO_CUSTOMER, [DEMO_SUPPORT], "Re: Returning my order",
        "Also, what is your return policy? Do I pay for the return shipping?",
    )
    return thread.id


def print_result(result: RunResult) -> None:
    print("\n" + "=" * 60)
    print("  Action trail")
    print("=" * 60)
    for action in result.actions:
        status = action.status or "-"
        print(f"  [{status:>7}] {action.action}: {action.description}")

    print("\n" + "=" * 60)
    if result.draft is None:
        print(f"  No draft: {result.error}")
        print("=" * 60 + "\n")
        return
    draft = result.draft
    print(f"  Draft {draft.id} (v{draft.version}, confidence {draft.confidence_score})")
    print("=" * 60)
    print(draft.generated_content)
    if draft.citation is not None:
        print(f"\n  Source: {draft.citation.filename} (score {draft.citation.score})")
    print()


async def _run(thread_id: int | None, seed_demo: bool, database: str) -> RunResult:
    store = SupportStore(database)
    try:
        if seed_demo:
            thread_id = seed_demo_thread(store)
            print(f"Seeded demo thread {thread_id}")
        knowledge = build_knowledge_search(KNOWLEDGE_BASE_DIR, OPENAI_API_KEY, VECTOR_STORE_KEY)
        agent = EmailAgent(store, knowledge)
        return await agent.process_email(thread_id)
    finally:
        store.close()


def main():
    """Triage one thread from the command line."""
    parser = argparse.ArgumentParser(description="Support triage agent CLI")
    parser.add_argument("--thread-id", type=int, help="Thread to triage")
    parser.add_argument(
        "--seed-demo", action="store_true",
        help="Create a demo thread about returns and triage it",
    )
    parser.add_argument("--database", default=DATABASE_PATH, help="SQLite database path")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()
    if args.thread_id is None and not args.seed_demo:
        parser.error("pass --thread-id or --seed-demo")

    load_dotenv()
    _configure_logging(debug=args.debug)

    try:
        result = asyncio.run(_run(args.thread_id, args.seed_demo, args.database))
    except KeyboardInterrupt:
        print("\n\nInterrupted.")
        raise SystemExit(130) from None

    print_result(result)
    raise SystemExit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
