"""SQLite-backed persistence for threads, emails, tags, drafts and agent actions.

The agent only ever talks to the store through the methods below; each call
is its own transaction.  The connection is shared across threads (the async
tools offload every call with ``asyncio.to_thread``) and guarded by a
``threading.Lock``.

Pass ``":memory:"`` as the path for an ephemeral database (tests, demos).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from triage_agent.models import (
    AgentAction,
    Citation,
    DraftResponse,
    Email,
    EmailTag,
    Thread,
    normalize_confidence,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    participant_emails TEXT NOT NULL DEFAULT '[]',
    last_activity_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS emails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id INTEGER NOT NULL REFERENCES threads(id),
    from_email TEXT NOT NULL,
    to_emails TEXT NOT NULL DEFAULT '[]',
    subject TEXT NOT NULL,
    body_text TEXT,
    direction TEXT NOT NULL DEFAULT 'inbound',
    sent_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_email);
CREATE INDEX IF NOT EXISTS idx_emails_thread ON emails(thread_id);
CREATE TABLE IF NOT EXISTS email_tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL REFERENCES emails(id),
    tag TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS draft_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL REFERENCES emails(id),
    thread_id INTEGER NOT NULL REFERENCES threads(id),
    generated_content TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    version INTEGER NOT NULL DEFAULT 1,
    parent_draft_id INTEGER REFERENCES draft_responses(id),
    confidence_score REAL,
    citation TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS agent_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    description TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_actions_thread ON agent_actions(thread_id);
"""


class StoreError(Exception):
    """Raised when a persistence call fails."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SupportStore:
    """Thin data-access layer over a single SQLite connection."""

    def __init__(self, path: str = ":memory:") -> None:
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(_SCHEMA)
        logger.debug("Support store ready at %s", path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Internal helpers ─────────────────────────────────────────────

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run one atomic unit of work; sqlite errors surface as StoreError."""
        with self._lock:
            try:
                cursor = self._conn.cursor()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(str(exc)) from exc
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> Thread:
        return Thread(
            id=row["id"],
            subject=row["subject"],
            status=row["status"],
            participant_emails=json.loads(row["participant_emails"]),
            last_activity_at=row["last_activity_at"],
        )

    @staticmethod
    def _row_to_email(row: sqlite3.Row) -> Email:
        return Email(
            id=row["id"],
            thread_id=row["thread_id"],
            from_email=row["from_email"],
            to_emails=json.loads(row["to_emails"]),
            subject=row["subject"],
            body_text=row["body_text"],
            direction=row["direction"],
            sent_at=row["sent_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_draft(row: sqlite3.Row) -> DraftResponse:
        citation = json.loads(row["citation"]) if row["citation"] else None
        return DraftResponse(
            id=row["id"],
            email_id=row["email_id"],
            thread_id=row["thread_id"],
            generated_content=row["generated_content"],
            status=row["status"],
            version=row["version"],
            parent_draft_id=row["parent_draft_id"],
            confidence_score=row["confidence_score"],
            citation=Citation(**citation) if citation else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> AgentAction:
        return AgentAction(
            id=row["id"],
            thread_id=row["thread_id"],
            action=row["action"],
            description=row["description"],
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
        )

    # ── Threads & emails ─────────────────────────────────────────────

    def create_thread(
        self,
        subject: str,
        participant_emails: list[str] | None = None,
        status: str = "active",
    ) -> Thread:
        with self._transaction() as cur:
            cur.execute(
                "INSERT INTO threads (subject, status, participant_emails, last_activity_at) "
                "VALUES (?, ?, ?, ?)",
                (subject, status, json.dumps(participant_emails or []), _now()),
            )
            cur.execute("SELECT * FROM threads WHERE id = ?", (cur.lastrowid,))
            return self._row_to_thread(cur.fetchone())

    def add_email(
        self,
        thread_id: int,
        from_email: str,
        to_emails: list[str],
        subject: str,
        body_text: str,
        direction: str = "inbound",
    ) -> Email:
        """Record an email on a thread and bump the thread's activity time."""
        now = _now()
        with self._transaction() as cur:
            cur.execute(
                "INSERT INTO emails (thread_id, from_email, to_emails, subject, body_text, "
                "direction, sent_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (thread_id, from_email, json.dumps(to_emails), subject, body_text,
                 direction, now, now),
            )
            email_id = cur.lastrowid
            cur.execute(
                "UPDATE threads SET last_activity_at = ? WHERE id = ?", (now, thread_id),
            )
            cur.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
            return self._row_to_email(cur.fetchone())

    def get_thread(self, thread_id: int) -> Thread | None:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM threads WHERE id = ?", (thread_id,))
            row = cur.fetchone()
        return self._row_to_thread(row) if row else None

    def get_email_by_id(self, email_id: int) -> Email | None:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
            row = cur.fetchone()
        return self._row_to_email(row) if row else None

    def search_emails(self, sender: str, query: str = "", limit: int = 10) -> list[Email]:
        """Emails from *sender*, newest first; *query* filters on body text."""
        sql = "SELECT * FROM emails WHERE from_email = ?"
        params: list[Any] = [sender]
        if query and query.strip():
            sql += " AND body_text LIKE ? ESCAPE '\\'"
            params.append(f"%{_escape_like(query.strip())}%")
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._transaction() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._row_to_email(r) for r in rows]

    def get_sorted_emails_by_thread(self, thread_id: int) -> list[Email]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM emails WHERE thread_id = ? ORDER BY created_at, id",
                (thread_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_email(r) for r in rows]

    def get_latest_email_in_thread(self, thread_id: int) -> Email | None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM emails WHERE thread_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (thread_id,),
            )
            row = cur.fetchone()
        return self._row_to_email(row) if row else None

    # ── Tags ─────────────────────────────────────────────────────────

    def insert_email_tags(self, rows: list[dict[str, Any]]) -> list[EmailTag]:
        """Insert ``{"email_id", "tag", "confidence"}`` rows in one transaction."""
        inserted: list[EmailTag] = []
        with self._transaction() as cur:
            for row in rows:
                confidence = normalize_confidence(row["confidence"])
                cur.execute(
                    "INSERT INTO email_tags (email_id, tag, confidence, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (row["email_id"], row["tag"], confidence, _now()),
                )
                inserted.append(
                    EmailTag(
                        id=cur.lastrowid,
                        email_id=row["email_id"],
                        tag=row["tag"],
                        confidence=confidence,
                    )
                )
        return inserted

    def get_tags_for_email(self, email_id: int) -> list[EmailTag]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM email_tags WHERE email_id = ? ORDER BY id", (email_id,),
            )
            rows = cur.fetchall()
        return [
            EmailTag(id=r["id"], email_id=r["email_id"], tag=r["tag"], confidence=r["confidence"])
            for r in rows
        ]

    # ── Drafts ───────────────────────────────────────────────────────

    def save_draft_response(
        self,
        email_id: int,
        thread_id: int,
        generated_content: str,
        confidence_score: float | None = None,
        citation: Citation | None = None,
    ) -> DraftResponse:
        """Persist a pending draft.

        A thread that already has a draft gets a new revision: ``version``
        is bumped and ``parent_draft_id`` points at the previous draft.
        """
        if confidence_score is not None:
            confidence_score = normalize_confidence(confidence_score)
        with self._transaction() as cur:
            cur.execute(
                "SELECT id, version FROM draft_responses WHERE thread_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (thread_id,),
            )
            previous = cur.fetchone()
            version = previous["version"] + 1 if previous else 1
            parent_id = previous["id"] if previous else None
            cur.execute(
                "INSERT INTO draft_responses (email_id, thread_id, generated_content, status, "
                "version, parent_draft_id, confidence_score, citation, created_at) "
                "VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, ?)",
                (
                    email_id,
                    thread_id,
                    generated_content,
                    version,
                    parent_id,
                    confidence_score,
                    citation.model_dump_json() if citation else None,
                    _now(),
                ),
            )
            cur.execute("SELECT * FROM draft_responses WHERE id = ?", (cur.lastrowid,))
            return self._row_to_draft(cur.fetchone())

    def get_draft(self, draft_id: int) -> DraftResponse | None:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM draft_responses WHERE id = ?", (draft_id,))
            row = cur.fetchone()
        return self._row_to_draft(row) if row else None

    def get_latest_draft_for_thread(self, thread_id: int) -> DraftResponse | None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM draft_responses WHERE thread_id = ? ORDER BY id DESC LIMIT 1",
                (thread_id,),
            )
            row = cur.fetchone()
        return self._row_to_draft(row) if row else None

    # ── Agent actions ────────────────────────────────────────────────

    def log_agent_action(
        self,
        thread_id: int,
        action: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> AgentAction:
        with self._transaction() as cur:
            cur.execute(
                "INSERT INTO agent_actions (thread_id, action, description, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (thread_id, action, description, json.dumps(metadata or {}, default=str), _now()),
            )
            cur.execute("SELECT * FROM agent_actions WHERE id = ?", (cur.lastrowid,))
            return self._row_to_action(cur.fetchone())

    def get_thread_actions(self, thread_id: int) -> list[AgentAction]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM agent_actions WHERE thread_id = ? ORDER BY id", (thread_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_action(r) for r in rows]

    def clear_agent_data(self) -> None:
        """Bulk cleanup of agent output (tags, drafts, actions) for test data resets."""
        with self._transaction() as cur:
            cur.execute("DELETE FROM agent_actions")
            cur.execute("DELETE FROM draft_responses")
            cur.execute("DELETE FROM email_tags")
        logger.info("Cleared agent actions, drafts and tags")
