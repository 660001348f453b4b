"""Domain records shared by the store, the tools and the reasoning loop.

These mirror the rows the support backend keeps (threads, emails, tags,
drafts, agent actions).  They are plain Pydantic models so tool results can
be serialised straight into the action log and back to the model.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ThreadStatus = Literal["active", "closed", "needs_attention"]
EmailDirection = Literal["inbound", "outbound"]
DraftStatus = Literal["pending", "approved", "rejected", "sent"]


class TagName(str, Enum):
    """Categories the tagging tool may attach to an email."""

    SPAM = "spam"
    LEGAL = "legal"
    SALES = "sales"
    SUPPORT = "support"
    BILLING = "billing"
    TECHNICAL = "technical"
    GENERAL = "general"


def normalize_confidence(value: float) -> float:
    """Clamp *value* to [0, 1] and round to the 3 decimals the store keeps."""
    return round(min(max(float(value), 0.0), 1.0), 3)


class Thread(BaseModel):
    id: int
    subject: str
    status: ThreadStatus = "active"
    participant_emails: list[str] = Field(default_factory=list)
    last_activity_at: datetime


class Email(BaseModel):
    id: int
    thread_id: int
    from_email: str
    to_emails: list[str] = Field(default_factory=list)
    subject: str
    body_text: str | None = None
    direction: EmailDirection = "inbound"
    sent_at: datetime | None = None
    created_at: datetime


class EmailTag(BaseModel):
    id: int
    email_id: int
    tag: TagName
    confidence: float

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return normalize_confidence(value)


class KnowledgeResult(BaseModel):
    """One ranked snippet returned by the knowledge search collaborator."""

    filename: str
    score: float
    text: str


class Citation(BaseModel):
    """The single knowledge-base source stored on a draft."""

    filename: str
    score: float
    text: str


class DraftResponse(BaseModel):
    id: int
    email_id: int
    thread_id: int
    generated_content: str
    status: DraftStatus = "pending"
    version: int = 1
    parent_draft_id: int | None = None
    confidence_score: float | None = None
    citation: Citation | None = None
    created_at: datetime


class AgentAction(BaseModel):
    """Immutable audit entry written for every tool call the agent makes."""

    id: int
    thread_id: int
    action: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def status(self) -> str | None:
        """``success`` / ``error`` for tool calls, ``None`` otherwise."""
        return self.metadata.get("status")
