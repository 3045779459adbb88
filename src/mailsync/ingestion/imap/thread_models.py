"""Conversation thread data models.

Threads group messages by RFC 5322 ancestry (Message-ID, References,
In-Reply-To). Thread ids are monotonic integers, so the lowest id of a set of
threads is always the earliest created one; merges keep that id and point the
others at it through ``merged_into``.

Models:
- Thread: persisted conversation with incrementally maintained aggregates
- ThreadMerge: audit record of two threads collapsing into one
- ThreadAssignment: how the resolver placed a message
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


_SUBJECT_PREFIX = re.compile(r"^\s*(re|fwd?|aw|sv)\s*(\[\d+\])?\s*:\s*", re.IGNORECASE)
_LIST_TAG = re.compile(r"^\s*\[[^\]]{1,40}\]\s*")


def normalize_subject(subject: Optional[str]) -> str:
    """Normalize a subject line for fallback thread matching.

    Strips any number of ``Re:``/``Fwd:``/``Fw:``/``Aw:``/``Sv:`` prefixes
    (with optional ``[n]`` counters), lowercases and collapses whitespace.
    """
    if not subject:
        return ""

    previous = None
    while previous != subject:
        previous = subject
        subject = _SUBJECT_PREFIX.sub("", subject, count=1)
        stripped = _LIST_TAG.sub("", subject, count=1)
        # Only drop a leading tag when a reply prefix follows it
        if _SUBJECT_PREFIX.match(stripped):
            subject = stripped

    return re.sub(r"\s+", " ", subject).strip().lower()


class MatchKind(str, Enum):
    """How a message was attached to its thread."""

    ANCESTOR = "ancestor"
    DESCENDANT = "descendant"
    SUBJECT = "subject"
    NEW = "new"


class Thread(BaseModel):
    """A conversation within one account."""

    id: int = Field(..., description="Monotonic thread identifier")
    account_id: str
    subject: str = ""
    normalized_subject: str = ""
    participants: List[str] = Field(default_factory=list)
    message_count: int = Field(default=0, ge=0)
    unread_count: int = Field(default=0, ge=0)
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime
    merged_into: Optional[int] = None

    @property
    def is_merged(self) -> bool:
        return self.merged_into is not None


class ThreadMerge(BaseModel):
    """Two or more threads found to be one conversation."""

    account_id: str
    canonical_id: int
    merged_id: int
    moved_messages: int = 0
    reason: str = "reference"
    merged_at: datetime


class ThreadAssignment(BaseModel):
    """Result of resolving a message to a thread."""

    thread_id: int
    match: MatchKind
    merges: List[ThreadMerge] = Field(default_factory=list)


__all__ = [
    "MatchKind",
    "Thread",
    "ThreadAssignment",
    "ThreadMerge",
    "normalize_subject",
]
