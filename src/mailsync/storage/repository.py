"""Read and mutation boundary used by the inbox UI.

The sync pipeline writes messages through ``insert_email``; everything else
here serves the inbox: listing, search, thread views and the small set of
user mutations (read/starred flags and moves). Flag changes keep the
owning thread's unread counter in step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar

from pydantic import BaseModel, Field

from mailsync.ingestion.imap.attachment_models import Attachment
from mailsync.ingestion.imap.attachment_store import AttachmentStore
from mailsync.ingestion.imap.email_parser import EmailAddress, ParsedMessage
from mailsync.ingestion.imap.thread_models import Thread
from mailsync.ingestion.imap.thread_resolver import ThreadResolver

from .database import MailDatabase, dumps_json, from_iso, loads_json, to_iso, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoredEmail(BaseModel):
    """One message row as the inbox sees it."""

    id: int
    account_id: str
    folder: str
    thread_id: int
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    subject: str = ""
    from_address: str = ""
    from_name: Optional[str] = None
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    snippet: str = ""
    importance: str = "normal"
    size: int = 0
    received_at: datetime
    is_read: bool = False
    is_starred: bool = False
    has_attachments: bool = False


class EmailDetail(StoredEmail):
    """A message with its bodies, folder labels and attachments."""

    body_plain: Optional[str] = None
    body_html: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)


class ThreadView(BaseModel):
    thread: Thread
    emails: List[StoredEmail]


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class BulkAction(str, Enum):
    MARK_READ = "mark_read"
    MARK_UNREAD = "mark_unread"
    STAR = "star"
    UNSTAR = "unstar"
    MOVE = "move"


@dataclass
class MailboxCounts:
    total: int = 0
    unread: int = 0
    starred: int = 0
    by_folder: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "unread": self.unread, "starred": self.starred, "by_folder": self.by_folder}


_LIST_COLUMNS = """
    id, account_id, folder, thread_id, message_id, in_reply_to, references_json, subject,
    from_address, from_name, to_json, cc_json, snippet, importance, size, received_at,
    is_read, is_starred, has_attachments
"""


def _summary_fields(row) -> Dict[str, Any]:
    return dict(
        id=row["id"],
        account_id=row["account_id"],
        folder=row["folder"],
        thread_id=row["thread_id"],
        message_id=row["message_id"],
        in_reply_to=row["in_reply_to"],
        references=loads_json(row["references_json"]),
        subject=row["subject"],
        from_address=row["from_address"],
        from_name=row["from_name"],
        to_addresses=loads_json(row["to_json"]),
        cc_addresses=loads_json(row["cc_json"]),
        snippet=row["snippet"],
        importance=row["importance"],
        size=row["size"],
        received_at=from_iso(row["received_at"]),
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
        has_attachments=bool(row["has_attachments"]),
    )


def _like(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class EmailRepository:
    """Persistence and queries over stored messages."""

    def __init__(
        self,
        db: MailDatabase,
        threads: ThreadResolver,
        attachments: Optional[AttachmentStore] = None,
    ) -> None:
        self._db = db
        self._threads = threads
        self._attachments = attachments

    # ------------------------------------------------------------------
    # Writes from the sync pipeline
    # ------------------------------------------------------------------

    def insert_email(self, account_id: str, message: ParsedMessage, thread_id: int) -> int:
        """Store a newly parsed message and its reference edges."""
        sender = message.from_address
        with self._db.transaction():
            cur = self._db.execute(
                """
                INSERT INTO emails(
                    account_id, folder, uid, uidvalidity, message_id, in_reply_to, references_json,
                    thread_id, subject, normalized_subject, from_address, from_name, to_json, cc_json,
                    body_plain, body_html, snippet, importance, size, received_at, is_read, is_starred,
                    has_attachments, dedup_hash, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    message.folder,
                    message.uid,
                    message.uidvalidity,
                    message.message_id,
                    message.in_reply_to,
                    dumps_json(message.ancestors),
                    thread_id,
                    message.subject,
                    message.normalized_subject,
                    sender.address if sender else "",
                    sender.display_name if sender else None,
                    dumps_json([addr.model_dump() for addr in message.to_addresses]),
                    dumps_json([addr.model_dump() for addr in message.cc_addresses]),
                    message.body_plain,
                    message.body_html,
                    message.snippet,
                    message.importance,
                    message.size,
                    to_iso(message.date),
                    int(message.is_read),
                    int(message.is_starred),
                    int(message.has_attachments),
                    message.dedup_hash,
                    to_iso(utcnow()),
                ),
            )
            email_id = int(cur.lastrowid)
            self._db.executemany(
                "INSERT OR IGNORE INTO email_references(account_id, email_id, ref_message_id) VALUES (?, ?, ?)",
                [(account_id, email_id, ref) for ref in message.ancestors],
            )
        return email_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_emails(
        self,
        account_id: str,
        *,
        folder: Optional[str] = None,
        is_read: Optional[bool] = None,
        is_starred: Optional[bool] = None,
        query: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[StoredEmail]:
        clauses = ["account_id = ?"]
        params: List[Any] = [account_id]
        if folder is not None:
            clauses.append("folder = ?")
            params.append(folder)
        if is_read is not None:
            clauses.append("is_read = ?")
            params.append(int(is_read))
        if is_starred is not None:
            clauses.append("is_starred = ?")
            params.append(int(is_starred))
        if query:
            clauses.append(
                "(subject LIKE ? ESCAPE '\\' OR from_address LIKE ? ESCAPE '\\' OR snippet LIKE ? ESCAPE '\\')"
            )
            params.extend([_like(query)] * 3)

        where = " AND ".join(clauses)
        total = int(self._db.scalar(f"SELECT COUNT(*) FROM emails WHERE {where}", params) or 0)
        rows = self._db.query(
            f"SELECT {_LIST_COLUMNS} FROM emails WHERE {where} ORDER BY received_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return Page(
            items=[StoredEmail(**_summary_fields(row)) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    def search(self, account_id: str, query: str, *, limit: int = 50) -> List[StoredEmail]:
        """Substring search over subject, sender, recipients and plain body."""
        pattern = _like(query)
        rows = self._db.query(
            f"""
            SELECT {_LIST_COLUMNS} FROM emails
            WHERE account_id = ? AND (
                subject LIKE ? ESCAPE '\\' OR from_address LIKE ? ESCAPE '\\'
                OR to_json LIKE ? ESCAPE '\\' OR body_plain LIKE ? ESCAPE '\\'
            )
            ORDER BY received_at DESC, id DESC
            LIMIT ?
            """,
            (account_id, pattern, pattern, pattern, pattern, limit),
        )
        return [StoredEmail(**_summary_fields(row)) for row in rows]

    def get_email(self, email_id: int) -> Optional[EmailDetail]:
        row = self._db.query_one("SELECT * FROM emails WHERE id = ?", (email_id,))
        if row is None:
            return None
        labels = [
            label["folder"]
            for label in self._db.query(
                "SELECT DISTINCT folder FROM email_folders WHERE email_id = ? ORDER BY folder",
                (email_id,),
            )
        ]
        attachments = self._attachments.list_for_email(email_id) if self._attachments else []
        return EmailDetail(
            **_summary_fields(row),
            body_plain=row["body_plain"],
            body_html=row["body_html"],
            labels=labels,
            attachments=attachments,
        )

    def get_thread(self, thread_id: int) -> Optional[ThreadView]:
        """Thread with its messages oldest first; merged ids redirect."""
        try:
            thread = self._threads.get(self._threads.resolve_id(thread_id))
        except KeyError:
            return None
        rows = self._db.query(
            f"SELECT {_LIST_COLUMNS} FROM emails WHERE thread_id = ? ORDER BY received_at, id",
            (thread.id,),
        )
        return ThreadView(thread=thread, emails=[StoredEmail(**_summary_fields(row)) for row in rows])

    def list_threads(self, account_id: str, *, limit: int = 50, offset: int = 0) -> Page[Thread]:
        return Page(
            items=self._threads.list_threads(account_id, limit=limit, offset=offset),
            total=self._threads.count_threads(account_id),
            limit=limit,
            offset=offset,
        )

    def counts(self, account_id: str) -> MailboxCounts:
        rows = self._db.query(
            """
            SELECT folder, COUNT(*) AS total, SUM(is_read = 0) AS unread, SUM(is_starred) AS starred
            FROM emails WHERE account_id = ? GROUP BY folder
            """,
            (account_id,),
        )
        counts = MailboxCounts()
        for row in rows:
            unread = int(row["unread"] or 0)
            counts.by_folder[row["folder"]] = {"total": row["total"], "unread": unread}
            counts.total += row["total"]
            counts.unread += unread
            counts.starred += int(row["starred"] or 0)
        return counts

    # ------------------------------------------------------------------
    # User mutations
    # ------------------------------------------------------------------

    def set_read(self, email_id: int, is_read: bool) -> bool:
        """Returns True when the flag actually changed."""
        with self._db.transaction():
            row = self._db.query_one("SELECT thread_id, is_read FROM emails WHERE id = ?", (email_id,))
            if row is None or bool(row["is_read"]) == is_read:
                return False
            self._db.execute("UPDATE emails SET is_read = ? WHERE id = ?", (int(is_read), email_id))
            self._threads.adjust_unread(row["thread_id"], -1 if is_read else 1)
        return True

    def set_starred(self, email_id: int, is_starred: bool) -> bool:
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE emails SET is_starred = ? WHERE id = ? AND is_starred != ?",
                (int(is_starred), email_id, int(is_starred)),
            )
        return cur.rowcount > 0

    def move(self, email_id: int, folder: str) -> bool:
        """Change the folder the inbox shows the message in."""
        if not folder:
            raise ValueError("Target folder must not be empty")
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE emails SET folder = ? WHERE id = ? AND folder != ?",
                (folder, email_id, folder),
            )
        return cur.rowcount > 0

    def bulk_update(
        self,
        email_ids: Iterable[int],
        action: BulkAction,
        *,
        folder: Optional[str] = None,
    ) -> int:
        """Apply one action to many messages atomically; returns changed rows."""
        action = BulkAction(action)
        if action == BulkAction.MOVE and not folder:
            raise ValueError("Bulk move requires a target folder")

        changed = 0
        with self._db.transaction():
            for email_id in email_ids:
                if action == BulkAction.MARK_READ:
                    changed += self.set_read(email_id, True)
                elif action == BulkAction.MARK_UNREAD:
                    changed += self.set_read(email_id, False)
                elif action == BulkAction.STAR:
                    changed += self.set_starred(email_id, True)
                elif action == BulkAction.UNSTAR:
                    changed += self.set_starred(email_id, False)
                else:
                    changed += self.move(email_id, folder)
        logger.info("Bulk update applied", extra={"action": action.value, "changed": changed})
        return changed


__all__ = [
    "BulkAction",
    "EmailDetail",
    "EmailRepository",
    "MailboxCounts",
    "Page",
    "StoredEmail",
    "ThreadView",
]
