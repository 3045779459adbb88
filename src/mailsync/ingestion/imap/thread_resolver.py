"""Incremental conversation threading.

Every message is assigned to exactly one thread when it is committed:

1. Threads of stored messages whose Message-ID is in the new message's
   ancestor chain (plus parse-failure anchors carrying those ids).
2. Threads of stored messages that list the new message's Message-ID among
   their own ancestors (replies that arrived first).
3. Subject fallback, only between a message without any Message-ID,
   In-Reply-To or References header and another stored message: same
   normalized subject, a shared participant other than the account itself,
   and dates at most the window apart. A message carrying headers is
   matched against stored header-less messages only, so the pairing holds
   whichever of the two arrives first.
4. One thread found: adopt it. Several: merge them into the lowest id, which
   is the earliest created thread. None: open a new thread.

Merging is deterministic and idempotent, and every match is decided per
pair of messages, so the final grouping does not depend on arrival order.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set

from mailsync.storage.database import MailDatabase, dumps_json, from_iso, loads_json, to_iso, utcnow

from .email_parser import ParsedMessage
from .thread_models import MatchKind, Thread, ThreadAssignment, ThreadMerge

logger = logging.getLogger(__name__)


def _placeholders(values: Sequence[object]) -> str:
    return ",".join("?" for _ in values)


def _is_headerless(message: ParsedMessage) -> bool:
    return message.message_id is None and not message.ancestors


def _row_participants(row) -> Set[str]:
    people = {row["from_address"]} if row["from_address"] else set()
    for column in ("to_json", "cc_json"):
        people.update(entry["address"] for entry in loads_json(row[column]))
    return people


def _row_to_thread(row) -> Thread:
    return Thread(
        id=row["id"],
        account_id=row["account_id"],
        subject=row["subject"],
        normalized_subject=row["normalized_subject"],
        participants=loads_json(row["participants_json"]),
        message_count=row["message_count"],
        unread_count=row["unread_count"],
        first_message_at=from_iso(row["first_message_at"]),
        last_message_at=from_iso(row["last_message_at"]),
        created_at=from_iso(row["created_at"]),
        merged_into=row["merged_into"],
    )


class ThreadResolver:
    """Assigns messages to threads and keeps thread aggregates current."""

    def __init__(self, db: MailDatabase, *, subject_window_days: int = 30) -> None:
        self._db = db
        self._subject_window = timedelta(days=subject_window_days)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        account_id: str,
        message: ParsedMessage,
        *,
        own_addresses: Iterable[str] = (),
    ) -> ThreadAssignment:
        """Pick (or create) the thread for ``message``.

        Runs inside the caller's batch transaction when there is one.
        """
        with self._db.transaction():
            ancestors = message.ancestors
            ancestor_threads = self._ancestor_threads(account_id, ancestors)
            descendant_threads = self._descendant_threads(account_id, message.message_id)
            linked = {self.resolve_id(t) for t in ancestor_threads | descendant_threads}
            similar = {self.resolve_id(t) for t in self._subject_threads(account_id, message, own_addresses)}

            candidates = sorted(linked | similar)
            merges: List[ThreadMerge] = []
            if candidates:
                thread_id = candidates[0]
                for other in candidates[1:]:
                    reason = "reference" if other in linked else "subject"
                    merge = self.merge(account_id, thread_id, other, reason=reason)
                    if merge is not None:
                        merges.append(merge)
                if ancestor_threads:
                    match = MatchKind.ANCESTOR
                elif descendant_threads:
                    match = MatchKind.DESCENDANT
                else:
                    match = MatchKind.SUBJECT
            else:
                thread_id = self._create(account_id, message.subject, message.normalized_subject)
                match = MatchKind.NEW

            if ancestors:
                self._stamp_anchors(account_id, ancestors, thread_id)

        logger.debug(
            "Resolved thread",
            extra={"account_id": account_id, "thread_id": thread_id, "match": match.value, "merges": len(merges)},
        )
        return ThreadAssignment(thread_id=thread_id, match=match, merges=merges)

    def anchor_failure(self, account_id: str, message_id: Optional[str]) -> Optional[int]:
        """Thread for a message that failed to parse but exposed its Message-ID.

        Replies stored before the failure decide the thread; otherwise the
        anchor stays unassigned until the first reply stamps it.
        """
        if not message_id:
            return None
        with self._db.transaction():
            candidates = sorted({self.resolve_id(t) for t in self._descendant_threads(account_id, message_id)})
            if not candidates:
                return None
            for other in candidates[1:]:
                self.merge(account_id, candidates[0], other, reason="anchor")
            return candidates[0]

    def _ancestor_threads(self, account_id: str, ancestors: List[str]) -> Set[int]:
        if not ancestors:
            return set()
        marks = _placeholders(ancestors)
        rows = self._db.query(
            f"""
            SELECT thread_id FROM emails
            WHERE account_id = ? AND message_id IN ({marks})
            UNION
            SELECT thread_id FROM parse_failures
            WHERE account_id = ? AND message_id IN ({marks}) AND thread_id IS NOT NULL
            """,
            (account_id, *ancestors, account_id, *ancestors),
        )
        return {row["thread_id"] for row in rows}

    def _descendant_threads(self, account_id: str, message_id: Optional[str]) -> Set[int]:
        if not message_id:
            return set()
        rows = self._db.query(
            """
            SELECT DISTINCT e.thread_id FROM email_references r
            JOIN emails e ON e.id = r.email_id
            WHERE r.account_id = ? AND r.ref_message_id = ?
            """,
            (account_id, message_id),
        )
        return {row["thread_id"] for row in rows}

    def _subject_threads(
        self,
        account_id: str,
        message: ParsedMessage,
        own_addresses: Iterable[str],
    ) -> Set[int]:
        """Threads of stored messages the subject fallback pairs with ``message``."""
        if not message.normalized_subject:
            return set()
        own = {address.lower() for address in own_addresses}
        people = set(message.participants) - own
        if not people:
            return set()

        sql = """
            SELECT thread_id, from_address, to_json, cc_json FROM emails
            WHERE account_id = ? AND normalized_subject = ?
              AND received_at >= ? AND received_at <= ?
        """
        if not _is_headerless(message):
            sql += " AND message_id IS NULL AND references_json = '[]'"
        rows = self._db.query(
            sql,
            (
                account_id,
                message.normalized_subject,
                to_iso(message.date - self._subject_window),
                to_iso(message.date + self._subject_window),
            ),
        )
        return {row["thread_id"] for row in rows if people & (_row_participants(row) - own)}

    def _stamp_anchors(self, account_id: str, ancestors: List[str], thread_id: int) -> None:
        marks = _placeholders(ancestors)
        self._db.execute(
            f"""
            UPDATE parse_failures SET thread_id = ?
            WHERE account_id = ? AND message_id IN ({marks}) AND thread_id IS NULL
            """,
            (thread_id, account_id, *ancestors),
        )

    def _create(self, account_id: str, subject: str, normalized_subject: str) -> int:
        cur = self._db.execute(
            """
            INSERT INTO threads(account_id, subject, normalized_subject, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (account_id, subject, normalized_subject, to_iso(utcnow())),
        )
        return int(cur.lastrowid)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def record_member(self, thread_id: int, message: ParsedMessage) -> None:
        """Fold one newly stored message into its thread's aggregates."""
        with self._db.transaction():
            thread = self.get(thread_id)
            participants = list(thread.participants)
            for address in message.participants:
                if address not in participants:
                    participants.append(address)
            first = min(filter(None, [thread.first_message_at, message.date]))
            last = max(filter(None, [thread.last_message_at, message.date]))
            subject = thread.subject or message.subject
            normalized = thread.normalized_subject or message.normalized_subject
            self._db.execute(
                """
                UPDATE threads SET
                    message_count = message_count + 1,
                    unread_count = unread_count + ?,
                    participants_json = ?,
                    first_message_at = ?,
                    last_message_at = ?,
                    subject = ?,
                    normalized_subject = ?
                WHERE id = ?
                """,
                (
                    0 if message.is_read else 1,
                    dumps_json(participants),
                    to_iso(first),
                    to_iso(last),
                    subject,
                    normalized,
                    thread_id,
                ),
            )

    def adjust_unread(self, thread_id: int, delta: int) -> None:
        with self._db.transaction():
            self._db.execute(
                "UPDATE threads SET unread_count = MAX(0, unread_count + ?) WHERE id = ?",
                (delta, self.resolve_id(thread_id)),
            )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge(self, account_id: str, canonical_id: int, merged_id: int, *, reason: str) -> Optional[ThreadMerge]:
        """Fold ``merged_id`` into ``canonical_id``; no-op if already merged."""
        canonical_id = self.resolve_id(canonical_id)
        merged_id = self.resolve_id(merged_id)
        if canonical_id == merged_id:
            return None
        if merged_id < canonical_id:
            canonical_id, merged_id = merged_id, canonical_id

        with self._db.transaction():
            canonical = self.get(canonical_id)
            merged = self.get(merged_id)
            moved = self._db.execute(
                "UPDATE emails SET thread_id = ? WHERE thread_id = ?",
                (canonical_id, merged_id),
            ).rowcount
            self._db.execute(
                "UPDATE parse_failures SET thread_id = ? WHERE thread_id = ?",
                (canonical_id, merged_id),
            )

            participants = list(canonical.participants)
            for address in merged.participants:
                if address not in participants:
                    participants.append(address)
            firsts = [d for d in (canonical.first_message_at, merged.first_message_at) if d]
            lasts = [d for d in (canonical.last_message_at, merged.last_message_at) if d]
            self._db.execute(
                """
                UPDATE threads SET
                    message_count = ?,
                    unread_count = ?,
                    participants_json = ?,
                    first_message_at = ?,
                    last_message_at = ?,
                    subject = CASE WHEN subject = '' THEN ? ELSE subject END,
                    normalized_subject = CASE WHEN normalized_subject = '' THEN ? ELSE normalized_subject END
                WHERE id = ?
                """,
                (
                    canonical.message_count + merged.message_count,
                    canonical.unread_count + merged.unread_count,
                    dumps_json(participants),
                    to_iso(min(firsts)) if firsts else None,
                    to_iso(max(lasts)) if lasts else None,
                    merged.subject,
                    merged.normalized_subject,
                    canonical_id,
                ),
            )
            self._db.execute(
                "UPDATE threads SET merged_into = ?, message_count = 0, unread_count = 0 WHERE id = ?",
                (canonical_id, merged_id),
            )
            self._db.execute(
                "UPDATE threads SET merged_into = ? WHERE merged_into = ?",
                (canonical_id, merged_id),
            )
            record = ThreadMerge(
                account_id=account_id,
                canonical_id=canonical_id,
                merged_id=merged_id,
                moved_messages=moved,
                reason=reason,
                merged_at=utcnow(),
            )
            self._db.execute(
                """
                INSERT INTO thread_merges(account_id, canonical_id, merged_id, moved_messages, reason, merged_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (account_id, canonical_id, merged_id, moved, reason, to_iso(record.merged_at)),
            )

        logger.info(
            "Merged threads",
            extra={
                "account_id": account_id,
                "canonical_id": canonical_id,
                "merged_id": merged_id,
                "moved_messages": moved,
                "reason": reason,
            },
        )
        return record

    def reconcile(self, account_id: str) -> List[ThreadMerge]:
        """Repair pass: merge threads still linked by reference edges.

        Also recomputes aggregates of every surviving thread from its
        members, which heals counters after manual edits.
        """
        merges: List[ThreadMerge] = []
        with self._db.transaction():
            edges = self._db.query(
                """
                SELECT DISTINCT child.thread_id AS a, parent.thread_id AS b
                FROM email_references r
                JOIN emails child ON child.id = r.email_id
                JOIN emails parent ON parent.account_id = r.account_id AND parent.message_id = r.ref_message_id
                WHERE r.account_id = ? AND child.thread_id != parent.thread_id
                UNION
                SELECT DISTINCT child.thread_id AS a, pf.thread_id AS b
                FROM email_references r
                JOIN emails child ON child.id = r.email_id
                JOIN parse_failures pf ON pf.account_id = r.account_id AND pf.message_id = r.ref_message_id
                WHERE r.account_id = ? AND pf.thread_id IS NOT NULL AND child.thread_id != pf.thread_id
                """,
                (account_id, account_id),
            )
            for edge in edges:
                merge = self.merge(account_id, edge["a"], edge["b"], reason="reconcile")
                if merge is not None:
                    merges.append(merge)
            self._recompute_aggregates(account_id)

        logger.info("Reconciled threads", extra={"account_id": account_id, "merges": len(merges)})
        return merges

    def _recompute_aggregates(self, account_id: str) -> None:
        self._db.execute(
            """
            UPDATE threads SET
                message_count = (SELECT COUNT(*) FROM emails e WHERE e.thread_id = threads.id),
                unread_count = (SELECT COUNT(*) FROM emails e WHERE e.thread_id = threads.id AND e.is_read = 0),
                first_message_at = COALESCE(
                    (SELECT MIN(received_at) FROM emails e WHERE e.thread_id = threads.id), first_message_at),
                last_message_at = COALESCE(
                    (SELECT MAX(received_at) FROM emails e WHERE e.thread_id = threads.id), last_message_at)
            WHERE account_id = ? AND merged_into IS NULL
            """,
            (account_id,),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve_id(self, thread_id: int) -> int:
        """Follow ``merged_into`` redirects to the surviving thread."""
        seen: Set[int] = set()
        current = thread_id
        while current not in seen:
            seen.add(current)
            target = self._db.scalar("SELECT merged_into FROM threads WHERE id = ?", (current,))
            if target is None:
                return current
            current = target
        return current

    def get(self, thread_id: int) -> Thread:
        row = self._db.query_one("SELECT * FROM threads WHERE id = ?", (thread_id,))
        if row is None:
            raise KeyError(f"Thread {thread_id} not found")
        return _row_to_thread(row)

    def list_threads(self, account_id: str, *, limit: int = 50, offset: int = 0) -> List[Thread]:
        rows = self._db.query(
            """
            SELECT * FROM threads
            WHERE account_id = ? AND merged_into IS NULL AND message_count > 0
            ORDER BY last_message_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (account_id, limit, offset),
        )
        return [_row_to_thread(row) for row in rows]

    def count_threads(self, account_id: str) -> int:
        return int(
            self._db.scalar(
                "SELECT COUNT(*) FROM threads WHERE account_id = ? AND merged_into IS NULL AND message_count > 0",
                (account_id,),
            )
            or 0
        )

    def merges_for(self, account_id: str) -> List[Dict[str, object]]:
        rows = self._db.query(
            "SELECT * FROM thread_merges WHERE account_id = ? ORDER BY id",
            (account_id,),
        )
        return [dict(row) for row in rows]


__all__ = ["ThreadResolver"]
