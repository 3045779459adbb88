"""Duplicate detection across syncs, folders and UIDVALIDITY epochs.

A message is stored once per ``(account, dedup_hash)``; every folder/UID
where it has been seen is kept as a sighting in ``email_folders``. Sightings
double as folder labels and as the record of which UIDs were already
ingested in the current epoch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Set

from mailsync.storage.database import MailDatabase, to_iso, utcnow

from .email_parser import ParseFailure

logger = logging.getLogger(__name__)

_CHUNK = 500


class DedupDecision(str, Enum):
    NEW = "new"
    KNOWN = "known"
    COPY = "copy"


@dataclass(frozen=True)
class DedupResult:
    decision: DedupDecision
    email_id: Optional[int] = None


class Deduplicator:
    """Classify incoming messages against what is already stored."""

    def __init__(self, db: MailDatabase) -> None:
        self._db = db

    def known_uids(
        self,
        account_id: str,
        folder: str,
        uidvalidity: int,
        uids: Iterable[int],
    ) -> Set[int]:
        """UIDs of this epoch that were already ingested or recorded as failures."""
        uids = list(uids)
        known: Set[int] = set()
        for start in range(0, len(uids), _CHUNK):
            chunk = uids[start : start + _CHUNK]
            marks = ",".join("?" for _ in chunk)
            params = (account_id, folder, uidvalidity, *chunk)
            rows = self._db.query(
                f"""
                SELECT uid FROM email_folders
                WHERE account_id = ? AND folder = ? AND uidvalidity = ? AND uid IN ({marks})
                UNION
                SELECT uid FROM parse_failures
                WHERE account_id = ? AND folder = ? AND uidvalidity = ? AND uid IN ({marks})
                """,
                params + params,
            )
            known.update(row["uid"] for row in rows)
        return known

    def classify(
        self,
        account_id: str,
        folder: str,
        uidvalidity: int,
        uid: int,
        dedup_hash: str,
    ) -> DedupResult:
        """Decide whether a parsed message is new, already known, or a copy.

        KNOWN means the message is already stored with a sighting in this
        folder (possibly under an older epoch); COPY means it is stored but
        was never seen in this folder.
        """
        sighting = self._db.query_one(
            """
            SELECT email_id FROM email_folders
            WHERE account_id = ? AND folder = ? AND uidvalidity = ? AND uid = ?
            """,
            (account_id, folder, uidvalidity, uid),
        )
        if sighting is not None:
            return DedupResult(DedupDecision.KNOWN, sighting["email_id"])

        existing = self._db.query_one(
            "SELECT id FROM emails WHERE account_id = ? AND dedup_hash = ?",
            (account_id, dedup_hash),
        )
        if existing is None:
            return DedupResult(DedupDecision.NEW)

        in_folder = self._db.scalar(
            "SELECT 1 FROM email_folders WHERE email_id = ? AND folder = ? LIMIT 1",
            (existing["id"], folder),
        )
        decision = DedupDecision.KNOWN if in_folder else DedupDecision.COPY
        return DedupResult(decision, existing["id"])

    def record_sighting(
        self,
        account_id: str,
        folder: str,
        uidvalidity: int,
        uid: int,
        email_id: int,
    ) -> None:
        """Remember that ``email_id`` lives at ``folder``/``uid``.

        Older sightings of the same message in the same folder (previous
        epochs) are replaced.
        """
        with self._db.transaction() as conn:
            conn.execute(
                """
                DELETE FROM email_folders
                WHERE email_id = ? AND folder = ? AND NOT (uidvalidity = ? AND uid = ?)
                """,
                (email_id, folder, uidvalidity, uid),
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO email_folders(account_id, folder, uidvalidity, uid, email_id, seen_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (account_id, folder, uidvalidity, uid, email_id, to_iso(utcnow())),
            )

    def record_parse_failure(
        self,
        account_id: str,
        failure: ParseFailure,
        *,
        thread_id: Optional[int] = None,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO parse_failures(
                    account_id, folder, uidvalidity, uid, message_id, thread_id, error, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    failure.folder,
                    failure.uidvalidity,
                    failure.uid,
                    failure.message_id,
                    thread_id,
                    failure.error[:500],
                    to_iso(utcnow()),
                ),
            )
        logger.info(
            "Recorded parse failure",
            extra={
                "account_id": account_id,
                "folder": failure.folder,
                "uid": failure.uid,
                "has_message_id": failure.message_id is not None,
            },
        )

    def parse_failure_count(self, account_id: str) -> int:
        return int(
            self._db.scalar("SELECT COUNT(*) FROM parse_failures WHERE account_id = ?", (account_id,)) or 0
        )


__all__ = ["DedupDecision", "DedupResult", "Deduplicator"]
