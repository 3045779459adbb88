"""Per-folder sync cursors.

A cursor is ``(uidvalidity, last_seen_uid)`` for one account folder. It only
moves forward within a UIDVALIDITY epoch and is replaced wholesale when the
epoch changes. ``advance`` is meant to run inside the transaction that
commits the batch it covers, so messages and cursor are never out of step.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from mailsync.storage.database import MailDatabase, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class FolderSyncStatus(str, Enum):
    IDLE = "idle"
    OK = "ok"
    ERROR = "error"


class FolderCursor(BaseModel):
    """Persistent sync position of one folder."""

    account_id: str = Field(..., description="Account identifier")
    folder: str = Field(..., description="IMAP folder name")
    uidvalidity: Optional[int] = Field(default=None, description="Epoch of last_seen_uid")
    last_seen_uid: int = Field(default=0, ge=0, description="Highest UID committed")
    last_sync_at: Optional[datetime] = None
    last_sync_status: FolderSyncStatus = FolderSyncStatus.IDLE
    last_sync_error: Optional[str] = None
    message_count: int = Field(default=0, ge=0, description="Messages committed in this epoch")


def _row_to_cursor(row) -> FolderCursor:
    return FolderCursor(
        account_id=row["account_id"],
        folder=row["folder"],
        uidvalidity=row["uidvalidity"],
        last_seen_uid=row["last_seen_uid"],
        last_sync_at=from_iso(row["last_sync_at"]),
        last_sync_status=FolderSyncStatus(row["last_sync_status"]),
        last_sync_error=row["last_sync_error"],
        message_count=row["message_count"],
    )


class SyncStateTracker:
    """SQLite-backed folder cursor store."""

    def __init__(self, db: MailDatabase) -> None:
        self._db = db

    def load(self, account_id: str, folder: str) -> Optional[FolderCursor]:
        row = self._db.query_one(
            "SELECT * FROM folder_cursors WHERE account_id = ? AND folder = ?",
            (account_id, folder),
        )
        return _row_to_cursor(row) if row else None

    def advance(
        self,
        account_id: str,
        folder: str,
        uidvalidity: int,
        uid: int,
        *,
        added: int = 0,
    ) -> FolderCursor:
        """Move the cursor to ``uid``.

        Within the stored epoch the cursor never moves backwards. A different
        ``uidvalidity`` replaces the cursor and restarts its message count.
        """
        with self._db.transaction() as conn:
            current = self.load(account_id, folder)
            if current is None or current.uidvalidity != uidvalidity:
                last_seen = uid
                count = added
                if current is not None and current.uidvalidity is not None:
                    logger.info(
                        "Cursor replaced for new UIDVALIDITY epoch",
                        extra={
                            "account_id": account_id,
                            "folder": folder,
                            "old_uidvalidity": current.uidvalidity,
                            "new_uidvalidity": uidvalidity,
                        },
                    )
            else:
                last_seen = max(current.last_seen_uid, uid)
                count = current.message_count + added

            conn.execute(
                """
                INSERT INTO folder_cursors(account_id, folder, uidvalidity, last_seen_uid, message_count)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    uidvalidity = excluded.uidvalidity,
                    last_seen_uid = excluded.last_seen_uid,
                    message_count = excluded.message_count
                """,
                (account_id, folder, uidvalidity, last_seen, count),
            )
        return self.load(account_id, folder)

    def mark_folder(
        self,
        account_id: str,
        folder: str,
        status: FolderSyncStatus,
        error: Optional[str] = None,
    ) -> None:
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO folder_cursors(account_id, folder, last_sync_at, last_sync_status, last_sync_error)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at,
                    last_sync_status = excluded.last_sync_status,
                    last_sync_error = excluded.last_sync_error
                """,
                (account_id, folder, now, status.value, error),
            )

    def list_for_account(self, account_id: str) -> List[FolderCursor]:
        rows = self._db.query(
            "SELECT * FROM folder_cursors WHERE account_id = ? ORDER BY folder",
            (account_id,),
        )
        return [_row_to_cursor(row) for row in rows]

    def last_sync_at(self, account_id: str) -> Optional[datetime]:
        value = self._db.scalar(
            "SELECT MAX(last_sync_at) FROM folder_cursors WHERE account_id = ? AND last_sync_status = ?",
            (account_id, FolderSyncStatus.OK.value),
        )
        return from_iso(value)


__all__ = ["FolderCursor", "FolderSyncStatus", "SyncStateTracker"]
