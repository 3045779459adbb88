"""Per-account mailbox sync pipeline.

One ``run`` opens a single IMAP session for the account and walks its
folders in priority order. Each folder is planned against its stored cursor
(incremental ``UID last+1:*`` or a bounded full resync after a UIDVALIDITY
change) and then consumed as a pull-based stream of parsed batches: the
next batch is only fetched once the previous one has been committed.

A batch commit is one transaction covering message rows, folder sightings,
thread assignment and merges, attachment rows and the cursor advance, so a
crash or timeout never leaves the cursor ahead of (or behind) the data.

This module is blocking; the orchestrator runs it in a worker thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from mailsync.configuration import SyncSettings
from mailsync.errors import AuthenticationError, FolderSyncError, SyncTimeoutError
from mailsync.storage.database import MailDatabase, utcnow
from mailsync.storage.repository import EmailRepository

from .accounts import AccountStore, EmailAccount
from .attachment_models import Attachment, AttachmentStatus
from .attachment_store import AttachmentStore
from .connection_manager import FetchPlan, FolderInfo, ImapConnectionManager, ImapSession
from .deduplicator import DedupDecision, Deduplicator
from .email_parser import MessageParser, ParsedMessage, ParseFailure, ParseOutcome
from .sync_state import FolderSyncStatus, SyncStateTracker
from .thread_resolver import ThreadResolver

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ParsedBatch:
    """One fetched and parsed slice of a folder's pending UIDs."""

    folder: str
    uidvalidity: int
    uids: List[int]
    outcomes: List[ParseOutcome]


@dataclass
class FolderOutcome:
    folder: str
    processed: int = 0
    skipped: int = 0
    status: FolderSyncStatus = FolderSyncStatus.OK
    error: Optional[str] = None
    epoch_reset: bool = False


@dataclass
class SyncOutcome:
    account_id: str
    full: bool = False
    folders: List[FolderOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(f.processed for f in self.folders)

    @property
    def skipped(self) -> int:
        return sum(f.skipped for f in self.folders)

    @property
    def failed_folders(self) -> List[str]:
        return [f.folder for f in self.folders if f.status == FolderSyncStatus.ERROR]


# ---------------------------------------------------------------------------
# Folder ordering
# ---------------------------------------------------------------------------


def _matches(info: FolderInfo, name: str) -> bool:
    return info.name.lower() == name.lower() or info.has_flag(f"\\{name}")


def order_folders(
    folders: Sequence[FolderInfo],
    *,
    priority: Sequence[str] = ("INBOX", "Sent", "Drafts"),
    excluded: Sequence[str] = (),
) -> List[FolderInfo]:
    """Priority folders first (by name or special-use flag), the rest A-Z."""
    selected = [info for info in folders if not any(_matches(info, name) for name in excluded)]

    def rank(info: FolderInfo):
        for index, name in enumerate(priority):
            if _matches(info, name):
                return (index, info.name.lower())
        return (len(priority), info.name.lower())

    return sorted(selected, key=rank)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MailboxSyncEngine:
    """Runs one sync of one account from cursor to committed batches."""

    def __init__(
        self,
        *,
        db: MailDatabase,
        accounts: AccountStore,
        connections: ImapConnectionManager,
        settings: SyncSettings,
        parser: Optional[MessageParser] = None,
        deduplicator: Optional[Deduplicator] = None,
        threads: Optional[ThreadResolver] = None,
        attachments: AttachmentStore,
        repository: Optional[EmailRepository] = None,
        state: Optional[SyncStateTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._accounts = accounts
        self._connections = connections
        self._settings = settings
        self.parser = parser or MessageParser(snippet_length=settings.snippet_length)
        self.deduplicator = deduplicator or Deduplicator(db)
        self.threads = threads or ThreadResolver(db, subject_window_days=settings.subject_window_days)
        self.attachments = attachments
        self.repository = repository or EmailRepository(db, self.threads, attachments)
        self.state = state or SyncStateTracker(db)
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        account_id: str,
        *,
        full: bool = False,
        timeout_seconds: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ) -> SyncOutcome:
        """Sync every selectable folder of the account.

        Raises ``SyncTimeoutError`` when the time budget runs out (or ``stop``
        is set) before a batch fetch; everything committed so far stays.
        Authentication failures flip the account to ``error``.
        """
        account = self._accounts.get(account_id)
        password = self._accounts.reveal_secret(account_id)
        deadline = self._clock() + timeout_seconds if timeout_seconds else None
        outcome = SyncOutcome(account_id=account_id, full=full)
        started = time.perf_counter()

        logger.info("Sync started", extra={"account_id": account_id, "full": full})
        try:
            with self._connections.session(account, password) as session:
                folders = order_folders(
                    session.list_folders(),
                    priority=self._settings.priority_folders,
                    excluded=self._settings.excluded_folders,
                )
                for info in folders:
                    self._check_budget(deadline, stop, outcome, info.name)
                    folder_outcome = FolderOutcome(folder=info.name)
                    outcome.folders.append(folder_outcome)
                    self._sync_folder_safely(session, account, folder_outcome, full, deadline, stop, outcome)
        except AuthenticationError as exc:
            self._accounts.mark_error(account_id, exc.user_message)
            logger.error("Authentication failed, account disabled", extra={"account_id": account_id})
            raise

        self._accounts.mark_synced(account_id)
        logger.info(
            "Sync finished",
            extra={
                "account_id": account_id,
                "processed": outcome.processed,
                "skipped": outcome.skipped,
                "failed_folders": len(outcome.failed_folders),
                "elapsed": round(time.perf_counter() - started, 3),
            },
        )
        return outcome

    def fetch_attachment(self, attachment_id: int) -> Attachment:
        """Download a deferred or failed attachment through a fresh session."""
        attachment = self.attachments.get(attachment_id)
        if attachment.is_available:
            return attachment
        account = self._accounts.get(attachment.account_id)
        password = self._accounts.reveal_secret(account.id)
        with self._connections.session(account, password) as session:
            return self.attachments.fetch_on_demand(attachment_id, self._part_fetcher(session))

    def retry_failed_attachments(self, account_id: str) -> int:
        """Re-fetch the account's FAILED attachments; no session when there are none."""
        account = self._accounts.get(account_id)
        failed = [a for a in self.attachments.pending_for_account(account_id) if a.status == AttachmentStatus.FAILED]
        if not failed:
            return 0
        password = self._accounts.reveal_secret(account_id)
        with self._connections.session(account, password) as session:
            return self.attachments.retry_failed(account_id, self._part_fetcher(session))

    # ------------------------------------------------------------------
    # Folder pipeline
    # ------------------------------------------------------------------

    def _sync_folder_safely(
        self,
        session: ImapSession,
        account: EmailAccount,
        folder_outcome: FolderOutcome,
        full: bool,
        deadline: Optional[float],
        stop: Optional[threading.Event],
        outcome: SyncOutcome,
    ) -> None:
        folder = folder_outcome.folder
        try:
            self._sync_folder(session, account, folder_outcome, full, deadline, stop, outcome)
        except FolderSyncError as exc:
            folder_outcome.status = FolderSyncStatus.ERROR
            folder_outcome.error = exc.message
            self.state.mark_folder(account.id, folder, FolderSyncStatus.ERROR, exc.message)
            logger.warning(
                "Folder sync failed, continuing with next folder",
                extra={"account_id": account.id, "folder": folder, "error_code": exc.code},
            )

    def _sync_folder(
        self,
        session: ImapSession,
        account: EmailAccount,
        folder_outcome: FolderOutcome,
        full: bool,
        deadline: Optional[float],
        stop: Optional[threading.Event],
        outcome: SyncOutcome,
    ) -> None:
        folder = folder_outcome.folder
        cursor = self.state.load(account.id, folder)
        since = None
        if self._settings.initial_lookback_days:
            since = (utcnow() - timedelta(days=self._settings.initial_lookback_days)).date()
        plan = session.plan_fetch(
            folder,
            cursor,
            full=full,
            limit=self._settings.initial_fetch_limit,
            since=since,
        )
        folder_outcome.epoch_reset = plan.epoch_reset

        known = self.deduplicator.known_uids(account.id, folder, plan.uidvalidity, plan.uids)
        pending = [uid for uid in plan.uids if uid not in known]
        folder_outcome.skipped += len(known)

        for batch in self.iter_batches(session, plan, pending, deadline=deadline, stop=stop, outcome=outcome):
            processed, skipped = self._commit_batch(account, batch)
            folder_outcome.processed += processed
            folder_outcome.skipped += skipped

        with self._db.transaction():
            self.state.advance(account.id, folder, plan.uidvalidity, max([plan.high_water_uid, *plan.uids]))
            self.state.mark_folder(account.id, folder, FolderSyncStatus.OK)

        logger.info(
            "Folder synced",
            extra={
                "account_id": account.id,
                "folder": folder,
                "planned": len(plan.uids),
                "processed": folder_outcome.processed,
                "skipped": folder_outcome.skipped,
                "epoch_reset": plan.epoch_reset,
            },
        )

    def iter_batches(
        self,
        session: ImapSession,
        plan: FetchPlan,
        uids: Sequence[int],
        *,
        deadline: Optional[float] = None,
        stop: Optional[threading.Event] = None,
        outcome: Optional[SyncOutcome] = None,
    ) -> Iterator[ParsedBatch]:
        """Yield parsed batches in ascending UID order, fetching lazily."""
        uids = sorted(uids)
        size = self._settings.batch_size
        for start in range(0, len(uids), size):
            self._check_budget(deadline, stop, outcome, plan.folder)
            chunk = uids[start : start + size]
            fetched = session.fetch_batch(plan.folder, plan.uidvalidity, chunk)
            yield ParsedBatch(
                folder=plan.folder,
                uidvalidity=plan.uidvalidity,
                uids=chunk,
                outcomes=[self.parser.parse(message) for message in fetched],
            )

    def _commit_batch(self, account: EmailAccount, batch: ParsedBatch) -> Tuple[int, int]:
        processed = 0
        skipped = 0
        added = 0
        with self._db.transaction():
            for item in batch.outcomes:
                if isinstance(item, ParseFailure):
                    thread_id = self.threads.anchor_failure(account.id, item.message_id)
                    self.deduplicator.record_parse_failure(account.id, item, thread_id=thread_id)
                    skipped += 1
                    continue

                result = self.deduplicator.classify(
                    account.id, item.folder, item.uidvalidity, item.uid, item.dedup_hash
                )
                if result.decision == DedupDecision.NEW:
                    email_id = self._store_new(account, item)
                    processed += 1
                    added += 1
                else:
                    email_id = result.email_id
                    if result.decision == DedupDecision.COPY:
                        processed += 1
                        added += 1
                    else:
                        skipped += 1
                self.deduplicator.record_sighting(account.id, item.folder, item.uidvalidity, item.uid, email_id)

            self.state.advance(account.id, batch.folder, batch.uidvalidity, max(batch.uids), added=added)

        logger.debug(
            "Committed batch",
            extra={
                "account_id": account.id,
                "folder": batch.folder,
                "last_uid": max(batch.uids),
                "processed": processed,
                "skipped": skipped,
            },
        )
        return processed, skipped

    def _store_new(self, account: EmailAccount, message: ParsedMessage) -> int:
        assignment = self.threads.resolve(account.id, message, own_addresses=[account.email_address])
        email_id = self.repository.insert_email(account.id, message, assignment.thread_id)
        self.threads.record_member(assignment.thread_id, message)
        for part in message.attachments:
            self.attachments.persist(
                account.id,
                email_id,
                part,
                folder=message.folder,
                uidvalidity=message.uidvalidity,
                uid=message.uid,
            )
        return email_id

    def _check_budget(
        self,
        deadline: Optional[float],
        stop: Optional[threading.Event],
        outcome: Optional[SyncOutcome],
        folder: str,
    ) -> None:
        expired = deadline is not None and self._clock() >= deadline
        if not expired and not (stop is not None and stop.is_set()):
            return
        details = {"folder": folder}
        if outcome is not None:
            details.update(account_id=outcome.account_id, processed=outcome.processed, skipped=outcome.skipped)
        raise SyncTimeoutError("Sync time budget exhausted", details=details)

    @staticmethod
    def _part_fetcher(session: ImapSession):
        return lambda locator: session.fetch_part(locator.folder, locator.uidvalidity, locator.uid, locator.section)


__all__ = [
    "FolderOutcome",
    "MailboxSyncEngine",
    "ParsedBatch",
    "SyncOutcome",
    "order_folders",
]
