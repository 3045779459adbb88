"""Wiring of the sync components from a ``Settings`` instance."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from mailsync.configuration import Settings
from mailsync.ingestion.imap.accounts import AccountStore
from mailsync.ingestion.imap.attachment_store import AttachmentStore
from mailsync.ingestion.imap.connection_manager import ImapConnectionManager
from mailsync.ingestion.imap.sync_engine import MailboxSyncEngine
from mailsync.ingestion.imap.sync_state import SyncStateTracker
from mailsync.ingestion.imap.thread_resolver import ThreadResolver
from mailsync.orchestrator.queue import SyncJobQueue
from mailsync.orchestrator.retry_policy import RetryPolicy
from mailsync.orchestrator.scheduler import SyncScheduler
from mailsync.orchestrator.status import SyncStatusService
from mailsync.privacy.encryption import SecretCipher
from mailsync.storage.database import MailDatabase
from mailsync.storage.repository import EmailRepository


@dataclass
class MailSyncServices:
    settings: Settings
    db: MailDatabase
    accounts: AccountStore
    connections: ImapConnectionManager
    threads: ThreadResolver
    attachments: AttachmentStore
    repository: EmailRepository
    state: SyncStateTracker
    engine: MailboxSyncEngine
    queue: SyncJobQueue
    scheduler: SyncScheduler
    status: SyncStatusService

    def close(self) -> None:
        self.db.close()


def _signing_key(settings: Settings, cipher: SecretCipher) -> str:
    if settings.security.signing_key is not None:
        return settings.security.signing_key.get_secret_value()
    # separate key derived from the credential key so links stay valid across restarts
    return hashlib.sha256(b"mailsync-download-links" + cipher.key).hexdigest()


def build_services(settings: Settings, *, cipher: Optional[SecretCipher] = None) -> MailSyncServices:
    db = MailDatabase(settings.database.path, busy_timeout_ms=settings.database.busy_timeout_ms)
    cipher = cipher or SecretCipher.from_settings(settings.security)
    accounts = AccountStore(db, cipher)
    connections = ImapConnectionManager(
        settings.imap,
        large_message_bytes=settings.sync.large_message_bytes,
        max_eager_bytes=settings.attachments.max_eager_bytes,
    )
    threads = ThreadResolver(db, subject_window_days=settings.sync.subject_window_days)
    attachments = AttachmentStore(
        db,
        settings.attachments.root,
        signing_key=_signing_key(settings, cipher),
        link_ttl_seconds=settings.attachments.link_ttl_seconds,
    )
    repository = EmailRepository(db, threads, attachments)
    state = SyncStateTracker(db)
    engine = MailboxSyncEngine(
        db=db,
        accounts=accounts,
        connections=connections,
        settings=settings.sync,
        threads=threads,
        attachments=attachments,
        repository=repository,
        state=state,
    )
    queue = SyncJobQueue(db, max_attempts=settings.retry.max_attempts)
    scheduler = SyncScheduler(
        queue=queue,
        accounts=accounts,
        engine=engine,
        connections=connections,
        settings=settings.sync,
        retry_policy=RetryPolicy.from_settings(settings.retry),
    )
    status = SyncStatusService(accounts=accounts, queue=queue, state=state, repository=repository)
    return MailSyncServices(
        settings=settings,
        db=db,
        accounts=accounts,
        connections=connections,
        threads=threads,
        attachments=attachments,
        repository=repository,
        state=state,
        engine=engine,
        queue=queue,
        scheduler=scheduler,
        status=status,
    )


__all__ = ["MailSyncServices", "build_services"]
