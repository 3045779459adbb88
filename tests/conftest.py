"""Shared fixtures: database, accounts, stores and message builders."""

from __future__ import annotations

from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

import pytest

from mailsync.configuration import Settings
from mailsync.ingestion.imap.accounts import AccountStore, EmailAccount
from mailsync.ingestion.imap.attachment_store import AttachmentStore
from mailsync.ingestion.imap.connection_manager import FetchedMessage
from mailsync.ingestion.imap.deduplicator import Deduplicator
from mailsync.ingestion.imap.email_parser import MessageParser
from mailsync.ingestion.imap.sync_state import SyncStateTracker
from mailsync.ingestion.imap.thread_resolver import ThreadResolver
from mailsync.privacy.encryption import SecretCipher
from mailsync.storage.database import MailDatabase
from mailsync.storage.repository import EmailRepository

OWN_ADDRESS = "rep@crm.example"
PASSWORD = "app-password"


# ============================================================================
# Message builders
# ============================================================================


def build_email(
    *,
    message_id: Optional[str] = None,
    subject: str = "Quarterly pricing",
    sender: str = "Alice Buyer <alice@customer.example>",
    to: str = OWN_ADDRESS,
    cc: Optional[str] = None,
    body: str = "Hello, can we talk about pricing?",
    html: Optional[str] = None,
    date: str = "Mon, 01 Jan 2024 10:00:00 +0000",
    in_reply_to: Optional[str] = None,
    references: Sequence[str] = (),
    attachments: Iterable[Tuple[str, bytes, str]] = (),
    headers: Optional[dict] = None,
) -> bytes:
    """Build RFC 5322 bytes the way a real client would send them."""
    attachments = list(attachments)
    if attachments or html is not None:
        msg = MIMEMultipart("mixed") if attachments else MIMEMultipart("alternative")
        if body is not None:
            msg.attach(MIMEText(body, "plain", "utf-8"))
        if html is not None:
            msg.attach(MIMEText(html, "html", "utf-8"))
        for filename, payload, content_type in attachments:
            part = MIMEApplication(payload, _subtype=content_type.split("/", 1)[1])
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)
    else:
        msg = MIMEText(body, "plain", "utf-8")

    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Date"] = date
    if message_id:
        msg["Message-ID"] = f"<{message_id}>"
    if in_reply_to:
        msg["In-Reply-To"] = f"<{in_reply_to}>"
    if references:
        msg["References"] = " ".join(f"<{ref}>" for ref in references)
    for name, value in (headers or {}).items():
        msg[name] = value
    return msg.as_bytes()


@pytest.fixture
def make_email():
    return build_email


@pytest.fixture
def parser() -> MessageParser:
    return MessageParser()


@pytest.fixture
def parse_raw(parser):
    """Parse raw bytes as if fetched from ``folder``/``uid``."""

    def _parse(raw: bytes, *, uid: int = 1, folder: str = "INBOX", uidvalidity: int = 1, flags=()):
        return parser.parse(
            FetchedMessage(
                uid=uid,
                folder=folder,
                uidvalidity=uidvalidity,
                size=len(raw),
                flags=tuple(flags),
                raw=raw,
            )
        )

    return _parse


# ============================================================================
# Storage fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    home = tmp_path / "home"
    return Settings.model_validate(
        {
            "home": home,
            "database": {"path": home / "mailsync.db"},
            "attachments": {"root": home / "attachments"},
            "security": {"key_path": home / "secret.key"},
        }
    )


@pytest.fixture
def db(tmp_path: Path):
    database = MailDatabase(tmp_path / "mail.db")
    yield database
    database.close()


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher.generate()


@pytest.fixture
def account_store(db, cipher) -> AccountStore:
    return AccountStore(db, cipher)


@pytest.fixture
def account(account_store) -> EmailAccount:
    return account_store.create(
        owner_id="user-1",
        email_address=OWN_ADDRESS,
        password=PASSWORD,
        imap_host="imap.crm.example",
    )


@pytest.fixture
def threads(db) -> ThreadResolver:
    return ThreadResolver(db)


@pytest.fixture
def attachment_store(db, tmp_path: Path) -> AttachmentStore:
    return AttachmentStore(db, tmp_path / "attachments", signing_key="test-signing-key")


@pytest.fixture
def repository(db, threads, attachment_store) -> EmailRepository:
    return EmailRepository(db, threads, attachment_store)


@pytest.fixture
def deduplicator(db) -> Deduplicator:
    return Deduplicator(db)


@pytest.fixture
def sync_state(db) -> SyncStateTracker:
    return SyncStateTracker(db)


@pytest.fixture
def ingest(account, threads, repository, deduplicator, parse_raw):
    """Store one raw message the way a batch commit does."""

    def _ingest(raw: bytes, *, uid: int, folder: str = "INBOX", uidvalidity: int = 1, flags=()):
        message = parse_raw(raw, uid=uid, folder=folder, uidvalidity=uidvalidity, flags=flags)
        assignment = threads.resolve(account.id, message, own_addresses=[account.email_address])
        email_id = repository.insert_email(account.id, message, assignment.thread_id)
        threads.record_member(assignment.thread_id, message)
        deduplicator.record_sighting(account.id, folder, uidvalidity, uid, email_id)
        return email_id, assignment

    return _ingest
