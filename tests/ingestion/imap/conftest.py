"""Shared test fixtures and mock infrastructure for IMAP tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest
from imapclient.exceptions import IMAPClientError, LoginError

from mailsync.configuration import ImapSettings, SyncSettings
from mailsync.ingestion.imap.connection_manager import ImapConnectionManager
from mailsync.ingestion.imap.sync_engine import MailboxSyncEngine


# ============================================================================
# Mock IMAP Server
# ============================================================================


@dataclass
class MockMailbox:
    """One folder on the mock server."""

    name: str
    uidvalidity: int = 1
    flags: Tuple[bytes, ...] = ()
    messages: Dict[int, Tuple[bytes, Tuple[bytes, ...]]] = field(default_factory=dict)
    next_uid: int = 1
    broken: bool = False

    def append(self, raw: bytes, flags: Tuple[bytes, ...] = ()) -> int:
        uid = self.next_uid
        self.messages[uid] = (raw, flags)
        self.next_uid += 1
        return uid

    def renumber(self, uidvalidity: int) -> None:
        """Simulate a mailbox rebuild: same messages, new UIDs and epoch."""
        existing = [self.messages[uid] for uid in sorted(self.messages)]
        self.uidvalidity = uidvalidity
        self.messages = {}
        self.next_uid = 1
        for raw, flags in existing:
            self.append(raw, flags)


class MockImapServer:
    """In-memory IMAP server speaking the subset of imapclient the pipeline uses."""

    def __init__(self, password: str = "app-password") -> None:
        self.password = password
        self.folders: Dict[str, MockMailbox] = {"INBOX": MockMailbox("INBOX")}
        self.fetched_uids: List[Tuple[str, int]] = []
        self.clients: List["MockImapClient"] = []
        self.connect_failures = 0

    def folder(self, name: str, **kwargs) -> MockMailbox:
        if name not in self.folders:
            self.folders[name] = MockMailbox(name, **kwargs)
        return self.folders[name]

    def deliver(self, raw: bytes, folder: str = "INBOX", *, seen: bool = False) -> int:
        flags = (b"\\Seen",) if seen else ()
        return self.folder(folder).append(raw, flags)

    def connect(self, **kwargs) -> "MockImapClient":
        """Used as the connection manager's ``client_factory``."""
        if self.connect_failures:
            self.connect_failures -= 1
            raise ConnectionRefusedError("connection refused")
        client = MockImapClient(self, **kwargs)
        self.clients.append(client)
        return client


class MockImapClient:
    def __init__(self, server: MockImapServer, **kwargs: Any) -> None:
        self.server = server
        self.kwargs = kwargs
        self.selected: Optional[MockMailbox] = None
        self.logged_in = False
        self.logged_out = False
        self.shut_down = False

    def login(self, username: str, password: str) -> bytes:
        if password != self.server.password:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        self.logged_in = True
        return b"LOGIN completed"

    def logout(self) -> bytes:
        self.logged_out = True
        return b"BYE"

    def shutdown(self) -> None:
        self.shut_down = True

    def list_folders(self) -> List[Tuple[Tuple[bytes, ...], bytes, str]]:
        return [(box.flags, b"/", box.name) for box in self.server.folders.values()]

    def folder_status(self, name: str, items: List[str]) -> Dict[bytes, int]:
        box = self.server.folders[name]
        return {
            b"MESSAGES": len(box.messages),
            b"UIDNEXT": box.next_uid,
            b"UIDVALIDITY": box.uidvalidity,
        }

    def select_folder(self, name: str, readonly: bool = False) -> Dict[bytes, Any]:
        box = self.server.folders.get(name)
        if box is None or box.broken:
            raise IMAPClientError(f"select failed: NO [NONEXISTENT] {name}")
        self.selected = box
        return {
            b"EXISTS": len(box.messages),
            b"UIDNEXT": box.next_uid,
            b"UIDVALIDITY": box.uidvalidity,
        }

    def search(self, criteria: List[Any]) -> List[int]:
        uids = sorted(self.selected.messages)
        if criteria and criteria[0] == "UID":
            start = int(str(criteria[1]).split(":", 1)[0])
            matched = [uid for uid in uids if uid >= start]
            # "n:*" always includes the highest UID
            if not matched and uids:
                matched = [uids[-1]]
            return matched
        return uids

    def fetch(self, uids: List[int], items: List[str]) -> Dict[int, Dict[bytes, Any]]:
        box = self.selected
        response: Dict[int, Dict[bytes, Any]] = {}
        for uid in uids:
            if uid not in box.messages:
                continue
            raw, flags = box.messages[uid]
            data: Dict[bytes, Any] = {b"SEQ": uid}
            if "RFC822.SIZE" in items:
                data[b"RFC822.SIZE"] = len(raw)
            if "BODY.PEEK[]" in items:
                data[b"BODY[]"] = raw
                self.server.fetched_uids.append((box.name, uid))
            if "INTERNALDATE" in items:
                data[b"INTERNALDATE"] = datetime(2024, 1, 1, 10, 0, 0)
            if "FLAGS" in items:
                data[b"FLAGS"] = flags
            response[uid] = data
        return response


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def imap_server() -> MockImapServer:
    return MockImapServer()


@pytest.fixture
def connections(imap_server) -> ImapConnectionManager:
    return ImapConnectionManager(
        ImapSettings(connect_retries=1, connect_retry_delay=0),
        client_factory=imap_server.connect,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(batch_size=2)


@pytest.fixture
def make_engine(db, account_store, connections, sync_settings, threads, attachment_store, repository, sync_state):
    def _make(**kwargs) -> MailboxSyncEngine:
        options = dict(
            db=db,
            accounts=account_store,
            connections=connections,
            settings=sync_settings,
            threads=threads,
            attachments=attachment_store,
            repository=repository,
            state=sync_state,
        )
        options.update(kwargs)
        return MailboxSyncEngine(**options)

    return _make


@pytest.fixture
def engine(make_engine) -> MailboxSyncEngine:
    return make_engine()
