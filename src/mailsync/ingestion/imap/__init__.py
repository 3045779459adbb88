"""IMAP account sync: sessions, parsing, threading, dedup and attachments."""

from .accounts import AccountStatus, AccountStore, EmailAccount
from .attachment_models import Attachment, AttachmentPart, AttachmentStatus, PartLocator
from .attachment_store import AttachmentStore
from .connection_manager import (
    FetchedMessage,
    FetchPlan,
    FolderInfo,
    ImapConnectionManager,
    ImapSession,
    RetryStrategy,
)
from .deduplicator import DedupDecision, Deduplicator
from .email_parser import EmailAddress, MessageParser, ParsedMessage, ParseFailure
from .sync_state import FolderCursor, FolderSyncStatus, SyncStateTracker
from .thread_models import MatchKind, Thread, ThreadMerge, normalize_subject
from .thread_resolver import ThreadResolver

__all__ = [
    "AccountStatus",
    "AccountStore",
    "Attachment",
    "AttachmentPart",
    "AttachmentStatus",
    "AttachmentStore",
    "DedupDecision",
    "Deduplicator",
    "EmailAccount",
    "EmailAddress",
    "FetchPlan",
    "FetchedMessage",
    "FolderCursor",
    "FolderInfo",
    "FolderSyncStatus",
    "ImapConnectionManager",
    "ImapSession",
    "MatchKind",
    "MessageParser",
    "ParseFailure",
    "ParsedMessage",
    "PartLocator",
    "RetryStrategy",
    "SyncStateTracker",
    "Thread",
    "ThreadMerge",
    "ThreadResolver",
    "normalize_subject",
]
