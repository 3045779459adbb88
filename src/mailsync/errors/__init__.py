"""Centralized error definitions for mailsync.

The hierarchy mirrors the sync failure taxonomy: connection failures are
recoverable and retried by the job queue, authentication failures are not,
and per-message or per-attachment failures never fail a batch.

Usage:
    from mailsync.errors import MailSyncError, AuthenticationError

    try:
        engine.run(job, account, password)
    except AuthenticationError as exc:
        accounts.mark_error(account.id, exc.user_message)
"""

from __future__ import annotations

from mailsync.errors.user_messages import (
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MailSyncError(Exception):
    """Base exception for all mailsync errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether retrying the operation can succeed
        details: Additional error details for debugging
    """

    code: str = "MAILSYNC_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Connection Errors
# =============================================================================


class ImapConnectionError(MailSyncError):
    """Network, TLS or timeout failure talking to the IMAP server."""

    code = "CONNECTION_ERROR"
    default_message = "IMAP connection failed"
    recoverable = True


class AuthenticationError(MailSyncError):
    """The IMAP server rejected the account credentials.

    Never retried automatically: the provider will keep rejecting them until
    the user re-enters the secret.
    """

    code = "AUTHENTICATION_ERROR"
    default_message = "IMAP authentication failed"
    recoverable = False


# =============================================================================
# Sync Errors
# =============================================================================


class SyncError(MailSyncError):
    """Base error for sync pipeline failures."""

    code = "SYNC_ERROR"
    default_message = "Email sync failed"


class SyncTimeoutError(SyncError):
    """A sync job exceeded its total duration budget."""

    code = "SYNC_TIMEOUT"
    default_message = "Sync job exceeded its time budget"
    recoverable = False


class FolderSyncError(SyncError):
    """A single folder could not be selected or searched."""

    code = "FOLDER_SYNC_ERROR"
    default_message = "Folder sync failed"
    recoverable = False


class MessageParseError(SyncError):
    """A single message could not be parsed."""

    code = "PARSE_ERROR"
    default_message = "Message could not be parsed"
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================


class AttachmentStorageError(MailSyncError):
    """Writing or reading attachment bytes failed."""

    code = "ATTACHMENT_STORAGE_ERROR"
    default_message = "Attachment storage failed"
    recoverable = True


class AttachmentNotFoundError(MailSyncError):
    """The attachment row or its bytes do not exist."""

    code = "ATTACHMENT_NOT_FOUND"
    default_message = "Attachment not found"
    recoverable = False


class InvalidDownloadReference(MailSyncError):
    """A signed download reference is malformed or expired."""

    code = "DOWNLOAD_LINK_INVALID"
    default_message = "Download reference is invalid or expired"
    recoverable = False


# =============================================================================
# Account & Configuration Errors
# =============================================================================


class AccountNotFoundError(MailSyncError):
    """The email account does not exist."""

    code = "ACCOUNT_NOT_FOUND"
    default_message = "Email account not found"
    recoverable = False


class SecretError(MailSyncError):
    """A stored secret could not be encrypted or decrypted."""

    code = "SECRET_ERROR"
    default_message = "Credential decryption failed"
    recoverable = False


class ConfigurationError(MailSyncError):
    """Configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
    recoverable = False


__all__ = [
    "AccountNotFoundError",
    "AttachmentNotFoundError",
    "AttachmentStorageError",
    "AuthenticationError",
    "ConfigurationError",
    "FolderSyncError",
    "ImapConnectionError",
    "InvalidDownloadReference",
    "MailSyncError",
    "MessageParseError",
    "SecretError",
    "SyncError",
    "SyncTimeoutError",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]
