"""User-friendly error messages for mailsync.

This module provides human-readable error messages and recovery suggestions
for every error code, so the inbox UI never shows raw protocol errors.

Privacy Note:
- Error messages NEVER include message content
- Credentials and server responses are never echoed back
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Sync errors
    "SYNC_ERROR": "Email sync failed. Previously synced mail is still available.",
    "SYNC_TIMEOUT": "Email sync took too long and was stopped. It will resume on the next run.",
    "FOLDER_SYNC_ERROR": "One mailbox folder could not be synced.",
    # Connection errors
    "CONNECTION_ERROR": "We couldn't reach your mail server. We'll keep retrying.",
    "AUTHENTICATION_ERROR": "Your mail server rejected the saved credentials.",
    # Message errors
    "PARSE_ERROR": "A message could not be read and was skipped.",
    # Storage errors
    "ATTACHMENT_STORAGE_ERROR": "An attachment could not be saved. It can be downloaded later.",
    "ATTACHMENT_NOT_FOUND": "This attachment is no longer available.",
    "DOWNLOAD_LINK_INVALID": "This download link is invalid or has expired.",
    # Account errors
    "ACCOUNT_NOT_FOUND": "The email account wasn't found.",
    "SECRET_ERROR": "The saved credentials could not be decrypted.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    # Generic
    "MAILSYNC_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "SYNC_ERROR": "Trigger a manual sync from the inbox settings.",
    "SYNC_TIMEOUT": "No action needed. Large mailboxes sync over several runs.",
    "FOLDER_SYNC_ERROR": "Check that the folder still exists on the server.",
    "CONNECTION_ERROR": "Check the IMAP host and port in your email settings.",
    "AUTHENTICATION_ERROR": "Re-enter your password or app password in email settings.",
    "PARSE_ERROR": "No action needed. Open the message in your mail provider to read it.",
    "ATTACHMENT_STORAGE_ERROR": "Open the message to fetch the attachment on demand.",
    "ATTACHMENT_NOT_FOUND": "Resync the account to restore attachment references.",
    "DOWNLOAD_LINK_INVALID": "Reopen the message to get a fresh download link.",
    "ACCOUNT_NOT_FOUND": "Add the account again: mailsync accounts add",
    "SECRET_ERROR": "Check MAILSYNC_SECRET_KEY, then re-enter the account password.",
    "CONFIGURATION_ERROR": "Check config: ~/.mailsync/config.json",
    "MAILSYNC_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Try again later. Report if the issue continues.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message with recovery suggestion."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"
