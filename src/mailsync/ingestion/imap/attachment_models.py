"""Email attachment models.

Attachment rows are created when their message is committed and have one of
three states:

- STORED: bytes written to the content-addressed store
- DEFERRED: too large to fetch during sync; only the IMAP locator is kept
- FAILED: fetching or writing failed; the message persisted anyway

Deferred and failed rows are filled in once by an on-demand fetch through
their locator.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AttachmentStatus(str, Enum):
    STORED = "stored"
    DEFERRED = "deferred"
    FAILED = "failed"


class PartLocator(BaseModel):
    """Where the bytes of a part live on the IMAP server."""

    folder: str
    uidvalidity: int
    uid: int
    section: Optional[str] = None
    transfer_encoding: Optional[str] = None


class AttachmentPart(BaseModel):
    """An attachment as extracted by the parser.

    ``payload`` holds decoded bytes when the part was fetched eagerly and is
    ``None`` when only its location is known.
    """

    filename: str
    content_type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    section: Optional[str] = None
    transfer_encoding: Optional[str] = None
    content_id: Optional[str] = None
    is_inline: bool = False
    payload: Optional[bytes] = Field(default=None, repr=False)

    @field_validator("transfer_encoding", mode="before")
    @classmethod
    def _normalize_encoding(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip().lower()
        return value or None


class Attachment(BaseModel):
    """Persisted attachment row."""

    id: int
    email_id: int
    account_id: str
    filename: str
    content_type: str
    size: int = 0
    content_hash: Optional[str] = None
    storage_ref: Optional[str] = None
    locator: Optional[PartLocator] = None
    status: AttachmentStatus
    error: Optional[str] = None
    created_at: datetime

    @property
    def is_available(self) -> bool:
        return self.status == AttachmentStatus.STORED and self.storage_ref is not None


__all__ = ["Attachment", "AttachmentPart", "AttachmentStatus", "PartLocator"]
