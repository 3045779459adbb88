"""Content-addressed attachment persistence.

Bytes are stored once per account and content hash under
``<root>/<account>/<hh>/<sha256>``; every attachment row that carries the
same content points at the same file. Parts that were too large to fetch
during sync are recorded as DEFERRED with their IMAP locator and fetched
the first time somebody asks for them. Write failures never fail the
message: the row is kept as FAILED and can be retried separately.

Download links are short-lived signed references produced with
``itsdangerous`` so the inbox UI never exposes attachment ids directly.
"""

from __future__ import annotations

import logging
import os
import tempfile
from hashlib import sha256
from pathlib import Path
from typing import Callable, List, Optional, Union

from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer

from mailsync.errors import (
    AttachmentNotFoundError,
    AttachmentStorageError,
    InvalidDownloadReference,
    MailSyncError,
)
from mailsync.storage.database import MailDatabase, from_iso, to_iso, utcnow

from .attachment_models import Attachment, AttachmentPart, AttachmentStatus, PartLocator
from .email_parser import decode_transfer

logger = logging.getLogger(__name__)

PartFetcher = Callable[[PartLocator], bytes]
"""Returns the raw, still transfer-encoded bytes of one MIME section."""

_SIGNING_SALT = "mailsync-attachment"


def _row_to_attachment(row) -> Attachment:
    locator = None
    if row["uid"] is not None and row["folder"] is not None:
        locator = PartLocator(
            folder=row["folder"],
            uidvalidity=row["uidvalidity"],
            uid=row["uid"],
            section=row["section"],
            transfer_encoding=row["transfer_encoding"],
        )
    return Attachment(
        id=row["id"],
        email_id=row["email_id"],
        account_id=row["account_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        size=row["size"],
        content_hash=row["content_hash"],
        storage_ref=row["storage_ref"],
        locator=locator,
        status=AttachmentStatus(row["status"]),
        error=row["error"],
        created_at=from_iso(row["created_at"]),
    )


class AttachmentStore:
    """Stores attachment bytes and tracks attachment rows."""

    def __init__(
        self,
        db: MailDatabase,
        root: Union[Path, str],
        *,
        signing_key: str,
        link_ttl_seconds: int = 600,
    ) -> None:
        self._db = db
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._serializer = URLSafeTimedSerializer(signing_key, salt=_SIGNING_SALT)
        self._link_ttl = link_ttl_seconds

    # ------------------------------------------------------------------
    # Content store
    # ------------------------------------------------------------------

    def store(self, account_id: str, data: bytes) -> str:
        """Write ``data`` for ``account_id`` and return its storage reference."""
        return self._store_hashed(account_id, sha256(data).hexdigest(), data)

    def _store_hashed(self, account_id: str, content_hash: str, data: bytes) -> str:
        existing = self._db.scalar(
            """
            SELECT storage_ref FROM attachments
            WHERE account_id = ? AND content_hash = ? AND storage_ref IS NOT NULL
            LIMIT 1
            """,
            (account_id, content_hash),
        )
        if existing and self.path_for(existing).exists():
            logger.debug(
                "Attachment content already stored",
                extra={"account_id": account_id, "content_hash": content_hash[:16]},
            )
            return existing

        storage_ref = f"{account_id}/{content_hash[:2]}/{content_hash}"
        target = self.path_for(storage_ref)
        if target.exists():
            return storage_ref
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=target.parent, delete=False, prefix=".tmp-") as handle:
                handle.write(data)
                temp_path = Path(handle.name)
            os.replace(temp_path, target)
        except OSError as exc:
            logger.error(
                "Failed to write attachment to storage",
                extra={"account_id": account_id, "content_hash": content_hash[:16], "error": str(exc)},
            )
            raise AttachmentStorageError(
                f"Could not write attachment: {exc}",
                details={"account_id": account_id, "content_hash": content_hash},
            ) from exc
        logger.debug(
            "Stored attachment content",
            extra={"account_id": account_id, "content_hash": content_hash[:16], "size_bytes": len(data)},
        )
        return storage_ref

    def path_for(self, storage_ref: str) -> Path:
        path = (self.root / storage_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise AttachmentNotFoundError("Invalid storage reference", details={"storage_ref": storage_ref})
        return path

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    def persist(
        self,
        account_id: str,
        email_id: int,
        part: AttachmentPart,
        *,
        folder: str,
        uidvalidity: int,
        uid: int,
    ) -> Attachment:
        """Create the attachment row for one part of a newly stored message.

        Returns a STORED, DEFERRED or FAILED row; storage errors are recorded
        on the row rather than raised.
        """
        content_hash: Optional[str] = None
        storage_ref: Optional[str] = None
        error: Optional[str] = None
        size = part.size

        if part.payload is None:
            status = AttachmentStatus.DEFERRED
        else:
            content_hash = sha256(part.payload).hexdigest()
            size = len(part.payload)
            try:
                storage_ref = self._store_hashed(account_id, content_hash, part.payload)
                status = AttachmentStatus.STORED
            except AttachmentStorageError as exc:
                status = AttachmentStatus.FAILED
                error = exc.message[:500]

        cur = self._db.execute(
            """
            INSERT INTO attachments(
                email_id, account_id, filename, content_type, size, content_hash, storage_ref,
                folder, uid, uidvalidity, section, transfer_encoding, status, error, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email_id,
                account_id,
                part.filename,
                part.content_type,
                size,
                content_hash,
                storage_ref,
                folder,
                uid,
                uidvalidity,
                part.section,
                part.transfer_encoding,
                status.value,
                error,
                to_iso(utcnow()),
            ),
        )
        if status != AttachmentStatus.STORED:
            logger.info(
                "Attachment not stored during sync",
                extra={"account_id": account_id, "email_id": email_id, "status": status.value},
            )
        return self.get(int(cur.lastrowid))

    def get(self, attachment_id: int) -> Attachment:
        row = self._db.query_one("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
        if row is None:
            raise AttachmentNotFoundError(details={"attachment_id": attachment_id})
        return _row_to_attachment(row)

    def list_for_email(self, email_id: int) -> List[Attachment]:
        rows = self._db.query("SELECT * FROM attachments WHERE email_id = ? ORDER BY id", (email_id,))
        return [_row_to_attachment(row) for row in rows]

    def read(self, attachment_id: int) -> bytes:
        attachment = self.get(attachment_id)
        if not attachment.is_available:
            raise AttachmentNotFoundError(
                "Attachment has not been downloaded yet",
                details={"attachment_id": attachment_id, "status": attachment.status.value},
            )
        path = self.path_for(attachment.storage_ref)
        if not path.exists():
            raise AttachmentNotFoundError(details={"attachment_id": attachment_id})
        return path.read_bytes()

    # ------------------------------------------------------------------
    # On-demand fetch
    # ------------------------------------------------------------------

    def fetch_on_demand(self, attachment_id: int, fetcher: PartFetcher) -> Attachment:
        """Fill a deferred or failed row from the server through its locator."""
        attachment = self.get(attachment_id)
        if attachment.is_available:
            return attachment
        locator = attachment.locator
        if locator is None or locator.section is None:
            raise AttachmentNotFoundError(
                "Attachment cannot be located on the server",
                details={"attachment_id": attachment_id},
            )

        try:
            data = decode_transfer(fetcher(locator), locator.transfer_encoding)
            content_hash = sha256(data).hexdigest()
            storage_ref = self._store_hashed(attachment.account_id, content_hash, data)
        except MailSyncError as exc:
            self._mark_failed(attachment_id, exc.message)
            raise

        with self._db.transaction():
            self._db.execute(
                """
                UPDATE attachments SET status = ?, content_hash = ?, storage_ref = ?, size = ?, error = NULL
                WHERE id = ? AND status != ?
                """,
                (
                    AttachmentStatus.STORED.value,
                    content_hash,
                    storage_ref,
                    len(data),
                    attachment_id,
                    AttachmentStatus.STORED.value,
                ),
            )
        logger.info(
            "Fetched attachment on demand",
            extra={"account_id": attachment.account_id, "attachment_id": attachment_id, "size_bytes": len(data)},
        )
        return self.get(attachment_id)

    def retry_failed(self, account_id: str, fetcher: PartFetcher) -> int:
        """Retry every FAILED row of the account; returns how many now stored."""
        rows = self._db.query(
            "SELECT id FROM attachments WHERE account_id = ? AND status = ? ORDER BY id",
            (account_id, AttachmentStatus.FAILED.value),
        )
        recovered = 0
        for row in rows:
            try:
                self.fetch_on_demand(row["id"], fetcher)
            except MailSyncError as exc:
                logger.warning(
                    "Attachment retry failed",
                    extra={"account_id": account_id, "attachment_id": row["id"], "error_code": exc.code},
                )
                continue
            recovered += 1
        return recovered

    def pending_for_account(self, account_id: str) -> List[Attachment]:
        rows = self._db.query(
            "SELECT * FROM attachments WHERE account_id = ? AND status != ? ORDER BY id",
            (account_id, AttachmentStatus.STORED.value),
        )
        return [_row_to_attachment(row) for row in rows]

    def _mark_failed(self, attachment_id: int, error: str) -> None:
        with self._db.transaction():
            self._db.execute(
                "UPDATE attachments SET status = ?, error = ? WHERE id = ? AND status != ?",
                (AttachmentStatus.FAILED.value, error[:500], attachment_id, AttachmentStatus.STORED.value),
            )

    # ------------------------------------------------------------------
    # Signed download references
    # ------------------------------------------------------------------

    def signed_reference(self, attachment_id: int) -> str:
        attachment = self.get(attachment_id)
        return self._serializer.dumps({"attachment_id": attachment.id, "account_id": attachment.account_id})

    def verify_reference(self, token: str) -> Attachment:
        """Resolve a signed reference or raise ``InvalidDownloadReference``."""
        try:
            data = self._serializer.loads(token, max_age=self._link_ttl)
        except SignatureExpired as exc:
            raise InvalidDownloadReference("Download link expired") from exc
        except BadData as exc:
            raise InvalidDownloadReference("Download link signature mismatch") from exc

        attachment = self.get(int(data["attachment_id"]))
        if attachment.account_id != data.get("account_id"):
            raise InvalidDownloadReference("Download link does not match attachment")
        return attachment


__all__ = ["AttachmentStore", "PartFetcher"]
