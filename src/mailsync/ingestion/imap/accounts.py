"""Email account registry.

Accounts are created and edited by the account-settings surface of the CRM;
the sync engine only reads them and flips their status fields. Secrets are
stored encrypted (see ``mailsync.privacy.encryption``) and are never part of
the ``EmailAccount`` model, so no serialization path can leak them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from mailsync.errors import AccountNotFoundError
from mailsync.privacy.encryption import EncryptedSecret, SecretCipher
from mailsync.storage.database import MailDatabase, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"


class EmailAccount(BaseModel):
    """A mailbox connected by a CRM user."""

    id: str = Field(..., description="Account identifier")
    owner_id: str = Field(..., description="CRM user owning the mailbox")
    email_address: str
    display_name: Optional[str] = None
    imap_host: str
    imap_port: int = Field(default=993, ge=1, le=65535)
    imap_username: str
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = Field(default=None, ge=1, le=65535)
    is_default: bool = False
    is_active: bool = True
    sync_enabled: bool = True
    status: AccountStatus = AccountStatus.ACTIVE
    status_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("imap_host")
    @classmethod
    def _validate_host(cls, value: str) -> str:
        if not value or " " in value:
            raise ValueError("imap_host must be a valid hostname")
        return value

    @field_validator("imap_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value == 143:
            raise ValueError("Plain IMAP (port 143) is unsupported; use 993")
        return value

    @field_validator("email_address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("email_address must contain '@'")
        return value.lower()

    @property
    def is_syncable(self) -> bool:
        return self.sync_enabled and self.is_active and self.status != AccountStatus.ERROR


_COLUMNS = (
    "id, owner_id, email_address, display_name, imap_host, imap_port, imap_username, "
    "smtp_host, smtp_port, is_default, is_active, sync_enabled, status, status_error, "
    "last_sync_at, created_at, updated_at"
)

_EDITABLE = {
    "display_name",
    "imap_host",
    "imap_port",
    "imap_username",
    "smtp_host",
    "smtp_port",
    "is_active",
    "sync_enabled",
}


def _row_to_account(row) -> EmailAccount:
    return EmailAccount(
        id=row["id"],
        owner_id=row["owner_id"],
        email_address=row["email_address"],
        display_name=row["display_name"],
        imap_host=row["imap_host"],
        imap_port=row["imap_port"],
        imap_username=row["imap_username"],
        smtp_host=row["smtp_host"],
        smtp_port=row["smtp_port"],
        is_default=bool(row["is_default"]),
        is_active=bool(row["is_active"]),
        sync_enabled=bool(row["sync_enabled"]),
        status=AccountStatus(row["status"]),
        status_error=row["status_error"],
        last_sync_at=from_iso(row["last_sync_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


class AccountStore:
    """SQLite-backed registry of email accounts."""

    def __init__(self, db: MailDatabase, cipher: SecretCipher) -> None:
        self._db = db
        self._cipher = cipher

    # ------------------------------------------------------------------
    # Account-edit surface
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        owner_id: str,
        email_address: str,
        password: str,
        imap_host: str,
        imap_port: int = 993,
        imap_username: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        display_name: Optional[str] = None,
        is_default: bool = False,
        sync_enabled: bool = True,
    ) -> EmailAccount:
        if not password:
            raise ValueError("A password or app password is required")
        account = EmailAccount(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            email_address=email_address,
            display_name=display_name,
            imap_host=imap_host,
            imap_port=imap_port,
            imap_username=imap_username or email_address,
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            is_default=is_default,
            sync_enabled=sync_enabled,
        )
        secret = self._cipher.encrypt(password)
        with self._db.transaction() as conn:
            if account.is_default or not self._owner_has_accounts(owner_id):
                conn.execute("UPDATE accounts SET is_default = 0 WHERE owner_id = ?", (owner_id,))
                account.is_default = True
            conn.execute(
                f"""
                INSERT INTO accounts ({_COLUMNS}, secret_ciphertext, secret_nonce)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.owner_id,
                    account.email_address,
                    account.display_name,
                    account.imap_host,
                    account.imap_port,
                    account.imap_username,
                    account.smtp_host,
                    account.smtp_port,
                    int(account.is_default),
                    int(account.is_active),
                    int(account.sync_enabled),
                    account.status.value,
                    account.status_error,
                    to_iso(account.last_sync_at),
                    to_iso(account.created_at),
                    to_iso(account.updated_at),
                    secret.ciphertext,
                    secret.nonce,
                ),
            )
        logger.info(
            "Registered email account",
            extra={"account_id": account.id, "imap_host": account.imap_host},
        )
        return account

    def update(self, account_id: str, *, password: Optional[str] = None, **changes) -> EmailAccount:
        """Edit an account.

        A blank ``password`` keeps the stored secret. A new password also
        clears an authentication ``error`` status so the account syncs again.
        """
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValueError(f"Unsupported account fields: {sorted(unknown)}")

        current = self.get(account_id)
        merged = EmailAccount.model_validate({**current.model_dump(), **changes})
        now = utcnow()

        assignments = [f"{name} = ?" for name in changes]
        params: List[object] = [getattr(merged, name) for name in changes]
        if password:
            secret = self._cipher.encrypt(password)
            assignments += [
                "secret_ciphertext = ?",
                "secret_nonce = ?",
                "status = ?",
                "status_error = NULL",
            ]
            params += [secret.ciphertext, secret.nonce, AccountStatus.ACTIVE.value]
        assignments.append("updated_at = ?")
        params.append(to_iso(now))
        params.append(account_id)

        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE accounts SET {', '.join(assignments)} WHERE id = ?",
                [int(p) if isinstance(p, bool) else p for p in params],
            )
        logger.info(
            "Updated email account",
            extra={"account_id": account_id, "fields": sorted(changes), "secret_changed": bool(password)},
        )
        return self.get(account_id)

    def set_default(self, account_id: str) -> EmailAccount:
        """Make ``account_id`` the owner's only default account."""
        account = self.get(account_id)
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END WHERE owner_id = ?",
                (account_id, account.owner_id),
            )
        return self.get(account_id)

    def delete(self, account_id: str) -> None:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        if cur.rowcount == 0:
            raise AccountNotFoundError(details={"account_id": account_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, account_id: str) -> EmailAccount:
        row = self._db.query_one(f"SELECT {_COLUMNS} FROM accounts WHERE id = ?", (account_id,))
        if row is None:
            raise AccountNotFoundError(details={"account_id": account_id})
        return _row_to_account(row)

    def list(self, owner_id: Optional[str] = None) -> List[EmailAccount]:
        if owner_id is None:
            rows = self._db.query(f"SELECT {_COLUMNS} FROM accounts ORDER BY created_at")
        else:
            rows = self._db.query(
                f"SELECT {_COLUMNS} FROM accounts WHERE owner_id = ? ORDER BY created_at",
                (owner_id,),
            )
        return [_row_to_account(row) for row in rows]

    def list_syncable(self) -> List[EmailAccount]:
        """Accounts the periodic trigger should enqueue."""
        rows = self._db.query(
            f"""
            SELECT {_COLUMNS} FROM accounts
            WHERE sync_enabled = 1 AND is_active = 1 AND status != ?
            ORDER BY created_at
            """,
            (AccountStatus.ERROR.value,),
        )
        return [_row_to_account(row) for row in rows]

    def reveal_secret(self, account_id: str) -> str:
        """Decrypt the stored password for an IMAP login."""
        row = self._db.query_one(
            "SELECT secret_ciphertext, secret_nonce FROM accounts WHERE id = ?",
            (account_id,),
        )
        if row is None:
            raise AccountNotFoundError(details={"account_id": account_id})
        return self._cipher.decrypt(
            EncryptedSecret(ciphertext=row["secret_ciphertext"], nonce=row["secret_nonce"])
        )

    # ------------------------------------------------------------------
    # Sync engine status updates
    # ------------------------------------------------------------------

    def mark_error(self, account_id: str, message: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET status = ?, status_error = ?, updated_at = ? WHERE id = ?",
                (AccountStatus.ERROR.value, message, to_iso(utcnow()), account_id),
            )
        logger.warning("Account flagged as error", extra={"account_id": account_id})

    def mark_synced(self, account_id: str, when: Optional[datetime] = None) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_sync_at = ?, updated_at = ? WHERE id = ?",
                (to_iso(when or utcnow()), to_iso(utcnow()), account_id),
            )

    def _owner_has_accounts(self, owner_id: str) -> bool:
        return bool(self._db.scalar("SELECT 1 FROM accounts WHERE owner_id = ? LIMIT 1", (owner_id,)))


__all__ = ["AccountStatus", "AccountStore", "EmailAccount"]
