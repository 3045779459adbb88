"""Encryption of stored IMAP account secrets.

Account passwords and app passwords are stored encrypted with AES-256-GCM
authenticated encryption. The key comes from ``SecuritySettings``: either an
explicit base64 key (``MAILSYNC_SECRET_KEY``) or a key file that is generated
with owner-only permissions on first use.

Security Properties:
- 256-bit encryption keys
- 96-bit random nonces (GCM standard), unique per secret
- 128-bit authentication tags
- Fail-secure: a wrong key or tampered row raises ``SecretError``

Usage:
    >>> cipher = SecretCipher.from_settings(settings.security)
    >>> payload = cipher.encrypt("app-password")
    >>> cipher.decrypt(payload)
    'app-password'
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailsync.configuration.settings import SecuritySettings
from mailsync.errors import SecretError

logger = logging.getLogger(__name__)

# Constants
KEY_SIZE_BYTES = 32  # 256 bits for AES-256
NONCE_SIZE_BYTES = 12  # 96 bits for GCM


@dataclass(frozen=True)
class EncryptedSecret:
    """Ciphertext and nonce as stored in the accounts table."""

    ciphertext: bytes
    nonce: bytes


@dataclass
class SecretCipher:
    """AES-256-GCM cipher for account secrets."""

    key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.key) != KEY_SIZE_BYTES:
            raise SecretError(f"Secret key must be {KEY_SIZE_BYTES} bytes")

    @classmethod
    def generate(cls) -> "SecretCipher":
        return cls(secrets.token_bytes(KEY_SIZE_BYTES))

    @classmethod
    def from_settings(cls, security: SecuritySettings) -> "SecretCipher":
        """Build a cipher from an explicit key or the key file."""

        if security.secret_key is not None:
            return cls(_decode_key(security.secret_key.get_secret_value()))
        return cls(_load_or_create_key_file(security.key_path))

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        ciphertext = AESGCM(self.key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedSecret(ciphertext=ciphertext, nonce=nonce)

    def decrypt(self, payload: EncryptedSecret) -> str:
        try:
            plaintext = AESGCM(self.key).decrypt(payload.nonce, payload.ciphertext, None)
        except InvalidTag as exc:
            raise SecretError("Stored secret failed authentication") from exc
        return plaintext.decode("utf-8")


def _decode_key(encoded: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(encoded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise SecretError("Secret key is not valid base64") from exc


def _load_or_create_key_file(path: Path) -> bytes:
    if path.exists():
        return _decode_key(path.read_text(encoding="ascii").strip())

    path.parent.mkdir(parents=True, exist_ok=True)
    key = secrets.token_bytes(KEY_SIZE_BYTES)
    path.write_text(base64.urlsafe_b64encode(key).decode("ascii"), encoding="ascii")
    try:
        os.chmod(path, 0o600)
    except PermissionError:
        logger.warning("Could not restrict permissions on key file", extra={"path": str(path)})
    logger.info("Generated new secret key", extra={"path": str(path)})
    return key


def encode_key(key: Optional[bytes] = None) -> str:
    """Return a fresh (or the given) key in the format ``MAILSYNC_SECRET_KEY`` expects."""

    return base64.urlsafe_b64encode(key or secrets.token_bytes(KEY_SIZE_BYTES)).decode("ascii")


__all__ = ["EncryptedSecret", "SecretCipher", "encode_key"]
