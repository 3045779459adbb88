"""Credential protection for stored account secrets."""

from .encryption import EncryptedSecret, SecretCipher

__all__ = ["EncryptedSecret", "SecretCipher"]
