"""
Stored API key encryption.

Keys are stored as ``iv:tag:ciphertext`` (hex) encrypted with AES-256-GCM
under a key derived from the configured secret with PBKDF2-SHA256.
"""

import os
from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import ConfigurationError, CredentialError
from .models import TornUser

logger = structlog.get_logger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KDF_SALT = b"salt"
KDF_ITERATIONS = 100_000


@dataclass(frozen=True)
class Credential:
    """A decrypted Torn API key and who it belongs to."""

    holder_id: str
    api_key: str
    key_type: str = "limited"

    def __repr__(self) -> str:
        return f"Credential(holder_id={self.holder_id!r}, key_type={self.key_type!r})"


class CredentialVault:
    """Encrypts and decrypts stored Torn API keys."""

    def __init__(self, secret: str):
        self._aead: AESGCM | None = None
        if secret:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=KDF_SALT,
                iterations=KDF_ITERATIONS,
            )
            self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    @property
    def configured(self) -> bool:
        return self._aead is not None

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            raise ConfigurationError("ENCRYPTION_SECRET is not set")
        return self._aead

    def encrypt(self, text: str) -> str:
        """
        Encrypt a key for storage.

        Returns:
            ``iv:tag:ciphertext`` with every part hex encoded
        """
        iv = os.urandom(IV_LENGTH)
        sealed = self._cipher().encrypt(iv, text.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored key.

        Raises:
            CredentialError: If the token is malformed or fails authentication
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise CredentialError("Invalid encrypted text format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
            plain = self._cipher().decrypt(iv, ciphertext + tag, None)
        except (ValueError, InvalidTag) as e:
            raise CredentialError("Stored API key could not be decrypted") from e
        return plain.decode("utf-8")

    def credential_for(self, user: TornUser) -> Credential:
        """Decrypt a registered user's key."""
        return Credential(
            holder_id=user.discord_id,
            api_key=self.decrypt(user.api_key),
            key_type=user.api_key_type,
        )

    def credentials_for(self, users: Iterable[TornUser]) -> list[Credential]:
        """Decrypt keys for several users, skipping keys that fail."""
        credentials = []
        for user in users:
            try:
                credentials.append(self.credential_for(user))
            except CredentialError as e:
                logger.warning(
                    "Skipping undecryptable API key",
                    discord_id=user.discord_id,
                    error=str(e),
                )
        return credentials
