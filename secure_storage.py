# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Encryption of the API key stored in the settings file."""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SERVICE_NAME = "snipsync"
KDF_SALT = b"snipsync-secure-storage-salt-v1"
KDF_ITERATIONS = 100_000


class SecretStorage(ABC):
    """Encrypts secrets bound to a context such as a vault identifier."""

    @abstractmethod
    def encrypt(self, secret: str, context_id: str) -> str: ...
    @abstractmethod
    def decrypt(self, blob: str, context_id: str) -> str:
        """Raises ValueError if the blob cannot be decrypted."""


class FernetSecretStorage(SecretStorage):
    """Fernet with a key derived by PBKDF2-SHA256 from the context id."""

    def __init__(self, iterations: int = KDF_ITERATIONS):
        self.iterations = iterations
        self._keys: dict[str, bytes] = {}

    def _derive_key(self, context_id: str) -> bytes:
        if context_id not in self._keys:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=KDF_SALT,
                iterations=self.iterations,
            )
            raw = kdf.derive((context_id + SERVICE_NAME).encode())
            self._keys[context_id] = base64.urlsafe_b64encode(raw)
        return self._keys[context_id]

    def encrypt(self, secret: str, context_id: str) -> str:
        if not secret:
            return ""
        return Fernet(self._derive_key(context_id)).encrypt(secret.encode()).decode()

    def decrypt(self, blob: str, context_id: str) -> str:
        if not blob:
            return ""
        f = Fernet(self._derive_key(context_id))
        try:
            return f.decrypt(blob.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt API key") from exc
