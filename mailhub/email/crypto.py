"""Encryption of stored provider credentials."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

KEY_ENV_VAR = "MAILHUB_ENCRYPTION_KEY"


class CredentialCipher:
    """Fernet (AES-128-CBC + HMAC) wrapper for credential blobs.

    Blobs are JSON documents encrypted as a whole, so a stored row reveals
    neither field names nor values.
    """

    def __init__(self, key: str | bytes) -> None:
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    @classmethod
    def from_env(cls, var: str = KEY_ENV_VAR) -> "CredentialCipher":
        """Build a cipher from the key in ``var``.

        The key is sourced from the environment so it can be managed outside
        of version control.
        """
        key = os.environ.get(var)
        if not key:
            raise RuntimeError(f"{var} is not set")
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, credentials: Dict[str, Any]) -> str:
        """Encrypt a credential mapping into an opaque token."""
        payload = json.dumps(credentials, sort_keys=True)
        return self._fernet.encrypt(payload.encode()).decode()

    def decrypt(self, token: str, ttl: Optional[int] = None) -> Dict[str, Any]:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises ``ValueError`` when the token was tampered with or was written
        under a different key.
        """
        try:
            payload = self._fernet.decrypt(token.encode(), ttl=ttl)
        except InvalidToken as exc:
            raise ValueError("credential blob cannot be decrypted with the configured key") from exc
        return json.loads(payload.decode())
