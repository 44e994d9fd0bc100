"""
Application-layer encryption for reconciled medication payloads.

A patient's medication list is PHI; payloads are encrypted with Fernet
before they reach the database.
"""

import json
import os
from typing import Any

from cryptography.fernet import Fernet


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI payloads."""

    def __init__(self, key: str | None = None):
        raw_key = key or os.getenv("PHI_ENCRYPTION_KEY", "")
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: data written with a generated key is unreadable after restart
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_json(self, payload: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(payload, sort_keys=True, default=str))

    def decrypt_json(self, ciphertext: str) -> dict[str, Any]:
        plaintext = self.decrypt(ciphertext)
        return json.loads(plaintext) if plaintext else {}
