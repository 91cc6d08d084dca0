"""
Application-layer encryption for intake answer documents.

Answers (including the drawn signature) are serialized to JSON and sealed
with Fernet before they reach the database; only the trusted backend and
staff read paths ever unseal them.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from clinic_intake.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI documents."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            if settings.ENVIRONMENT == "production":
                raise RuntimeError("PHI_ENCRYPTION_KEY must be set in production")
            # Ephemeral key: data written by this process is unreadable after restart.
            logger.warning("PHI_ENCRYPTION_KEY not set, using an ephemeral development key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def seal_document(self, document: dict[str, Any]) -> str:
        # sort_keys keeps the ciphertext input stable for identical answers
        return self.encrypt(json.dumps(document, sort_keys=True, separators=(",", ":")))

    def open_document(self, ciphertext: str) -> dict[str, Any]:
        try:
            plaintext = self.decrypt(ciphertext)
        except InvalidToken as exc:
            raise ValueError("Answer document could not be decrypted") from exc
        return json.loads(plaintext) if plaintext else {}


_service: EncryptionService | None = None


def get_encryption_service() -> EncryptionService:
    global _service
    if _service is None:
        _service = EncryptionService()
    return _service
