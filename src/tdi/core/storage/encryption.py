"""Fernet encryption for free-text feedback fields at rest.

Therapist reasoning and structured modifications can carry clinical detail,
so they are encrypted before they reach SQLite. Numeric learning statistics
and status columns stay in the clear for indexed window queries.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a field cannot be encrypted or decrypted."""


class FieldEncryptor:
    """Round-trips JSON-serializable values through a Fernet token.

    Usage::

        encryptor = FieldEncryptor(key=FieldEncryptor.generate_key())
        token = encryptor.encrypt({"reasoning": "Prefers shorter sessions"})
        encryptor.decrypt(token)  # {"reasoning": "Prefers shorter sessions"}
    """

    def __init__(self, key: str) -> None:
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, value: Any) -> str:
        """Serialize ``value`` to compact JSON and encrypt it. ``None`` maps to ""."""
        if value is None:
            return ""
        try:
            payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Value is not JSON-serializable: {exc}") from exc
        return self._fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> Any:
        """Inverse of ``encrypt``. An empty token decrypts to ``None``."""
        if not token:
            return None
        try:
            payload = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        return json.loads(payload)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")
