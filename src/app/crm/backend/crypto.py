"""Symmetric encryption for the ``encrypted_data`` columns.

Sensitive fields (company financials and internal notes, custom fields,
note bodies) are serialized to JSON and sealed with Fernet
before they leave the client. A blob that cannot be opened (wrong key,
corrupted row) decrypts to None with a warning rather than failing the
whole collection read.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger(__name__)


class SensitiveDataCipher:
    """Fernet wrapper for JSON payloads.

    Args:
        key: urlsafe base64-encoded 32-byte Fernet key.
    """

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, data: Any) -> str:
        payload = json.dumps(data, default=str).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decrypt(self, token: str) -> Any:
        try:
            payload = self._fernet.decrypt(token.encode("ascii"))
            return json.loads(payload)
        except (InvalidToken, ValueError):
            logger.warning("crm_crypto.decrypt_failed", exc_info=True)
            return None
