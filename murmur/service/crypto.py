from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from murmur.logging import get_logger

logger = get_logger(__name__)


class FieldCipher:
    """Symmetric encryption for personal fields stored at rest (phone numbers)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required for field encryption")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            # Key rotated or value corrupted; never return ciphertext to callers
            logger.warning("field_decrypt_failed")
            return None
