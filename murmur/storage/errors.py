from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AlreadyRevoked(ConstraintViolation):
    """Raised when a token identifier is inserted into the revocation set twice."""

    def __init__(self, jti: str):
        super().__init__("token already revoked", {"field": "jti"})
        self.jti = jti


__all__ = ["ConstraintViolation", "AlreadyRevoked"]
