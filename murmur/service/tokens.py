"""HS256 bearer token codec.

Tokens are compact JWTs (header.payload.signature, base64url without padding)
signed with HMAC-SHA256. Every issued token carries a random ``jti`` so a
single token can be revoked without affecting any other.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from murmur.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(Exception):
    """Base class for token verification failures."""

    reason = "invalid"


class InvalidSignature(TokenError):
    reason = "invalid_signature"


class TokenExpired(TokenError):
    reason = "expired"


class MalformedToken(TokenError):
    reason = "malformed"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def issue_token(
    claims: Dict[str, Any],
    secret: str,
    *,
    issuer: str,
    audience: str,
    ttl: timedelta,
) -> Tuple[str, Dict[str, Any]]:
    """Sign ``claims`` into a new token.

    ``iss``, ``aud``, ``jti``, ``iat`` and ``exp`` are always set by the codec
    and override anything with the same name in ``claims``.

    Returns:
        Tuple of (encoded token, full payload that was signed)
    """
    if not secret:
        raise ValueError("signing secret is required")
    now = int(time.time())
    payload = {
        **claims,
        "iss": issuer,
        "aud": audience,
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + int(ttl.total_seconds()),
    }
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, secret)}", payload


def verify_token(
    token: str,
    secret: str,
    *,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    leeway: int = 0,
) -> Dict[str, Any]:
    """Verify a token and return its claims.

    Raises:
        MalformedToken: structure, header, payload or registered claims invalid
        InvalidSignature: signature does not match ``secret``
        TokenExpired: ``exp`` is in the past (beyond ``leeway`` seconds)
    """
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedToken("token must have three segments")
    header_b64, payload_b64, sig_b64 = token.split(".")

    # Reject anything but HS256 to prevent algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("token header is not valid JSON") from exc
    alg = header.get("alg") if isinstance(header, dict) else None
    if alg != "HS256":
        logger.warning("jwt_invalid_algorithm", alg=alg)
        raise MalformedToken("unsupported token algorithm")

    if not sig_b64.isascii():
        raise MalformedToken("token signature is not base64url")
    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected_sig, sig_b64):
        raise InvalidSignature("token signature mismatch")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("token payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedToken("token payload must be an object")

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise MalformedToken("token is missing a numeric exp claim")
    if exp <= time.time() - leeway:
        raise TokenExpired("token has expired")

    if issuer is not None and payload.get("iss") != issuer:
        raise MalformedToken("token issuer mismatch")
    if audience is not None:
        aud = payload.get("aud")
        valid_aud = aud == audience if isinstance(aud, str) else (
            isinstance(aud, list) and audience in aud
        )
        if not valid_aud:
            raise MalformedToken("token audience mismatch")
    return payload


__all__ = [
    "TokenError",
    "InvalidSignature",
    "TokenExpired",
    "MalformedToken",
    "issue_token",
    "verify_token",
]
