"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.  The
payload carries the owner id in ``sub`` and a unix ``exp``.  The secret is
passed in by the caller (``config.jwt_secret`` in the running app).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Any, Dict, Optional


class InvalidTokenError(ValueError):
    """The identity token is malformed, forged or expired."""


def _sign(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(owner_id: str, secret: str, expiry_seconds: int = 604800) -> str:
    """Create a signed token containing ``sub`` and expiry."""
    payload = {
        "sub": owner_id,
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    return b64encode(raw).decode() + "." + _sign(secret, raw)


def check_claims(payload: Dict[str, Any], now: Optional[float] = None) -> str:
    """Return the owner id from *payload* after checking ``exp``."""
    now = time.time() if now is None else now
    exp = payload.get("exp")
    if exp is not None and float(exp) < now:
        raise InvalidTokenError("token expired")
    subject = payload.get("sub") or payload.get("subject")
    if not isinstance(subject, str) or not subject:
        raise InvalidTokenError("missing subject")
    return subject


def verify_token(token: str, secret: str) -> str:
    """
    Verify token and return the owner id.

    Raises ``InvalidTokenError`` on invalid or expired tokens.
    """
    parts = token.split(".", 1)
    if len(parts) != 2:
        raise InvalidTokenError("bad format")
    try:
        raw = b64decode(parts[0], validate=True)
    except ValueError as exc:
        raise InvalidTokenError("bad encoding") from exc
    if not hmac.compare_digest(parts[1], _sign(secret, raw)):
        raise InvalidTokenError("bad signature")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InvalidTokenError("bad payload") from exc
    if not isinstance(payload, dict):
        raise InvalidTokenError("bad payload")
    return check_claims(payload)
