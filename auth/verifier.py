"""
Identity token verifiers.

``SignedTokenVerifier`` is the production path: HMAC-signed tokens from
``auth.jwt``.  ``UnsignedTokenVerifier`` reads a standard three-part JWT
without checking its signature and only looks at ``sub`` and ``exp``; it is
only ever selected in a development environment.

``build_token_verifier`` picks one at startup so handlers never branch on
the environment.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from base64 import urlsafe_b64decode

from auth.jwt import InvalidTokenError, check_claims, verify_token
from config.settings import Settings

logger = logging.getLogger(__name__)


class TokenVerifier(ABC):
    @abstractmethod
    def verify(self, token: str) -> str:
        """Return the owner id carried by *token* or raise ``InvalidTokenError``."""
        ...


class SignedTokenVerifier(TokenVerifier):
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("a signing secret is required")
        self._secret = secret

    def verify(self, token: str) -> str:
        return verify_token(token, self._secret)


def _decode_segment(segment: str) -> bytes:
    return urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class UnsignedTokenVerifier(TokenVerifier):
    """Development only: trusts the JWT payload as-is."""

    def verify(self, token: str) -> str:
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError(f"expected JWT with 3 parts, got {len(parts)}")
        try:
            claims = json.loads(_decode_segment(parts[1]))
        except ValueError as exc:
            raise InvalidTokenError("bad JWT payload") from exc
        if not isinstance(claims, dict):
            raise InvalidTokenError("bad JWT payload")
        return check_claims(claims)


def build_token_verifier(settings: Settings) -> TokenVerifier:
    allow_unverified = settings.allow_unverified_identity_tokens
    if allow_unverified is None:
        allow_unverified = settings.is_development

    if allow_unverified:
        if not settings.is_development:
            raise RuntimeError("unverified identity tokens are only allowed in development")
        logger.warning("Identity tokens are NOT signature-checked (app_env=%s)", settings.app_env)
        return UnsignedTokenVerifier()
    return SignedTokenVerifier(settings.jwt_secret)
