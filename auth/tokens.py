"""
auth/tokens.py -- JWT issuance/verification and bearer-token hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with the server secret and
       carry user_id, email, username, a random jti, iat and exp. Verification
       raises InvalidToken on any failure -- callers decide whether that means
       401 or a silent no-op.

  Secret: held by a TokenIssuer instance and injected from Settings at
       startup, never read at import time. Tests construct issuers with their
       own secrets and clocks. Rotating the secret invalidates every
       outstanding token.

  Expiry: checked against the issuer's clock rather than the wall clock
       inside python-jose, so expiry behaviour is testable without sleeping.
       A token is valid only while now < exp.

  Token hashing: sessions store SHA-256(raw token). This is a plain one-way
       hash, not the signing function -- it lets logout find and revoke the
       session for a presented token without the raw token ever being stored.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from core.errors import InvalidToken

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("user_id", "email", "username", "exp")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    """Return the hex SHA-256 digest used to link a bearer token to its session."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Signs and verifies time-limited bearer tokens.

    Usage:
        issuer = TokenIssuer(settings.secret_key, ttl_seconds=settings.token_expire_seconds)
        token = issuer.issue({"user_id": 1, "email": "a@x.com", "username": "alice"})
        claims = issuer.verify(token)   # raises InvalidToken
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenIssuer requires a non-empty secret key")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, claims: dict[str, Any], ttl_seconds: int | None = None) -> str:
        """Encode `claims` into a signed JWT that expires after the ttl."""
        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        payload = dict(claims)
        payload["sub"] = str(claims.get("username", ""))
        payload["jti"] = secrets.token_hex(16)
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + timedelta(seconds=ttl)).timestamp())
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the token's claims, or raise InvalidToken.

        Fails on a bad signature, a malformed token, missing identity claims,
        or an expiry at or before the issuer's current time.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise InvalidToken(str(e)) from e
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise InvalidToken("token is missing identity claims")
        try:
            expires_at = int(payload["exp"])
        except (TypeError, ValueError) as e:
            raise InvalidToken("token has a malformed expiry") from e
        if self._clock().timestamp() >= expires_at:
            raise InvalidToken("token has expired")
        return payload
