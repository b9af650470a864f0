"""
auth/tokens.py -- Bearer tokens for the REST surface.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with JWT_SECRET (not the
       session SECRET_KEY) and carry exactly sub, iat, nbf and exp. They are
       self-contained: nothing is persisted server-side.

  Lifetime: exp = iat + 24 hours. There is no revocation list, so a password
       change does not invalidate tokens issued before it. They expire
       naturally.

  Failure reporting: an expired token, a token that is not yet valid, a bad
       signature and plain garbage all raise the same Unauthorized. Callers
       cannot tell which check failed, so the endpoint is not an oracle.

  Threading: signing and verifying are cheap but still run on the CryptoPool
       so every crypto operation follows the same threading model.

Layer rule: no imports from api/, web/, or core/. The secret arrives through
the constructor.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from auth.errors import Unauthorized
from auth.workers import CryptoPool

logger = logging.getLogger("pakreq.auth.tokens")

_ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 24 * 3600

_DECODE_OPTIONS = {
    "require_sub": True,
    "require_iat": True,
    "require_nbf": True,
    "require_exp": True,
}


class BearerTokenService:
    """Issue and validate REST bearer tokens.

    Usage:
        tokens = BearerTokenService(settings.jwt_secret, pool)
        token = await tokens.issue("alice")
        username = await tokens.validate(token)   # raises Unauthorized
    """

    def __init__(self, secret: str, pool: CryptoPool, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._secret = secret
        self._pool = pool
        self.ttl = timedelta(seconds=ttl_seconds)

    def encode(self, username: str, now: Optional[datetime] = None) -> str:
        """Sign a claim set for username. now defaults to the current UTC time."""
        issued_at = now or datetime.now(timezone.utc)
        claims = {
            "sub": username,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": issued_at + self.ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def decode(self, token: str) -> str:
        """Verify signature and time window; return the subject."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM], options=_DECODE_OPTIONS)
        except JWTError as exc:
            logger.info("Bearer token rejected: %s", exc)
            raise Unauthorized("invalid bearer token") from exc
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise Unauthorized("bearer token has no subject")
        return subject

    async def issue(self, username: str, now: Optional[datetime] = None) -> str:
        return await self._pool.run(self.encode, username, now)

    async def validate(self, token: str) -> str:
        return await self._pool.run(self.decode, token)
