"""
auth/errors.py -- The three failure kinds the auth core can report.

Every component catches its library exceptions (jose, httpx, authlib,
SQLAlchemy, argon2, pydantic) at its own boundary and re-raises one of these,
chained with `from` so the original is still available to the log. The
message carried here is the public one: it is safe to put on the wire and it
never includes downstream detail.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. status_code and message describe the public outcome."""

    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, reason: str = "") -> None:
        # reason is for logs only; str(exc) never reaches a client.
        super().__init__(reason or self.message)
        self.reason = reason or self.message


class BadRequest(AuthError):
    """Malformed input, CSRF mismatch, malformed subject claim, unknown provider."""

    status_code = 400
    message = "Bad Request"


class Unauthorized(AuthError):
    """Wrong credentials, bad or expired bearer token, failed provider validation."""

    status_code = 401
    message = "Not authorized"


class InternalError(AuthError):
    """Credential store unavailable or another unexpected downstream fault."""

    status_code = 500
    message = "Internal error"
