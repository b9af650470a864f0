"""
auth/sessions.py -- Browser session identity and the OAuth CSRF sub-channel.

A browser session is two client-held cookies, both sealed with SECRET_KEY:

  identity -- the authenticated username and nothing else, signed and
              timestamped with itsdangerous. Missing, tampered, malformed or
              expired cookies all read as Anonymous; nothing here raises to the
              caller.

  session  -- starlette's SessionMiddleware cookie. Used only as the CSRF
              sub-channel of an in-flight OAuth handshake:
              {"csrf": {"aosc": "<token>"}}. The token is popped when the
              callback is processed, so a second callback with the same state
              is rejected.

State machine: Anonymous --remember()--> Authenticated(username)
               Authenticated --forget() or expiry--> Anonymous

The secret and max age come in through the constructor; nothing in this
module reads configuration on its own.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from typing import Optional

from itsdangerous import BadData, URLSafeTimedSerializer
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("pakreq.auth.sessions")

IDENTITY_COOKIE = "identity"
_CSRF_KEY = "csrf"


class SessionIdentityManager:
    """Map the sealed identity cookie to a username and back.

    Usage:
        sessions = SessionIdentityManager(settings.secret_key, max_age=3600)
        username = sessions.current_user(request)      # None when anonymous
        sessions.remember(response, "alice")
        sessions.forget(request, response)
    """

    def __init__(
        self,
        secret_key: str,
        max_age: int,
        secure: bool = False,
        cookie_name: str = IDENTITY_COOKIE,
    ) -> None:
        self._serializer = URLSafeTimedSerializer(secret_key, salt="pakreq.identity")
        self.max_age = max_age
        self.secure = secure
        self.cookie_name = cookie_name

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def current_user(self, request: Request) -> Optional[str]:
        """Return the authenticated username, or None for an anonymous session."""
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return None
        try:
            payload = self._serializer.loads(raw, max_age=self.max_age)
        except BadData:
            logger.info("Ignoring invalid or expired identity cookie")
            return None
        username = payload.get("u") if isinstance(payload, dict) else None
        if not isinstance(username, str) or not username:
            return None
        return username

    def seal(self, username: str) -> str:
        """Return the sealed cookie value for username."""
        return self._serializer.dumps({"u": username})

    def remember(self, response: Response, username: str) -> None:
        """Mark the session Authenticated(username).

        httponly: JS cannot read the cookie. samesite=lax: sent on top-level
        navigations (the provider redirect back to the callback) but not on
        cross-site POSTs.
        """
        response.set_cookie(
            self.cookie_name,
            value=self.seal(username),
            max_age=self.max_age,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def forget(self, request: Request, response: Response) -> None:
        """Return the session to Anonymous. Safe on an already anonymous session."""
        response.delete_cookie(self.cookie_name, httponly=True, samesite="lax", secure=self.secure)
        request.session.clear()

    # ------------------------------------------------------------------
    # CSRF sub-channel
    # ------------------------------------------------------------------

    @staticmethod
    def store_csrf(request: Request, provider: str, token: str) -> None:
        pending = dict(request.session.get(_CSRF_KEY) or {})
        pending[provider] = token
        request.session[_CSRF_KEY] = pending

    @staticmethod
    def pop_csrf(request: Request, provider: str) -> Optional[str]:
        """Return and remove the pending CSRF token for provider."""
        pending = dict(request.session.get(_CSRF_KEY) or {})
        token = pending.pop(provider, None)
        if pending:
            request.session[_CSRF_KEY] = pending
        else:
            request.session.pop(_CSRF_KEY, None)
        return token if isinstance(token, str) else None
