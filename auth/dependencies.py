"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two independent ways to identify a caller:
  1. The sealed "identity" cookie -- browser pages (web/).
  2. Authorization: Bearer <token> -- REST clients (api/). Never consults the
     cookie, and the cookie path never accepts a bearer token.

The components live on app.state (wired by api.main.create_app), so these
helpers only read request.app.state and never construct anything.

session_user() is the soft variant (returns None when anonymous).
bearer_subject() raises Unauthorized, which the app's exception handler turns
into the fixed REST JSON error.

Layer rule: no imports from api/, web/, or core/. auth/dependencies.py may
import from fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from auth.errors import Unauthorized
from auth.oauth import OAuthFlowController
from auth.passwords import PasswordEngine
from auth.sessions import SessionIdentityManager
from auth.store import CredentialStore
from auth.tokens import BearerTokenService


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_sessions(request: Request) -> SessionIdentityManager:
    return request.app.state.sessions


def get_passwords(request: Request) -> PasswordEngine:
    return request.app.state.passwords


def get_tokens(request: Request) -> BearerTokenService:
    return request.app.state.tokens


def get_oauth_flow(request: Request) -> OAuthFlowController:
    return request.app.state.oauth_flow


def session_user(request: Request) -> Optional[str]:
    """Return the username behind the identity cookie, or None.

    Never raises: a tampered or expired cookie is simply anonymous.
    """
    return get_sessions(request).current_user(request)


async def bearer_subject(request: Request) -> str:
    """Require a valid bearer token and return its subject.

    Use as a FastAPI dependency:
        @router.get("/whoami")
        async def route(username: str = Depends(bearer_subject)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise Unauthorized("missing bearer token")
    token = auth_header[7:].strip()
    if not token:
        raise Unauthorized("missing bearer token")
    return await get_tokens(request).validate(token)
