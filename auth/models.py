"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the flow controllers do the work.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An account that can log in to pakreq.

    password_hash is None for accounts that may only sign in through a linked
    identity provider. Password login is disabled for them, and verification
    fails closed rather than raising.
    """

    username: str
    id: int | None = None
    is_admin: bool = False
    password_hash: str | None = None


@dataclass
class OauthLink:
    """An external identity linked to a local user.

    At most one link exists per (user_id, provider). external_subject is the
    provider's stable subject id decoded from its identity token. token is
    reserved for a persisted provider credential and is currently always None.
    """

    user_id: int
    provider: str  # "AOSC"
    external_subject: str | None = None
    token: str | None = None
