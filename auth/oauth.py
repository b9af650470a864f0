"""
auth/oauth.py -- CSRF-bound authorization-code flow for linking identities.

This flow LINKS an external identity to an account that is already logged in.
It never logs anyone in by itself, so every step requires an authenticated
session and rejects anonymous callers before any network call is made.

Three phases per provider:
  begin()    -- GET /oauth/{provider}/new
                Generate a random CSRF token, park it in the session's CSRF
                sub-channel under the provider name, and return the provider's
                authorization URL with scope "profile openid" and state=<token>.
  complete() -- GET /oauth/{provider}?code=...&state=...
                Pop the parked token. Missing or different from `state`
                (constant-time compare) is BadRequest -- this is the only
                defense against a forged linking request. Exchange the code at
                the token endpoint (authlib AsyncOAuth2Client over httpx, with
                a bounded timeout); any exchange failure is Unauthorized.
                Validate the identity token and decode the external subject.
  persist    -- Upsert OauthLink(user_id, tag, external_subject).

unlink() removes the link and is a no-op when none exists.

Supported providers form a closed registry built at startup from
configuration: only providers passed to OAuthFlowController exist.
Anything else in the URL is BadRequest.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from auth.errors import BadRequest, InternalError, Unauthorized
from auth.jwks import IdentityTokenValidator
from auth.models import OauthLink
from auth.sessions import SessionIdentityManager
from auth.store import CredentialStore

logger = logging.getLogger("pakreq.auth.oauth")


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthProvider:
    """Static configuration of one identity provider.

    name is the URL segment (/oauth/aosc); tag is what the oauth table stores
    ("AOSC").
    """

    name: str
    tag: str
    label: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    redirect_url: str
    validator: IdentityTokenValidator
    scopes: tuple[str, ...] = field(default=("profile", "openid"))


class ProviderTokenResponse(BaseModel):
    """The fields of a token endpoint response that the flow relies on."""

    # authlib adds expires_at, providers add refresh_token/scope; ignore them.
    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str
    id_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Flow controller
# ---------------------------------------------------------------------------


class OAuthFlowController:
    """Drive begin/complete/unlink for the configured providers.

    Args:
        providers: name -> OAuthProvider. The registry is fixed after startup.
        store:     Credential store used to resolve the session user and persist links.
        timeout:   Seconds allowed for each call to a token endpoint.
        transport: Optional httpx transport, used by tests to stand in for the provider.
    """

    def __init__(
        self,
        providers: Mapping[str, OAuthProvider],
        store: CredentialStore,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._providers = dict(providers)
        self._store = store
        self._timeout = timeout
        self._transport = transport

    def provider(self, name: str) -> OAuthProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise BadRequest(f"unknown OAuth provider {name!r}") from None

    def enabled_providers(self) -> list[dict]:
        """Return [{"name", "label", "tag"}] for templates, in registration order."""
        return [{"name": p.name, "label": p.label, "tag": p.tag} for p in self._providers.values()]

    def _client(self, provider: OAuthProvider) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=provider.client_id,
            client_secret=provider.client_secret,
            scope=" ".join(provider.scopes),
            redirect_uri=provider.redirect_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Phase 1 -- initiate
    # ------------------------------------------------------------------

    async def begin(self, request: Request, username: Optional[str], name: str) -> str:
        """Park a fresh CSRF token in the session and return the authorization URL."""
        if username is None:
            raise BadRequest("linking requires a logged-in session")
        provider = self.provider(name)

        csrf_token = secrets.token_urlsafe(32)
        async with self._client(provider) as client:
            url, _state = client.create_authorization_url(provider.authorize_url, state=csrf_token)
        SessionIdentityManager.store_csrf(request, provider.name, csrf_token)
        logger.info("OAuth2 link started for %s via %s", username, provider.tag)
        return url

    # ------------------------------------------------------------------
    # Phase 2 + 3 -- callback and persist
    # ------------------------------------------------------------------

    async def complete(
        self,
        request: Request,
        username: Optional[str],
        name: str,
        code: Optional[str],
        state: Optional[str],
    ) -> OauthLink:
        """Check the CSRF state, exchange the code, validate, and store the link."""
        if username is None:
            raise BadRequest("linking requires a logged-in session")
        provider = self.provider(name)

        expected = SessionIdentityManager.pop_csrf(request, provider.name)
        if expected is None or not state or not hmac.compare_digest(expected.encode(), state.encode()):
            logger.warning("OAuth2 challenge failed for %s: CSRF token mismatch", username)
            raise BadRequest("CSRF token mismatch")
        if not code:
            raise BadRequest("callback is missing the authorization code")
        logger.info("OAuth2 challenge received for %s", username)

        tokens = await self._exchange(provider, code)
        if tokens.id_token:
            external_subject = await provider.validator.validate(tokens.id_token, access_token=tokens.access_token)
        else:
            external_subject = await provider.validator.validate(tokens.access_token)

        link = await self._persist(provider, username, external_subject)
        logger.info("OAuth2 account added: %s -> %s", username, provider.tag)
        return link

    async def _exchange(self, provider: OAuthProvider, code: str) -> ProviderTokenResponse:
        try:
            async with self._client(provider) as client:
                token = await client.fetch_token(provider.token_url, code=code)
            tokens = ProviderTokenResponse.model_validate(dict(token))
        except (OAuthError, httpx.HTTPError, ValueError, ValidationError) as exc:
            logger.warning("OAuth2 token exchange with %s failed: %s", provider.tag, exc)
            raise Unauthorized("token exchange failed") from exc
        logger.info("OAuth2 challenge verified by %s", provider.tag)
        return tokens

    async def _persist(self, provider: OAuthProvider, username: str, external_subject: str) -> OauthLink:
        try:
            user = await run_in_threadpool(self._store.lookup_user_by_username, username)
            if user is None:
                raise InternalError(f"session user {username!r} has no account")
            owner = await run_in_threadpool(self._store.lookup_user_by_oauth, provider.tag, external_subject)
            if owner is not None and owner.id != user.id:
                logger.warning(
                    "OAuth2 identity %s/%s is already linked to another account", provider.tag, external_subject
                )
                raise BadRequest("identity already linked to another account")
            link = OauthLink(user_id=user.id, provider=provider.tag, external_subject=external_subject)
            await run_in_threadpool(self._store.insert_oauth_link, link)
        except SQLAlchemyError as exc:
            logger.error("Credential store write failed: %s", exc)
            raise InternalError("credential store unavailable") from exc
        return link

    # ------------------------------------------------------------------
    # Unlink and listing
    # ------------------------------------------------------------------

    async def unlink(self, username: Optional[str], name: str) -> bool:
        """Delete the user's link for provider. Returns False if there was none."""
        if username is None:
            raise BadRequest("unlinking requires a logged-in session")
        provider = self.provider(name)
        try:
            user = await run_in_threadpool(self._store.lookup_user_by_username, username)
            if user is None:
                raise InternalError(f"session user {username!r} has no account")
            removed = await run_in_threadpool(self._store.delete_oauth_link, user.id, provider.tag)
        except SQLAlchemyError as exc:
            logger.error("Credential store write failed: %s", exc)
            raise InternalError("credential store unavailable") from exc
        if removed:
            logger.info("OAuth2 account removed: %s -> %s", username, provider.tag)
        return removed

    async def links_for(self, username: str) -> list[OauthLink]:
        try:
            user = await run_in_threadpool(self._store.lookup_user_by_username, username)
            if user is None:
                return []
            return await run_in_threadpool(self._store.list_oauth_links_for_user, user.id)
        except SQLAlchemyError as exc:
            logger.error("Credential store lookup failed: %s", exc)
            raise InternalError("credential store unavailable") from exc
