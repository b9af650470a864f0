"""
auth/jwks.py -- Identity token validation against the provider's key set.

Flow for one identity token:
  1. Read the unverified header and take its `kid`. No kid, no validation.
  2. Find the RSA key with that kid in the provider's JSON Web Key Set.
     Keys are cached per kid for jwks_cache_ttl seconds; a kid that is not in
     the cache forces one refetch (the provider may have rotated keys). With
     a TTL of 0 every validation fetches the set.
  3. A kid that is still unknown after the refetch fails validation before any
     signature check is attempted.
  4. Verify with python-jose pinned to RS256. The token's own `alg` header is
     never trusted, so an HS256 token signed with the public modulus is
     rejected rather than "verified".
  5. Check the claims against the provider's closed schema and unpack the
     subject with decode_subject().

Failure mapping:
  key-set fetch error, unknown kid, bad signature, expired token, wrong
  audience, unexpected claims  -> Unauthorized
  malformed subject payload    -> BadRequest

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Optional, Union

import httpx
from jose import JOSEError, JWTError, jwk, jwt
from pydantic import BaseModel, ConfigDict, ValidationError

from auth.errors import BadRequest, Unauthorized
from auth.workers import CryptoPool

logger = logging.getLogger("pakreq.auth.jwks")

_ALGORITHM = "RS256"


# ---------------------------------------------------------------------------
# Subject decoding
# ---------------------------------------------------------------------------


def decode_subject(subject: str) -> str:
    """Unpack the provider's packed subject claim into the external user id.

    The claim is base64 without padding. Decoded layout:
      byte 0        type tag (ignored)
      byte 1        length N of the identifier
      bytes 2..2+N  UTF-8 identifier; anything after it is ignored

    Raises BadRequest when the payload is not base64, is shorter than 3 bytes,
    declares a length past the end of the buffer, or is not UTF-8.
    """
    # Dex emits the URL-safe alphabet; accept both.
    normalized = subject.replace("-", "+").replace("_", "/")
    padded = normalized + "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BadRequest("subject claim is not valid base64") from exc
    if len(raw) < 3:
        raise BadRequest("subject claim is too short")
    length = raw[1]
    if length + 2 > len(raw):
        raise BadRequest("subject claim has an invalid length specifier")
    try:
        return raw[2 : 2 + length].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BadRequest("subject claim is not valid UTF-8") from exc


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class JWKEntry(BaseModel):
    """One RSA public key from the key set. Extra JWK members are ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kid: str
    n: str
    e: str
    kty: str = "RSA"


class KeySet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    keys: list[JWKEntry]


class AoscIdentityClaims(BaseModel):
    """Claims the AOSC identity provider (Dex) puts in its tokens.

    Closed schema: a claim that is not listed here fails validation instead of
    being silently dropped, and the required ones must be present.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    iss: str
    sub: str
    aud: Union[str, list[str]]
    exp: int
    iat: int
    nbf: Optional[int] = None
    azp: Optional[str] = None
    nonce: Optional[str] = None
    at_hash: Optional[str] = None
    c_hash: Optional[str] = None
    auth_time: Optional[int] = None
    email: Optional[str] = None
    email_verified: Optional[bool] = None
    name: Optional[str] = None
    preferred_username: Optional[str] = None
    groups: Optional[list[str]] = None
    federated_claims: Optional[dict[str, str]] = None


# ---------------------------------------------------------------------------
# Key set cache
# ---------------------------------------------------------------------------


class JWKSCache:
    """Fetch the provider's key set and hold its keys by kid.

    Attributes:
        jwks_url:  URL of the JSON Web Key Set document.
        cache_ttl: Seconds a fetched set stays fresh. 0 disables caching.

    Example:
        >>> cache = JWKSCache("https://id.aosc.io/keys", httpx.AsyncClient(timeout=10))
        >>> entry = await cache.get_signing_key("a1b2")
    """

    def __init__(self, jwks_url: str, http_client: httpx.AsyncClient, cache_ttl: int = 300) -> None:
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self._http_client = http_client
        self._keys: dict[str, JWKEntry] = {}
        self._last_refresh: Optional[float] = None

    async def get_signing_key(self, kid: str) -> JWKEntry:
        """Return the key for kid, refetching once if it is not cached.

        Raises:
            Unauthorized: the set cannot be fetched or does not contain kid.
        """
        refreshed = False
        if self._needs_refresh():
            await self.refresh_keys()
            refreshed = True

        entry = self._keys.get(kid)
        if entry is None and not refreshed:
            logger.info("Key id %r not cached, refreshing key set", kid)
            await self.refresh_keys()
            entry = self._keys.get(kid)

        if entry is None:
            logger.warning("Key id %r not found in key set from %s", kid, self.jwks_url)
            raise Unauthorized(f"unknown key id {kid!r}")
        return entry

    async def refresh_keys(self) -> None:
        """Fetch the key set and swap the cache in one assignment."""
        try:
            response = await self._http_client.get(self.jwks_url)
            response.raise_for_status()
            key_set = KeySet.model_validate(response.json())
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch key set from %s: %s", self.jwks_url, exc)
            raise Unauthorized("key set fetch failed") from exc
        except (ValueError, ValidationError) as exc:
            logger.warning("Key set from %s is malformed: %s", self.jwks_url, exc)
            raise Unauthorized("key set malformed") from exc

        self._keys = {entry.kid: entry for entry in key_set.keys}
        self._last_refresh = time.monotonic()
        logger.debug("Key set refreshed (%d keys)", len(self._keys))

    def _needs_refresh(self) -> bool:
        if self.cache_ttl <= 0 or self._last_refresh is None:
            return True
        return time.monotonic() - self._last_refresh >= self.cache_ttl


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class IdentityTokenValidator:
    """Validate a provider identity token and return the external subject.

    Attributes:
        audience: Expected `aud` -- the OAuth client id.
        issuer:   Expected `iss`; None skips the issuer check.
    """

    def __init__(
        self,
        key_cache: JWKSCache,
        pool: CryptoPool,
        audience: str,
        issuer: Optional[str] = None,
        claims_model: type[BaseModel] = AoscIdentityClaims,
    ) -> None:
        self.key_cache = key_cache
        self.audience = audience
        self.issuer = issuer
        self.claims_model = claims_model
        self._pool = pool

    async def validate(self, token: str, access_token: Optional[str] = None) -> str:
        """Return the decoded external subject of a verified token.

        access_token is the companion access token from the same exchange; it
        is needed to check the at_hash claim of an id_token.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise Unauthorized("identity token header is malformed") from exc
        kid = header.get("kid")
        if not kid:
            raise Unauthorized("`kid` is missing from header")

        entry = await self.key_cache.get_signing_key(kid)
        claims = await self._pool.run(self._verify, token, entry, access_token)
        subject = decode_subject(claims.sub)
        logger.info("Identity token verified (kid=%s)", kid)
        return subject

    def _verify(self, token: str, entry: JWKEntry, access_token: Optional[str]) -> BaseModel:
        try:
            key = jwk.construct({"kty": entry.kty, "n": entry.n, "e": entry.e}, algorithm=_ALGORITHM)
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                access_token=access_token,
            )
        except JOSEError as exc:
            logger.warning("Identity token rejected: %s", exc)
            raise Unauthorized("identity token verification failed") from exc
        try:
            return self.claims_model.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Identity token claims do not match the provider schema: %s", exc)
            raise Unauthorized("identity token claims rejected") from exc
