"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for pakreq happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead, or
better, receive the Settings instance from create_app().

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET, oauth_aosc_jwk_url -> OAUTH_AOSC_JWK_URL).

  @model_validator(mode="after"): dev mode generates missing secrets with a
      warning, production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY and JWT_SECRET shorter than 32 chars are rejected outright.
       The session seal and the bearer-token HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  The two secrets are deliberately separate: SECRET_KEY seals browser session
  cookies, JWT_SECRET signs REST bearer tokens. Rotating one does not log out
  the other surface.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pakreq.config")

_MIN_SECRET_LENGTH = 32


class StoreSettings(BaseSettings):
    """The credential store location, and nothing else.

    pakreq-admin reads this instead of Settings: it never touches the session
    or token secrets, so their production policy must not stop it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///pakreq.db"


class Settings(StoreSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    base_url: str = "http://localhost:8000"

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    jwt_secret: str = ""

    # ------------------------------------------------------------------
    # Sessions and bearer tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_max_age_seconds: int = 14 * 24 * 3600
    bearer_token_ttl_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # AOSC identity provider (empty client id means the provider is disabled)
    # ------------------------------------------------------------------

    oauth_aosc_client_id: str = ""
    oauth_aosc_client_secret: str = ""
    oauth_aosc_authorize_url: str = "https://id.aosc.io/auth"
    oauth_aosc_token_url: str = "https://id.aosc.io/token"
    oauth_aosc_jwk_url: str = "https://id.aosc.io/keys"
    oauth_aosc_redirect_url: str = "http://localhost:8000/oauth/aosc"
    # Empty means the issuer claim is not checked.
    oauth_aosc_issuer: str = ""

    # Bounded timeout for every call to the identity provider (seconds).
    oauth_timeout_seconds: float = 10.0
    # 0 disables key caching: every validation fetches the key set.
    jwks_cache_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # Workers and hosting
    # ------------------------------------------------------------------

    crypto_workers: int = 4
    # JSON list in the environment, e.g. ALLOWED_HOSTS='["pakreq.aosc.io"]'
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy for SECRET_KEY and JWT_SECRET [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and bearer tokens will not survive restart.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        for field_name in ("secret_key", "jwt_secret"):
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, field_name, value)
                logger.warning("Using auto-generated %s. It will not persist across restarts.", field_name.upper())
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{field_name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.crypto_workers < 1:
            raise ValueError("CRYPTO_WORKERS must be at least 1.")
        return self

    @property
    def aosc_enabled(self) -> bool:
        return bool(self.oauth_aosc_client_id and self.oauth_aosc_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only asgi.py should call this. Everything else receives the
    Settings instance (or the values it needs) through constructors.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
