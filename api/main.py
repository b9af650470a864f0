"""
api/main.py -- FastAPI application factory for pakreq.

create_app(settings) builds one fully wired application: every auth
component is constructed here from Settings and parked on app.state, so the
route layers (api/ and web/) only ever read app.state and never construct
anything themselves.

Run with:      uvicorn asgi:app --reload

Middleware stack:
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- exposes app.state.limiter to per-route limits
  3. SessionMiddleware     -- the signed CSRF session used by the OAuth flow
  4. log_requests          -- one access log line per request

HEAD / is a liveness ping that touches the credential store.

Lifespan logs startup and releases the store, the crypto pool and the
provider HTTP client on shutdown.
"""

from __future__ import annotations

import html
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import HTMLResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.responses import error_response, too_many_requests
from api.routes.rest import router as rest_router
from auth.errors import AuthError, BadRequest, InternalError, Unauthorized
from auth.jwks import IdentityTokenValidator, JWKSCache
from auth.oauth import OAuthFlowController, OAuthProvider
from auth.passwords import PasswordEngine
from auth.sessions import SessionIdentityManager
from auth.store import CredentialStore
from auth.tokens import BearerTokenService
from auth.workers import CryptoPool
from core.config import Settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pakreq.api")

SESSION_COOKIE = "session"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log startup, then tear down the components create_app() built."""
    logger.info(
        "pakreq starting up (%d users, providers=%s)",
        app.state.store.count_users(),
        [p["tag"] for p in app.state.oauth_flow.enabled_providers()] or "none",
    )

    yield

    await app.state.http_client.aclose()
    app.state.crypto_pool.shutdown()
    app.state.store.close()
    logger.info("pakreq shutdown complete")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def _build_providers(
    settings: Settings, http_client: httpx.AsyncClient, pool: CryptoPool
) -> dict[str, OAuthProvider]:
    """Return the closed provider registry. AOSC is the only known provider."""
    providers: dict[str, OAuthProvider] = {}
    if settings.aosc_enabled:
        key_cache = JWKSCache(
            settings.oauth_aosc_jwk_url,
            http_client,
            cache_ttl=settings.jwks_cache_ttl_seconds,
        )
        validator = IdentityTokenValidator(
            key_cache,
            pool,
            audience=settings.oauth_aosc_client_id,
            issuer=settings.oauth_aosc_issuer or None,
        )
        providers["aosc"] = OAuthProvider(
            name="aosc",
            tag="AOSC",
            label="AOSC",
            client_id=settings.oauth_aosc_client_id,
            client_secret=settings.oauth_aosc_client_secret,
            authorize_url=settings.oauth_aosc_authorize_url,
            token_url=settings.oauth_aosc_token_url,
            redirect_url=settings.oauth_aosc_redirect_url,
            validator=validator,
        )
    else:
        logger.warning("OAUTH_AOSC_CLIENT_ID/SECRET not set -- account linking is disabled")
    return providers


def create_app(
    settings: Settings,
    *,
    store: Optional[CredentialStore] = None,
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the pakreq application.

    Args:
        settings:           Validated Settings (see core.config.get_settings).
        store:              Credential store to use instead of one opened from
                            settings.database_url.
        provider_transport: httpx transport for every identity-provider call
                            (key set and token endpoint). Tests pass an
                            httpx.MockTransport here.
    """
    app = FastAPI(
        title="pakreq",
        description="Package request tracker: accounts, sessions and API tokens.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    pool = CryptoPool(max_workers=settings.crypto_workers)
    http_client = httpx.AsyncClient(timeout=settings.oauth_timeout_seconds, transport=provider_transport)

    app.state.settings = settings
    app.state.crypto_pool = pool
    app.state.http_client = http_client
    app.state.store = store if store is not None else CredentialStore(db_url=settings.database_url)
    app.state.passwords = PasswordEngine(pool)
    app.state.sessions = SessionIdentityManager(
        settings.secret_key,
        max_age=settings.session_max_age_seconds,
        secure=settings.secure_cookies,
    )
    app.state.tokens = BearerTokenService(settings.jwt_secret, pool, ttl_seconds=settings.bearer_token_ttl_seconds)
    app.state.oauth_flow = OAuthFlowController(
        _build_providers(settings, http_client, pool),
        app.state.store,
        timeout=settings.oauth_timeout_seconds,
        transport=provider_transport,
    )
    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

    # -----------------------------------------------------------------------
    # Middleware
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    app.add_middleware(SlowAPIMiddleware)
    # Carries only the pending OAuth CSRF tokens. The identity cookie is
    # sealed separately by SessionIdentityManager.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        session_cookie=SESSION_COOKIE,
        max_age=settings.session_max_age_seconds,
        same_site="lax",
        https_only=settings.secure_cookies,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    # -----------------------------------------------------------------------
    # Routers and exception handlers
    # -----------------------------------------------------------------------

    # Registered before any router so HEAD / never falls through to the web
    # index redirect. Not rate limited: load balancers poll it.
    @app.head("/", include_in_schema=False)
    async def ping(request: Request) -> Response:
        """204 when the credential store answers a trivial query, 500 otherwise."""
        try:
            await run_in_threadpool(request.app.state.store.count_users)
        except SQLAlchemyError as exc:
            logger.error("Ping failed, credential store unavailable: %s", exc)
            return Response(status_code=500)
        return Response(status_code=204)

    # Web UI router is mounted by asgi.py, not here.
    # api/ and web/ are independent layers -- only the top-level asgi.py imports both.
    app.include_router(rest_router, prefix="/api", tags=["REST"])

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure is rendered for the surface it happened on: the fixed JSON
# envelope under /api/, a small HTML page for browser routes. Neither body
# ever contains the internal reason.
# ---------------------------------------------------------------------------


def _is_api(request: Request) -> bool:
    path = request.url.path
    return path == "/api" or path.startswith("/api/")


def error_page(status_code: int, message: str) -> HTMLResponse:
    """Render the minimal browser error page."""
    text = html.escape(message)
    body = (
        "<!doctype html>\n"
        f"<html><head><meta charset='utf-8'><title>{status_code} {text}</title></head>\n"
        f"<body><h1>{status_code} {text}</h1>\n"
        "<p><a href='/account'>Back to your account</a></p></body></html>\n"
    )
    resp = HTMLResponse(body, status_code=status_code)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _render(request: Request, exc: AuthError) -> Response:
    if _is_api(request):
        return error_response(exc)
    return error_page(exc.status_code, exc.message)


async def auth_error_handler(request: Request, exc: AuthError) -> Response:
    """Route taxonomy errors to their surface. exc.reason is logged only."""
    if isinstance(exc, InternalError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason or exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.reason or exc.message)
    return _render(request, exc)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Return 429 with Retry-After when a login limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    client = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded on %s from %s", request.url.path, client)
    if _is_api(request):
        return too_many_requests(retry_after)
    resp = error_page(429, "Too many requests")
    resp.headers["Retry-After"] = str(retry_after)
    return resp


async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    """Malformed form or query input is a plain Bad Request on both surfaces."""
    return _render(request, BadRequest(str(exc.errors())))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Fold framework HTTP errors (404, 405) into the fixed error shapes."""
    if exc.status_code == 401:
        mapped: AuthError = Unauthorized(str(exc.detail))
    elif exc.status_code >= 500:
        mapped = InternalError(str(exc.detail))
    elif _is_api(request):
        # Unknown REST endpoints are Bad Request, never 404.
        mapped = BadRequest(str(exc.detail))
    else:
        return error_page(exc.status_code, str(exc.detail))
    return _render(request, mapped)


async def generic_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    if _is_api(request):
        return error_response(InternalError())
    return error_page(500, InternalError.message)
