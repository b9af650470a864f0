"""
api/routes/rest.py -- The REST surface under /api.

Routes:
  GET /api/login     -- exchange x-username/x-password headers for a bearer token
  GET /api/whoami    -- echo the subject of a valid bearer token
  *   /api/{anything} -- Bad Request

The REST surface never reads or writes the browser identity cookie. Callers
authenticate per request with Authorization: Bearer <token>.

Security:
  [H2] GET /login is rate-limited per client address (api.limiter).
  [C1] PasswordEngine.check_password() spends a verification for unknown
       users too -- use it, never look the user up and verify inline.
  [M5] Cache-Control: no-store on every response (api.responses).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import TokenResponse, WhoAmIResponse
from api.responses import not_authorized, token_issued, whoami as whoami_response
from auth.dependencies import bearer_subject, get_passwords, get_store, get_tokens
from auth.errors import BadRequest

logger = logging.getLogger("pakreq.api")

router = APIRouter()

_UNKNOWN_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


# The route decorator must sit ABOVE @limiter.limit: FastAPI then registers
# slowapi's wrapper, which is where per-route limits are enforced.
@router.get("/login", response_model=TokenResponse)
@limiter.limit(LOGIN_RATE_LIMIT)  # [H2]
async def api_login(request: Request) -> JSONResponse:
    """Issue a bearer token for valid header credentials.

    Missing headers and wrong credentials look identical to the caller: 401
    "Not authorized". A store failure propagates as InternalError (500).
    """
    username = request.headers.get("x-username")
    password = request.headers.get("x-password")
    if not username or password is None:
        return not_authorized()

    if not await get_passwords(request).check_password(get_store(request), username, password):
        logger.info("REST login failed for %s", username)
        return not_authorized()

    token = await get_tokens(request).issue(username)
    logger.info("REST token issued for %s", username)
    return token_issued(token)


@router.get("/whoami", response_model=WhoAmIResponse)
async def whoami(username: str = Depends(bearer_subject)) -> JSONResponse:
    return whoami_response(username)


@router.api_route("/{endpoint:path}", methods=_UNKNOWN_METHODS, include_in_schema=False)
async def unknown_endpoint(endpoint: str) -> JSONResponse:
    raise BadRequest(f"unknown REST endpoint {endpoint!r}")
