"""
api/responses.py -- Wire shapes for the REST surface.

Small pure functions from a typed outcome to a JSONResponse. The auth core
raises AuthError subclasses and knows nothing about HTTP bodies; this module
is the only place the fixed REST JSON shapes are spelled out:

  error:   {"success": false, "message": "<Bad Request|Internal error|Not authorized>"}
  login:   {"success": true, "token": "<signed-token>"}

Every response carries Cache-Control: no-store, since login responses contain
credentials [M5].
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorResponse, TokenResponse, WhoAmIResponse
from auth.errors import AuthError, Unauthorized


def _json(status_code: int, content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def error_response(exc: AuthError) -> JSONResponse:
    """Map a taxonomy error to its status and fixed message. exc.reason is never sent."""
    return _json(exc.status_code, ErrorResponse(message=exc.message).model_dump())


def not_authorized() -> JSONResponse:
    return error_response(Unauthorized())


def token_issued(token: str) -> JSONResponse:
    return _json(200, TokenResponse(token=token).model_dump())


def whoami(username: str) -> JSONResponse:
    return _json(200, WhoAmIResponse(username=username).model_dump())


def too_many_requests(retry_after: int) -> JSONResponse:
    resp = _json(429, ErrorResponse(message="Too many requests").model_dump())
    resp.headers["Retry-After"] = str(retry_after)
    return resp
