"""
web/routes.py -- Jinja2 template routes for the pakreq browser UI.

These routes serve server-rendered HTML and authenticate through the sealed
identity cookie (auth.sessions). They share app.state with the REST routes
but never accept a bearer token.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /oauth/{provider}/new and POST /oauth/{provider}/unlink must be
    registered before GET /oauth/{provider}. The paths differ in depth today,
    but keeping the fixed suffixes first stops a future catch-all from
    swallowing them.

Routes:
  GET  /                         -- 302 to /account or /login
  GET  /login                    -- login form (302 /account when already logged in)
  POST /login                    -- handle password login
  GET  /logout                   -- forget identity and CSRF state, 302 /
  GET  /account                  -- account panel with linked identities (auth required)
  POST /account                  -- change password (auth required)
  GET  /oauth/{provider}/new     -- start linking: 302 to the provider
  POST /oauth/{provider}/unlink  -- remove a linked identity
  GET  /oauth/{provider}         -- provider callback, 302 /account

Errors raised as AuthError (unknown provider, CSRF mismatch, failed exchange)
are rendered as an HTML error page by the app's exception handler.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from api.limiter import LOGIN_RATE_LIMIT, limiter
from auth.dependencies import get_oauth_flow, get_passwords, get_sessions, get_store, session_user
from auth.errors import InternalError

logger = logging.getLogger("pakreq.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# Fixed page messages. User input is never echoed into these.
MSG_INVALID_CREDENTIALS = "Invalid credentials"
MSG_PASSWORD_MISMATCH = "New password and Confirm new password mismatch!"
MSG_WRONG_CURRENT_PASSWORD = "Current password is incorrect!"
MSG_PASSWORD_CHANGED = "Password changed successfully"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Return a 302 to /login for anonymous sessions, None when authenticated.

        if redirect := _require_auth(request):
            return redirect
    """
    if session_user(request) is None:
        return RedirectResponse("/login", status_code=302)
    return None


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


async def _render_account(
    request: Request,
    username: str,
    msg: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    flow = get_oauth_flow(request)
    linked = {link.provider for link in await flow.links_for(username)}
    providers = [dict(p, linked=p["tag"] in linked) for p in flow.enabled_providers()]
    return templates.TemplateResponse(
        request,
        "account.html",
        {
            "banner_subtitle": f"Settings for {username}",
            "username": username,
            "providers": providers,
            "msg": msg,
        },
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/")
def index(request: Request) -> RedirectResponse:
    if session_user(request) is None:
        return RedirectResponse("/login", status_code=302)
    return RedirectResponse("/account", status_code=302)


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> Response:
    """Render the login page."""
    if session_user(request) is not None:
        return RedirectResponse("/account", status_code=302)
    return templates.TemplateResponse(request, "login.html", {"msg": None})


# The route decorator must sit ABOVE @limiter.limit so slowapi's wrapper is
# the registered endpoint.
@router.post("/login", response_class=HTMLResponse)
@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] brute-force mitigation
async def login_post(
    request: Request,
    user: str = Form(...),
    pwd: str = Form(...),
) -> Response:
    """Handle username/password login form submission.

    A store failure renders the same 401 page as a wrong password; the cause
    is in the log.
    """
    try:
        valid = await get_passwords(request).check_password(get_store(request), user, pwd)
    except InternalError:
        valid = False
    if not valid:
        logger.info("Web login failed for %s", user)
        return _no_store(
            templates.TemplateResponse(request, "login.html", {"msg": MSG_INVALID_CREDENTIALS}, status_code=401)
        )

    resp = RedirectResponse("/account", status_code=302)
    get_sessions(request).remember(resp, user)
    logger.info("Web login succeeded for %s", user)
    return _no_store(resp)


@router.get("/logout")
def logout(request: Request) -> RedirectResponse:
    """Drop the identity cookie and any pending CSRF state."""
    resp = RedirectResponse("/", status_code=302)
    get_sessions(request).forget(request, resp)
    return resp


# ---------------------------------------------------------------------------
# Account panel
# ---------------------------------------------------------------------------


@router.get("/account", response_class=HTMLResponse)
async def account_panel(request: Request) -> Response:
    if redirect := _require_auth(request):
        return redirect
    return await _render_account(request, session_user(request))


@router.post("/account", response_class=HTMLResponse)
async def account_post(
    request: Request,
    cpwd: str = Form(...),
    npwd: str = Form(...),
    cnpwd: str = Form(...),
) -> Response:
    """Change the logged-in user's password.

    Mismatched new passwords are reported with 200 and nothing is checked or
    stored. A wrong current password is 401.
    """
    if redirect := _require_auth(request):
        return redirect
    username = session_user(request)

    if npwd != cnpwd:
        return await _render_account(request, username, MSG_PASSWORD_MISMATCH)

    passwords = get_passwords(request)
    store = get_store(request)
    try:
        correct = await passwords.check_password(store, username, cpwd)
    except InternalError:
        correct = False
    if not correct:
        logger.info("Password change rejected for %s: wrong current password", username)
        return await _render_account(request, username, MSG_WRONG_CURRENT_PASSWORD, status_code=401)

    await passwords.set_password(store, username, npwd)
    logger.info("Password changed for %s", username)
    return await _render_account(request, username, MSG_PASSWORD_CHANGED)


# ---------------------------------------------------------------------------
# Identity linking (fixed suffixes first, then the callback)
# ---------------------------------------------------------------------------


@router.get("/oauth/{provider}/new")
async def oauth_new(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page."""
    url = await get_oauth_flow(request).begin(request, session_user(request), provider)
    return RedirectResponse(url, status_code=302)


@router.post("/oauth/{provider}/unlink")
async def oauth_unlink(request: Request, provider: str) -> RedirectResponse:
    await get_oauth_flow(request).unlink(session_user(request), provider)
    return RedirectResponse("/account", status_code=302)


@router.get("/oauth/{provider}")
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    """Handle the provider callback and store the link."""
    await get_oauth_flow(request).complete(request, session_user(request), provider, code, state)
    return RedirectResponse("/account", status_code=302)
