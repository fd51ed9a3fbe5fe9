"""
web/routes.py -- Browser-facing session routes served through the edge relay.

Browsers hold two httpOnly cookies (access + refresh) and never see a token
in JavaScript. These routes translate between that cookie pair and the
session service via SessionRelay.

Routes:
  POST /session/login    -- password login; sets both cookies
  POST /session/refresh  -- force a rotation; resets both cookies
  POST /session/logout   -- revoke + clear both cookies; always 200
  GET  /session          -- who am I; silently refreshes an expired access cookie

Every response built after a committed rotation carries the rotated cookies,
including error responses.

Rate limits: login and refresh draw on the same per-address buckets as their
/api/v1/auth counterparts (shared_limit scopes in auth.ratelimit), so the edge
paths are not a way around them.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from auth.errors import AuthError, NoSession, RefreshError
from auth.ratelimit import LOGIN_SCOPE, REFRESH_SCOPE, limiter
from core.config import get_settings
from web.relay import BackendUnavailable, RelayResult, relay_from_app

logger = logging.getLogger("sessionkeeper.web")

_settings = get_settings()

# @router sits above @limiter.shared_limit so FastAPI registers the rate-limited
# wrapper. No __future__ import here: FastAPI resolves annotations via the wrapper.
router = APIRouter()


class SessionLoginForm(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


def _error(code: str, message: str, status_code: int, retry_after: Optional[int] = None) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _auth_error(exc: AuthError) -> JSONResponse:
    return _error(exc.code, exc.message, exc.status_code, exc.retry_after)


def _unavailable() -> JSONResponse:
    return _error("session_backend_unavailable", "Session service is temporarily unavailable.", 503)


@router.post("/session/login")
@limiter.shared_limit(_settings.login_rate_limit, scope=LOGIN_SCOPE)
def session_login(request: Request, form: SessionLoginForm) -> JSONResponse:
    relay = relay_from_app(request.app)
    try:
        tokens = relay.login(request, form.email.strip(), form.password)
    except AuthError as exc:
        return _auth_error(exc)
    except BackendUnavailable:
        return _unavailable()
    resp = JSONResponse(
        content={
            "account": {
                "id": tokens.account.id,
                "email": tokens.account.email,
                "display_name": tokens.account.display_name,
                "role": tokens.account.role,
            }
        }
    )
    relay.set_session_cookies(resp, tokens.access_token, tokens.access_expires_in, tokens.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/session/refresh")
@limiter.shared_limit(_settings.refresh_rate_limit, scope=REFRESH_SCOPE)
def session_refresh(request: Request) -> JSONResponse:
    relay = relay_from_app(request.app)
    try:
        tokens = relay.rotate(request)
    except RefreshError as exc:
        resp = _auth_error(exc)
        relay.clear(resp)
        return resp
    except AuthError as exc:
        return _auth_error(exc)
    except BackendUnavailable:
        return _unavailable()
    resp = JSONResponse(content={"ok": True, "expires_in": tokens.access_expires_in})
    relay.set_session_cookies(resp, tokens.access_token, tokens.access_expires_in, tokens.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/session/logout")
def session_logout(request: Request) -> JSONResponse:
    """Idempotent: no cookies, or an already-dead session, still answers 200."""
    relay = relay_from_app(request.app)
    try:
        relay.logout(request)
    except BackendUnavailable:
        # The browser forgets the session regardless; the record expires on its own.
        logger.warning("Logout could not reach the session service; clearing cookies only")
    resp = JSONResponse(content={"ok": True})
    relay.clear(resp)
    return resp


@router.get("/session")
def current_session(request: Request) -> JSONResponse:
    relay = relay_from_app(request.app)
    result: Optional[RelayResult] = None
    try:
        result = relay.get_access_token(request)
        try:
            account = relay.whoami(result.token)
        except NoSession:
            # exp looked live but the backend refused the token (bad signature,
            # retired key); the refresh cookie gets one chance.
            if result.was_refreshed or not relay.has_refresh_cookie(request):
                raise
            logger.info("Access cookie rejected downstream; refreshing once")
            result = relay.refresh(request)
            account = relay.whoami(result.token)
        resp = JSONResponse(content={"account": account, "refreshed": result.was_refreshed})
    except NoSession as exc:
        resp = _auth_error(exc)
    except RefreshError as exc:
        resp = _auth_error(exc)
        relay.clear(resp)
    except AuthError as exc:
        resp = _auth_error(exc)
    except BackendUnavailable:
        resp = _unavailable()
    if result is not None:
        # The rotation already committed; dropping the new cookies would strand the browser.
        relay.propagate(resp, result)
    resp.headers["Cache-Control"] = "no-store"
    return resp
