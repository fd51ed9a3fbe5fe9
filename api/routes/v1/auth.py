"""
api/routes/v1/auth.py -- Authentication and session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login                  -- password login; access token + refresh cookie
  POST /api/v1/auth/refresh                -- rotate the refresh cookie (cookie only)
  POST /api/v1/auth/logout                 -- revoke + clear cookie; always 200
  GET  /api/v1/auth/me                     -- current account (requires auth)
  POST /api/v1/auth/forgot-password        -- start password recovery; always 202
  POST /api/v1/auth/reset-password         -- finish password recovery
  POST /api/v1/auth/accounts/{id}/unlock   -- clear lockout state (admin only)
  POST /api/v1/auth/sessions/revoke        -- bulk session invalidation (admin only)

Security:
  login, refresh, forgot-password and reset-password are rate-limited per client
  address. sessions/revoke is limited per authenticated operator (actor_key).
  The refresh token is never returned in a body, only as an httpOnly cookie.
  Cache-Control: no-store on every token-bearing response.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import auth_error_response
from auth.ratelimit import LOGIN_SCOPE, REFRESH_SCOPE, actor_key, limiter
from api.models import (
    AccountInfo,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    ResetPasswordRequest,
    RevokeSessionsRequest,
    RevokeSessionsResponse,
    TokenResponse,
    UnlockResponse,
)
from auth.audit import client_ip
from auth.dependencies import get_current_account, get_session_service, require_admin
from auth.errors import NoSession, RefreshError
from auth.models import AccessClaims, Account, SessionTokens
from auth.recovery import PasswordRecovery
from auth.sessions import SessionService
from auth.tokens import clear_refresh_cookie, set_refresh_cookie
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:                 public
# - POST /api/v1/auth/refresh:               public -- the refresh cookie is the credential
# - POST /api/v1/auth/logout:                public -- idempotent, needs no prior auth
# - POST /api/v1/auth/forgot-password:       public
# - POST /api/v1/auth/reset-password:        public -- the reset token is the credential
# - GET  /api/v1/auth/me:                    requires auth (get_current_account)
# - POST /api/v1/auth/accounts/{id}/unlock:  requires admin (require_admin)
# - POST /api/v1/auth/sessions/revoke:       requires admin (require_admin)
router = APIRouter()


def _token_response(request: Request, tokens: SessionTokens) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=tokens.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=tokens.access_expires_in,
            account=AccountInfo.from_account(tokens.account),
        ).model_dump(),
    )
    set_refresh_cookie(resp, tokens.refresh_token, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _ip(request: Request) -> str | None:
    return client_ip(request, request.app.state.settings.trust_proxy_headers)


# ---------------------------------------------------------------------------
# Session lifecycle (public)
# ---------------------------------------------------------------------------
#
# @limiter.limit / shared_limit sit BELOW @router so FastAPI registers the rate-limited wrapper.
# Annotations in this module are evaluated eagerly (no __future__ import)
# because FastAPI resolves them against the wrapper, not this module.


@router.post("/auth/login", response_model=TokenResponse)
@limiter.shared_limit(_settings.login_rate_limit, scope=LOGIN_SCOPE)
def login(
    request: Request,
    body: LoginRequest,
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Authenticate with email and password; return an access token and set the refresh cookie.

    Failures raise AuthError subclasses (InvalidCredentials, AccountLocked,
    AccountDeactivated), rendered by the AuthError handler in api/main.py.
    Unknown email and wrong password produce the same response.
    """
    tokens = sessions.login(body.email, body.password, ip=_ip(request))
    return _token_response(request, tokens)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.shared_limit(_settings.refresh_rate_limit, scope=REFRESH_SCOPE)
def refresh(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated refresh cookie.

    The body is ignored; the cookie is the only accepted source. Any failure
    clears the cookie so the client stops presenting a dead token.
    """
    settings = request.app.state.settings
    presented = request.cookies.get(settings.refresh_cookie_name)
    try:
        if not presented:
            raise NoSession()
        tokens = sessions.rotate(presented, ip=_ip(request))
    except RefreshError as exc:
        resp = auth_error_response(exc)
        clear_refresh_cookie(resp, settings)
        return resp
    return _token_response(request, tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Revoke the presented refresh token (if any) and clear the cookie. Always 200."""
    settings = request.app.state.settings
    sessions.logout(request.cookies.get(settings.refresh_cookie_name), ip=_ip(request))
    resp = JSONResponse(content=MessageResponse(ok=True, message="Logged out.").model_dump())
    clear_refresh_cookie(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password recovery (public)
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
@limiter.limit(_settings.password_reset_rate_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Start password recovery. The answer is identical whether or not the email is registered."""
    recovery: PasswordRecovery = request.app.state.recovery
    recovery.request_reset(body.email, ip=_ip(request))
    return JSONResponse(
        status_code=202,
        content=MessageResponse(
            ok=True, message="If that email is registered, a reset link has been sent."
        ).model_dump(),
    )


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(_settings.password_reset_rate_limit)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password from a reset link. Every open session of the account ends."""
    recovery: PasswordRecovery = request.app.state.recovery
    recovery.complete_reset(body.token, body.new_password, ip=_ip(request))
    resp = JSONResponse(content=MessageResponse(ok=True, message="Password updated.").model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_account: Account = Depends(get_current_account)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    return MeResponse(
        account=AccountInfo.from_account(current_account),
        is_active=current_account.is_active,
        last_login=current_account.last_login.isoformat() if current_account.last_login else None,
    )


# ---------------------------------------------------------------------------
# Administration (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/accounts/{account_id}/unlock", response_model=UnlockResponse)
def unlock_account(
    request: Request,
    account_id: int,
    claims: AccessClaims = Depends(require_admin),
    sessions: SessionService = Depends(get_session_service),
) -> UnlockResponse:
    """Clear failed-attempt and lockout state. unlocked=false when the account does not exist."""
    unlocked = sessions.unlock(account_id, actor_id=claims.account_id, ip=_ip(request))
    return UnlockResponse(account_id=account_id, unlocked=unlocked)


@router.post("/auth/sessions/revoke", response_model=RevokeSessionsResponse)
@limiter.limit(_settings.bulk_revoke_rate_limit, key_func=actor_key)
def revoke_sessions(
    request: Request,
    body: RevokeSessionsRequest,
    claims: AccessClaims = Depends(require_admin),
    sessions: SessionService = Depends(get_session_service),
) -> RevokeSessionsResponse:
    """Revoke every active refresh token of the listed accounts.

    Outstanding access tokens stay valid until they expire; only the ability
    to refresh is removed.
    """
    revoked = sessions.revoke_sessions(body.account_ids, actor_id=claims.account_id, ip=_ip(request))
    return RevokeSessionsResponse(revoked=revoked, total=sum(revoked.values()))
