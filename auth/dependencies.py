"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens travel in the Authorization: Bearer header. Verifying one needs
only the TokenIssuer's key ring -- no database round trip -- so authorization
checks on collaborating resource endpoints stay cheap. get_current_account()
is the one helper that also loads the Account row, for endpoints that need
current profile data.

try_get_access_claims() is the soft variant (returns None on failure).
get_access_claims() wraps it and raises NoSession (401) if unauthenticated.
require_admin() wraps get_access_claims() and raises HTTP 403 if not admin.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for Request/HTTPException)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import NoSession
from auth.models import AccessClaims, Account
from auth.sessions import SessionService
from auth.store import AuthStore
from auth.tokens import TokenIssuer


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_access_claims(request: Request) -> AccessClaims | None:
    """Verify the bearer access token. Never raises."""
    token = bearer_token(request)
    if not token:
        return None
    issuer: TokenIssuer = request.app.state.token_issuer
    return issuer.decode_access_token(token)


def get_access_claims(request: Request) -> AccessClaims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessClaims = Depends(get_access_claims)): ...
    """
    claims = try_get_access_claims(request)
    if claims is None:
        raise NoSession()
    return claims


def require_admin(request: Request) -> AccessClaims:
    """Require admin role. 401 if unauthenticated, HTTP 403 if not admin."""
    claims = get_access_claims(request)
    if claims.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return claims


def get_current_account(request: Request) -> Account:
    """Require a valid access token whose account still exists and is active."""
    claims = get_access_claims(request)
    store: AuthStore = request.app.state.auth_store
    account = store.get_account(claims.account_id)
    if account is None or not account.is_active:
        raise NoSession()
    return account


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service
