"""
web/relay.py -- Edge session relay for browser-facing page requests.

A page request arrives with cookies only. Before anything else runs, the relay
turns those cookies into an access token the resource layer will accept:

    access cookie (or bearer) present and not yet expired -> use it as is
    otherwise a refresh cookie                             -> rotate it once
    neither                                                -> NoSession

When a rotation happened the new cookies MUST reach the browser: the old
refresh token is already revoked, so a response that drops them logs the user
out on the next request. propagate() is therefore applied to every response,
success or failure, built after a committed rotation.

Two interchangeable backends:
  LocalBackend -- calls SessionService in-process (single deployment)
  HttpBackend  -- calls the session API over HTTP (EDGE_API_URL set), mapping
                  the error envelope back to the auth.errors taxonomy

Layer rule: web/ may import from auth/ and core/, never from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Optional, Protocol

import requests

from auth.audit import client_ip
from auth.errors import AuthError, NoSession, error_for_code
from auth.models import Account, SessionTokens
from auth.tokens import clear_refresh_cookie, set_refresh_cookie, unverified_expiry

logger = logging.getLogger("sessionkeeper.web.relay")


class BackendUnavailable(Exception):
    """The session API could not be reached or answered outside its contract."""


@dataclass(frozen=True)
class RelayResult:
    token: str
    was_refreshed: bool
    # Set only when was_refreshed; must be written back to the browser.
    refresh_token: Optional[str] = None
    access_expires_in: Optional[int] = None


class SessionBackend(Protocol):
    def login(self, email: str, password: str, ip: Optional[str] = None) -> SessionTokens: ...

    def refresh(self, refresh_token: str, ip: Optional[str] = None) -> SessionTokens: ...

    def logout(self, refresh_token: Optional[str], ip: Optional[str] = None) -> None: ...

    def whoami(self, access_token: str) -> dict[str, Any]: ...


def _account_info(account: Account) -> dict[str, Any]:
    return {"id": account.id, "email": account.email, "display_name": account.display_name, "role": account.role}


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class LocalBackend:
    """In-process backend: the relay and the session service share one deployment."""

    def __init__(self, sessions, issuer, store) -> None:
        self.sessions = sessions
        self.issuer = issuer
        self.store = store

    def login(self, email: str, password: str, ip: Optional[str] = None) -> SessionTokens:
        return self.sessions.login(email, password, ip=ip)

    def refresh(self, refresh_token: str, ip: Optional[str] = None) -> SessionTokens:
        return self.sessions.rotate(refresh_token, ip=ip)

    def logout(self, refresh_token: Optional[str], ip: Optional[str] = None) -> None:
        self.sessions.logout(refresh_token, ip=ip)

    def whoami(self, access_token: str) -> dict[str, Any]:
        claims = self.issuer.decode_access_token(access_token)
        if claims is None:
            raise NoSession()
        account = self.store.get_account(claims.account_id)
        if account is None or not account.is_active:
            raise NoSession()
        return _account_info(account)


class HttpBackend:
    """Talks to a remote SessionKeeper API.

    The shared requests.Session pools connections but never stores cookies:
    one relay serves many browsers, and a cookie jar shared between them would
    hand one user's refresh token to the next. Cookies are passed per request
    and read back from each response.
    """

    def __init__(
        self,
        base_url: str,
        refresh_cookie_name: str = "refresh_token",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.refresh_cookie_name = refresh_cookie_name
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 0
        self._session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

    def login(self, email: str, password: str, ip: Optional[str] = None) -> SessionTokens:
        resp = self._call("POST", "/api/v1/auth/login", ip=ip, json={"email": email, "password": password})
        return self._tokens(resp)

    def refresh(self, refresh_token: str, ip: Optional[str] = None) -> SessionTokens:
        resp = self._call("POST", "/api/v1/auth/refresh", ip=ip, cookies={self.refresh_cookie_name: refresh_token})
        return self._tokens(resp)

    def logout(self, refresh_token: Optional[str], ip: Optional[str] = None) -> None:
        cookies = {self.refresh_cookie_name: refresh_token} if refresh_token else None
        self._call("POST", "/api/v1/auth/logout", ip=ip, cookies=cookies)

    def whoami(self, access_token: str) -> dict[str, Any]:
        resp = self._call("GET", "/api/v1/auth/me", headers={"Authorization": f"Bearer {access_token}"})
        return resp.json()["account"]

    def _call(
        self,
        method: str,
        path: str,
        ip: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        headers = dict(headers or {})
        if ip:
            headers["X-Forwarded-For"] = ip
        try:
            resp = self._session.request(method, self.base_url + path, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Session API %s %s failed: %s", method, path, e)
            raise BackendUnavailable(str(e)) from e
        if resp.status_code < 400:
            return resp
        raise self._error_from(resp)

    def _error_from(self, resp: requests.Response) -> Exception:
        if resp.status_code >= 500:
            logger.warning("Session API answered %d", resp.status_code)
            return BackendUnavailable(f"session API answered {resp.status_code}")
        try:
            error = resp.json().get("error") or {}
        except ValueError:
            error = {}
        cls = error_for_code(error.get("code"), resp.status_code)
        retry_after = resp.headers.get("Retry-After")
        exc = cls(error.get("message"), retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)
        if cls is AuthError:
            # Unknown code: keep the upstream status and code on the instance.
            exc.status_code = resp.status_code
            exc.code = error.get("code") or exc.code
        return exc

    def _tokens(self, resp: requests.Response) -> SessionTokens:
        try:
            body = resp.json()
            info = body["account"]
            account = Account(
                id=info["id"], email=info["email"], display_name=info["display_name"], role=info["role"]
            )
            access_token = body["access_token"]
            expires_in = int(body["expires_in"])
        except (ValueError, KeyError, TypeError) as e:
            raise BackendUnavailable(f"unexpected session API response: {e}") from e
        refresh_token = resp.cookies.get(self.refresh_cookie_name)
        if not refresh_token:
            raise BackendUnavailable("session API response carried no refresh cookie")
        return SessionTokens(
            access_token=access_token,
            access_expires_in=expires_in,
            refresh_token=refresh_token,
            refresh_expires_in=0,
            account=account,
        )


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRelay:
    """Resolves an access token for a page request and writes back rotated cookies.

    Usage:
        result = relay.get_access_token(request)      # may raise NoSession / RefreshError
        response = render(..., token=result.token)
        relay.propagate(response, result)             # always, even on error responses
    """

    def __init__(self, backend: SessionBackend, settings, clock: Callable[[], datetime] = _utcnow) -> None:
        self.backend = backend
        self.settings = settings
        self.clock = clock

    def _ip(self, request) -> Optional[str]:
        return client_ip(request, self.settings.trust_proxy_headers)

    def _attached_access_token(self, request) -> Optional[str]:
        token = request.cookies.get(self.settings.access_cookie_name)
        if not token:
            header = request.headers.get("Authorization", "")
            if header.startswith("Bearer "):
                token = header[7:].strip()
        if not token:
            return None
        # The signature is checked downstream; here only a past exp disqualifies.
        expiry = unverified_expiry(token)
        if expiry is not None and expiry <= self.clock():
            return None
        return token

    def get_access_token(self, request) -> RelayResult:
        token = self._attached_access_token(request)
        if token:
            return RelayResult(token=token, was_refreshed=False)
        return self.refresh(request)

    def has_refresh_cookie(self, request) -> bool:
        return bool(request.cookies.get(self.settings.refresh_cookie_name))

    def refresh(self, request) -> RelayResult:
        """Rotate the refresh cookie and return the new access token as a RelayResult."""
        tokens = self.rotate(request)
        logger.info("Edge relay rotated session for account_id=%s", tokens.account.id)
        return RelayResult(
            token=tokens.access_token,
            was_refreshed=True,
            refresh_token=tokens.refresh_token,
            access_expires_in=tokens.access_expires_in,
        )

    def login(self, request, email: str, password: str) -> SessionTokens:
        return self.backend.login(email, password, ip=self._ip(request))

    def rotate(self, request) -> SessionTokens:
        presented = request.cookies.get(self.settings.refresh_cookie_name)
        if not presented:
            raise NoSession()
        return self.backend.refresh(presented, ip=self._ip(request))

    def logout(self, request) -> None:
        self.backend.logout(request.cookies.get(self.settings.refresh_cookie_name), ip=self._ip(request))

    def whoami(self, access_token: str) -> dict[str, Any]:
        return self.backend.whoami(access_token)

    def propagate(self, response, result: RelayResult) -> None:
        """Write rotated cookies onto any response. No-op when nothing was rotated."""
        if not result.was_refreshed:
            return
        self.set_session_cookies(response, result.token, result.access_expires_in, result.refresh_token)

    def set_session_cookies(
        self, response, access_token: str, access_expires_in: Optional[int], refresh_token: Optional[str]
    ) -> None:
        response.set_cookie(
            self.settings.access_cookie_name,
            value=access_token,
            httponly=True,
            samesite=self.settings.cookie_samesite,
            secure=self.settings.secure_cookies,
            max_age=access_expires_in or self.settings.access_token_expire_seconds,
            path="/",
        )
        if refresh_token:
            set_refresh_cookie(response, refresh_token, self.settings)

    def clear(self, response) -> None:
        response.delete_cookie(
            self.settings.access_cookie_name,
            path="/",
            httponly=True,
            samesite=self.settings.cookie_samesite,
            secure=self.settings.secure_cookies,
        )
        clear_refresh_cookie(response, self.settings)


def relay_from_app(app) -> SessionRelay:
    """Return the relay for this app, building it on first use.

    EDGE_API_URL selects the remote backend; otherwise the in-process session
    service attached to app.state by api/main.py is used.
    """
    relay = getattr(app.state, "session_relay", None)
    if relay is not None:
        return relay
    settings = app.state.settings
    if settings.edge_api_url:
        backend: SessionBackend = HttpBackend(settings.edge_api_url, settings.refresh_cookie_name)
        logger.info("Edge relay using remote session API at %s", settings.edge_api_url)
    else:
        backend = LocalBackend(app.state.session_service, app.state.token_issuer, app.state.auth_store)
    relay = SessionRelay(backend, settings)
    app.state.session_relay = relay
    return relay
