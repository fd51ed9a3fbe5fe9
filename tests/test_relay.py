"""
tests/test_relay.py -- Unit tests for web/relay.py (edge session relay).

Covers:
  - A live access cookie (or bearer) is used as is: no refresh, no cookies written
  - An expired access cookie plus a refresh cookie triggers exactly one rotation
  - Neither token -> NoSession; a reused refresh cookie -> RefreshReused
  - propagate() writes both rotated cookies and is a no-op otherwise
  - HttpBackend: request shape, body/cookie parsing, error envelope mapping,
    network and 5xx failures surfaced as BackendUnavailable
  - relay_from_app() picks the backend from EDGE_API_URL and caches the relay
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from starlette.responses import Response

from auth.errors import AccountLocked, NoSession, RefreshInvalid, RefreshReused
from web.relay import BackendUnavailable, HttpBackend, LocalBackend, SessionRelay, relay_from_app

PASSWORD = "correct-horse-battery"


def _request(cookies: dict | None = None, headers: dict | None = None) -> SimpleNamespace:
    return SimpleNamespace(cookies=cookies or {}, headers=headers or {}, client=SimpleNamespace(host="192.0.2.10"))


def _set_cookies(response: Response) -> list[str]:
    return response.headers.getlist("set-cookie")


@pytest.fixture
def relay(service, issuer, store, settings) -> SessionRelay:
    return SessionRelay(LocalBackend(service, issuer, store), settings)


class TestGetAccessToken:
    def test_live_access_cookie_used_as_is(self, relay, settings, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        req = _request({settings.access_cookie_name: tokens.access_token, settings.refresh_cookie_name: "r"})
        result = relay.get_access_token(req)
        assert result.token == tokens.access_token
        assert result.was_refreshed is False

    def test_bearer_header_accepted(self, relay, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        result = relay.get_access_token(_request(headers={"Authorization": f"Bearer {tokens.access_token}"}))
        assert result.token == tokens.access_token and not result.was_refreshed

    def test_expired_access_cookie_triggers_refresh(self, relay, settings, service, issuer, account_factory) -> None:
        account = account_factory()
        tokens = service.login(account.email, PASSWORD)
        stale = issuer.create_access_token(account, datetime.now(timezone.utc) - timedelta(hours=5))
        req = _request({settings.access_cookie_name: stale, settings.refresh_cookie_name: tokens.refresh_token})
        result = relay.get_access_token(req)
        assert result.was_refreshed is True
        assert result.token != stale
        assert result.refresh_token and result.refresh_token != tokens.refresh_token
        assert issuer.decode_access_token(result.token).account_id == account.id

    def test_refresh_only(self, relay, settings, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        result = relay.get_access_token(_request({settings.refresh_cookie_name: tokens.refresh_token}))
        assert result.was_refreshed is True

    def test_no_tokens_is_no_session(self, relay) -> None:
        with pytest.raises(NoSession):
            relay.get_access_token(_request())

    def test_reused_refresh_cookie(self, relay, settings, service, clock, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        service.rotate(tokens.refresh_token)
        clock.advance(seconds=60)
        with pytest.raises(RefreshReused):
            relay.get_access_token(_request({settings.refresh_cookie_name: tokens.refresh_token}))


class TestPropagate:
    def test_writes_both_cookies_after_rotation(self, relay, settings, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        result = relay.get_access_token(_request({settings.refresh_cookie_name: tokens.refresh_token}))
        response = Response(status_code=500)
        relay.propagate(response, result)
        cookies = _set_cookies(response)
        assert any(c.startswith(f"{settings.access_cookie_name}={result.token}") for c in cookies)
        assert any(c.startswith(f"{settings.refresh_cookie_name}={result.refresh_token}") for c in cookies)
        assert all("httponly" in c.lower() for c in cookies)

    def test_noop_without_rotation(self, relay, settings, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        result = relay.get_access_token(_request({settings.access_cookie_name: tokens.access_token}))
        response = Response()
        relay.propagate(response, result)
        assert _set_cookies(response) == []

    def test_clear_expires_both_cookies(self, relay, settings) -> None:
        response = Response()
        relay.clear(response)
        names = {c.split("=", 1)[0] for c in _set_cookies(response)}
        assert names == {settings.access_cookie_name, settings.refresh_cookie_name}


class TestLocalBackendWhoami:
    def test_whoami(self, service, issuer, store, account_factory) -> None:
        account = account_factory(role="teacher")
        tokens = service.login(account.email, PASSWORD)
        info = LocalBackend(service, issuer, store).whoami(tokens.access_token)
        assert info == {"id": account.id, "email": account.email, "display_name": account.display_name,
                        "role": "teacher"}

    def test_whoami_inactive(self, service, issuer, store, account_factory) -> None:
        account = account_factory()
        tokens = service.login(account.email, PASSWORD)
        store.set_active(account.id, False)
        with pytest.raises(NoSession):
            LocalBackend(service, issuer, store).whoami(tokens.access_token)


# ---------------------------------------------------------------------------
# HttpBackend
# ---------------------------------------------------------------------------


def _response(status: int, body: dict | None = None, cookies: dict | None = None, headers: dict | None = None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    resp.cookies = cookies or {}
    resp.headers = headers or {}
    return resp


_ACCOUNT = {"id": 5, "email": "r@example.com", "display_name": "R", "role": "student"}


@pytest.fixture
def http_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def backend(http_session) -> HttpBackend:
    return HttpBackend("https://auth.internal/", refresh_cookie_name="refresh_token", session=http_session)


class TestHttpBackend:
    def test_refresh_success(self, backend, http_session) -> None:
        http_session.request.return_value = _response(
            200,
            {"access_token": "acc", "token_type": "bearer", "expires_in": 14400, "account": _ACCOUNT},
            cookies={"refresh_token": "new-refresh"},
        )
        tokens = backend.refresh("old-refresh", ip="203.0.113.5")
        assert tokens.access_token == "acc"
        assert tokens.refresh_token == "new-refresh"
        assert tokens.access_expires_in == 14400
        assert tokens.account.id == 5
        method, url = http_session.request.call_args[0]
        kwargs = http_session.request.call_args[1]
        assert (method, url) == ("POST", "https://auth.internal/api/v1/auth/refresh")
        assert kwargs["cookies"] == {"refresh_token": "old-refresh"}
        assert kwargs["headers"]["X-Forwarded-For"] == "203.0.113.5"

    def test_reused_maps_to_refresh_reused(self, backend, http_session) -> None:
        http_session.request.return_value = _response(
            401, {"error": {"code": "refresh_reused", "message": "Refresh token was already used."}}
        )
        with pytest.raises(RefreshReused):
            backend.refresh("stale")

    def test_locked_keeps_retry_after(self, backend, http_session) -> None:
        http_session.request.return_value = _response(
            429, {"error": {"code": "account_locked", "message": "Locked."}}, headers={"Retry-After": "900"}
        )
        with pytest.raises(AccountLocked) as exc_info:
            backend.login("r@example.com", "pw")
        assert exc_info.value.retry_after == 900

    def test_unknown_401_code_is_refresh_invalid(self, backend, http_session) -> None:
        http_session.request.return_value = _response(401, {"error": {"code": "something_new"}})
        with pytest.raises(RefreshInvalid):
            backend.refresh("x")

    def test_server_error_is_unavailable(self, backend, http_session) -> None:
        http_session.request.return_value = _response(502)
        with pytest.raises(BackendUnavailable):
            backend.refresh("x")

    def test_network_error_is_unavailable(self, backend, http_session) -> None:
        http_session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(BackendUnavailable):
            backend.refresh("x")

    def test_missing_refresh_cookie_is_unavailable(self, backend, http_session) -> None:
        http_session.request.return_value = _response(
            200, {"access_token": "acc", "expires_in": 10, "account": _ACCOUNT}
        )
        with pytest.raises(BackendUnavailable):
            backend.refresh("x")

    def test_logout_without_cookie(self, backend, http_session) -> None:
        http_session.request.return_value = _response(200, {"ok": True})
        backend.logout(None)
        assert http_session.request.call_args[1]["cookies"] is None

    def test_whoami_sends_bearer(self, backend, http_session) -> None:
        http_session.request.return_value = _response(200, {"account": _ACCOUNT, "is_active": True})
        assert backend.whoami("tok") == _ACCOUNT
        assert http_session.request.call_args[1]["headers"]["Authorization"] == "Bearer tok"


class TestRelayFromApp:
    def test_local_backend_by_default(self, service, issuer, store, settings) -> None:
        app = SimpleNamespace(
            state=SimpleNamespace(settings=settings, session_service=service, token_issuer=issuer, auth_store=store)
        )
        relay = relay_from_app(app)
        assert isinstance(relay.backend, LocalBackend)
        assert relay_from_app(app) is relay

    def test_http_backend_when_url_configured(self, settings) -> None:
        remote = settings.model_copy(update={"edge_api_url": "https://auth.internal"})
        app = SimpleNamespace(state=SimpleNamespace(settings=remote))
        assert isinstance(relay_from_app(app).backend, HttpBackend)
