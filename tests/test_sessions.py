"""
tests/test_sessions.py -- Unit tests for auth/sessions.py (SessionService).

Covers:
  - login issues a verifiable access token and a stored refresh record
  - rotate: new pair, old record revoked and linked forward
  - replay inside the grace window returns the identical pair, chain untouched
  - replay after the grace window raises RefreshReused; the successor keeps
    working unless revoke_chain_on_reuse is enabled
  - a grace replay whose successor was logged out or revoked is RefreshReused
  - the grace cache is size-capped
  - any revoked value (logout, admin) presented again is RefreshReused
  - unknown / expired / inactive-account refresh outcomes
  - concurrent rotation of one token yields a single successor
  - logout is idempotent; revoke_sessions and unlock are audited
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth import audit as events
from auth.audit import AuditLog
from auth.errors import AccountLocked, InvalidCredentials, RefreshExpired, RefreshInvalid, RefreshReused
from auth.sessions import SessionService, _GraceCache
from auth.tokens import hash_opaque_token

PASSWORD = "correct-horse-battery"


def _kinds(store) -> list[str]:
    return [e.kind for e in store.list_audit_events(limit=1000)]


class TestLogin:
    def test_login_issues_pair(self, service, store, issuer, account_factory) -> None:
        account = account_factory()
        tokens = service.login(account.email, PASSWORD, ip="203.0.113.9")
        claims = issuer.decode_access_token(tokens.access_token)
        assert claims is not None and claims.account_id == account.id
        record = store.get_refresh_token(hash_opaque_token(tokens.refresh_token))
        assert record is not None and not record.is_revoked
        assert record.expires_at - record.issued_at == issuer.refresh_ttl
        assert store.get_account(account.id).last_login is not None
        latest = store.list_audit_events(limit=1)[0]
        assert latest.kind == events.LOGIN_SUCCESS and latest.ip == "203.0.113.9"

    def test_failed_logins_audited_by_kind(self, service, store, account_factory) -> None:
        account = account_factory()
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                service.login(account.email, "wrong")
        with pytest.raises(AccountLocked):
            service.login(account.email, "wrong")
        with pytest.raises(AccountLocked):
            service.login(account.email, PASSWORD)
        kinds = _kinds(store)
        assert kinds.count(events.LOGIN_FAILURE) == 4
        assert kinds.count(events.LOCKOUT_TRIGGERED) == 1
        assert kinds[0] == events.LOGIN_LOCKED


class TestRotate:
    def test_rotate_returns_new_pair(self, service, store, account_factory) -> None:
        first = service.login(account_factory().email, PASSWORD)
        second = service.rotate(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        old = store.get_refresh_token(hash_opaque_token(first.refresh_token))
        new = store.get_refresh_token(hash_opaque_token(second.refresh_token))
        assert old.revoked_reason == "rotated"
        assert old.replaced_by == new.id
        assert not new.is_revoked

    def test_grace_replay_returns_identical_pair(self, service, store, clock, account_factory) -> None:
        first = service.login(account_factory().email, PASSWORD)
        second = service.rotate(first.refresh_token)
        clock.advance(seconds=2)
        replay = service.rotate(first.refresh_token)
        assert replay.refresh_token == second.refresh_token
        assert replay.access_token == second.access_token
        assert not store.get_refresh_token(hash_opaque_token(second.refresh_token)).is_revoked
        assert events.REFRESH_GRACE_REPLAY in _kinds(store)

    def test_reuse_after_grace_leaves_successor_working(self, service, store, clock, account_factory) -> None:
        """Default policy: the replayed token fails, the token from the second call still rotates."""
        first = service.login(account_factory().email, PASSWORD)
        second = service.rotate(first.refresh_token)
        clock.advance(seconds=10)
        with pytest.raises(RefreshReused):
            service.rotate(first.refresh_token)
        assert not store.get_refresh_token(hash_opaque_token(second.refresh_token)).is_revoked
        assert service.rotate(second.refresh_token).refresh_token != second.refresh_token
        assert events.REFRESH_REUSED in _kinds(store)

    def test_reuse_with_chain_revocation(self, store, issuer, settings, clock, account_factory) -> None:
        chained = SessionService(
            store, issuer, AuditLog(store), settings.model_copy(update={"revoke_chain_on_reuse": True}), clock=clock
        )
        first = chained.login(account_factory().email, PASSWORD)
        second = chained.rotate(first.refresh_token)
        clock.advance(seconds=30)
        with pytest.raises(RefreshReused):
            chained.rotate(first.refresh_token)
        successor = store.get_refresh_token(hash_opaque_token(second.refresh_token))
        assert successor.revoked_reason == "reuse_detected"
        with pytest.raises(RefreshReused):
            chained.rotate(second.refresh_token)

    def test_grace_replay_after_successor_logout(self, service, clock, account_factory) -> None:
        first = service.login(account_factory().email, PASSWORD)
        second = service.rotate(first.refresh_token)
        service.logout(second.refresh_token)
        clock.advance(seconds=1)
        with pytest.raises(RefreshReused):
            service.rotate(first.refresh_token)

    def test_grace_replay_after_admin_revoke(self, service, clock, account_factory) -> None:
        account = account_factory()
        first = service.login(account.email, PASSWORD)
        service.rotate(first.refresh_token)
        service.revoke_sessions([account.id], actor_id=1)
        with pytest.raises(RefreshReused):
            service.rotate(first.refresh_token)

    def test_logged_out_token_is_reuse(self, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        service.logout(tokens.refresh_token)
        with pytest.raises(RefreshReused):
            service.rotate(tokens.refresh_token)

    def test_unknown_token(self, service) -> None:
        with pytest.raises(RefreshInvalid):
            service.rotate("never-issued")

    def test_expired_token(self, service, clock, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        clock.advance(days=31)
        with pytest.raises(RefreshExpired):
            service.rotate(tokens.refresh_token)

    def test_inactive_account_revokes_record(self, service, store, account_factory) -> None:
        account = account_factory()
        tokens = service.login(account.email, PASSWORD)
        store.set_active(account.id, False)
        with pytest.raises(RefreshInvalid):
            service.rotate(tokens.refresh_token)
        record = store.get_refresh_token(hash_opaque_token(tokens.refresh_token))
        assert record.revoked_reason == "account_inactive"

    def test_concurrent_rotation_single_successor(self, service, store, account_factory) -> None:
        """N threads present the same token at once: one rotation, everyone gets the same pair."""
        tokens = service.login(account_factory().email, PASSWORD)
        barrier = threading.Barrier(8)
        results: list[str] = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            try:
                pair = service.rotate(tokens.refresh_token)
            except Exception as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
                return
            with lock:
                results.append(pair.refresh_token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(results)) == 1
        old = store.get_refresh_token(hash_opaque_token(tokens.refresh_token))
        assert old.replaced_by is not None
        assert store.count_active_refresh_tokens(old.account_id, service.clock()) == 1


class TestGraceCache:
    def test_oldest_entry_dropped_at_capacity(self, service, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        cache = _GraceCache(ttl_seconds=60, max_entries=2)
        for key in ("a", "b", "c"):
            cache.put(key, tokens)
        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") is tokens

    def test_zero_ttl_holds_nothing(self, service, account_factory) -> None:
        cache = _GraceCache(ttl_seconds=0)
        cache.put("a", service.login(account_factory().email, PASSWORD))
        assert len(cache) == 0


class TestLogoutAndAdmin:
    def test_logout_idempotent(self, service, store, account_factory) -> None:
        tokens = service.login(account_factory().email, PASSWORD)
        service.logout(tokens.refresh_token)
        service.logout(tokens.refresh_token)
        service.logout(None)
        service.logout("garbage")
        assert _kinds(store).count(events.LOGOUT) == 1

    def test_revoke_sessions(self, service, store, account_factory) -> None:
        a, b = account_factory(), account_factory()
        service.login(a.email, PASSWORD)
        service.login(a.email, PASSWORD)
        service.login(b.email, PASSWORD)
        result = service.revoke_sessions([a.id, b.id, a.id], actor_id=99)
        assert result == {a.id: 2, b.id: 1}
        latest = store.list_audit_events(kind=events.SESSIONS_REVOKED)[0]
        assert latest.account_id == 99

    def test_unlock(self, service, store, clock, account_factory) -> None:
        account = account_factory(failed_login_attempts=5, locked_until=clock() + timedelta(minutes=10))
        assert service.unlock(account.id, actor_id=1) is True
        assert service.login(account.email, PASSWORD).account.id == account.id
        assert service.unlock(987654) is False
