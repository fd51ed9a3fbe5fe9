"""
tests/test_lockout.py -- Unit tests for auth/lockout.py.

Covers:
  - Counter increments below the threshold without locking
  - The threshold-th failure locks for exactly the window
  - evaluate() denies while locked with a positive retry_after
  - Lazy unlock: once locked_until passes the account is allowed again and
    the next failure restarts the count from one
  - record_success() clears all lockout state
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.lockout import LockoutPolicy
from auth.models import Account

NOW = datetime(2030, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=15)


def _account(**kwargs) -> Account:
    return Account(email="a@example.com", display_name="A", role="student", id=1, **kwargs)


@pytest.fixture
def policy() -> LockoutPolicy:
    return LockoutPolicy(threshold=5, window=WINDOW)


class TestRecordFailure:
    def test_counts_up_below_threshold(self, policy: LockoutPolicy) -> None:
        account = _account()
        for expected in range(1, 5):
            account = policy.record_failure(account, NOW)
            assert account.failed_login_attempts == expected
            assert account.locked_until is None

    def test_fifth_failure_locks_for_window(self, policy: LockoutPolicy) -> None:
        account = _account(failed_login_attempts=4)
        account = policy.record_failure(account, NOW)
        assert account.failed_login_attempts == 5
        assert account.locked_until == NOW + WINDOW
        assert policy.is_locked(account, NOW)

    def test_does_not_mutate_input(self, policy: LockoutPolicy) -> None:
        original = _account(failed_login_attempts=2)
        policy.record_failure(original, NOW)
        assert original.failed_login_attempts == 2

    def test_lapsed_lock_restarts_count(self, policy: LockoutPolicy) -> None:
        """A failure after the lock lapsed counts as the first of a new series."""
        account = _account(failed_login_attempts=5, locked_until=NOW - timedelta(seconds=1))
        account = policy.record_failure(account, NOW)
        assert account.failed_login_attempts == 1
        assert account.locked_until is None


class TestEvaluate:
    def test_unlocked_account_allowed(self, policy: LockoutPolicy) -> None:
        decision = policy.evaluate(_account(failed_login_attempts=3), NOW)
        assert decision.allowed is True
        assert decision.retry_after is None

    def test_locked_account_denied_with_retry_after(self, policy: LockoutPolicy) -> None:
        account = _account(failed_login_attempts=5, locked_until=NOW + timedelta(minutes=10))
        decision = policy.evaluate(account, NOW)
        assert decision.allowed is False
        assert decision.reason == "locked"
        assert 600 <= decision.retry_after <= 601

    def test_lock_lapses_without_a_write(self, policy: LockoutPolicy) -> None:
        account = _account(failed_login_attempts=5, locked_until=NOW + WINDOW)
        later = NOW + WINDOW + timedelta(seconds=1)
        assert policy.evaluate(account, later).allowed is True
        assert not policy.is_locked(account, later)

    def test_locked_until_boundary_is_unlocked(self, policy: LockoutPolicy) -> None:
        account = _account(failed_login_attempts=5, locked_until=NOW)
        assert policy.evaluate(account, NOW).allowed is True


class TestRecordSuccess:
    def test_clears_state(self, policy: LockoutPolicy) -> None:
        account = policy.record_success(_account(failed_login_attempts=3, locked_until=NOW + WINDOW))
        assert account.failed_login_attempts == 0
        assert account.locked_until is None


def test_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError):
        LockoutPolicy(threshold=0)
