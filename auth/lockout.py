"""
auth/lockout.py -- Brute-force lockout policy.

Pure decision logic over an Account's failed_login_attempts / locked_until and
a caller-supplied clock value. Nothing here touches storage: the store applies
these transitions inside its own transaction (AuthStore.apply_lockout) so two
sequential attempts always observe each other's writes.

Unlock is lazy. There is no unlock write and no sweeper: once `now` passes
locked_until the account is treated as unlocked, and the next attempt
recomputes the counter from zero.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from auth.models import Account

DEFAULT_THRESHOLD = 5
DEFAULT_WINDOW = timedelta(minutes=15)


@dataclass(frozen=True)
class LockoutDecision:
    allowed: bool
    reason: str | None = None  # "locked" when denied
    retry_after: int | None = None  # seconds until the lock lapses


class LockoutPolicy:
    """Fixed-threshold, fixed-window lockout.

    Usage:
        policy = LockoutPolicy(threshold=5, window=timedelta(minutes=15))
        decision = policy.evaluate(account, now)
        account = policy.record_failure(account, now)
        policy.is_locked(account, now)  # True after the 5th failure
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD, window: timedelta = DEFAULT_WINDOW) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.window = window

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until > now

    def evaluate(self, account: Account, now: datetime) -> LockoutDecision:
        if self.is_locked(account, now):
            remaining = int((account.locked_until - now).total_seconds()) + 1
            return LockoutDecision(allowed=False, reason="locked", retry_after=remaining)
        return LockoutDecision(allowed=True)

    def record_failure(self, account: Account, now: datetime) -> Account:
        """Return the account state after one more failed attempt.

        A lapsed lock restarts the count from zero. Reaching the threshold sets
        locked_until = now + window and pins the counter at the threshold.
        """
        attempts = account.failed_login_attempts
        if account.locked_until is not None and account.locked_until <= now:
            attempts = 0
        attempts += 1
        if attempts >= self.threshold:
            return replace(account, failed_login_attempts=self.threshold, locked_until=now + self.window)
        return replace(account, failed_login_attempts=attempts, locked_until=None)

    def record_success(self, account: Account) -> Account:
        return replace(account, failed_login_attempts=0, locked_until=None)
