"""
auth/credentials.py -- Password login with lockout and timing equalization.

Check order is fixed and must stay stable:
  1. identifier lookup (case-insensitive); unknown -> dummy bcrypt, InvalidCredentials
  2. lock status                        -> AccountLocked   (no bcrypt)
  3. active flag                        -> AccountDeactivated (no bcrypt)
  4. bcrypt comparison                  -> InvalidCredentials, or AccountLocked
                                           on the attempt that reaches the threshold
A locked account cannot be unlocked by guessing right: step 2 runs before the
password is ever looked at.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING

from auth.errors import AccountDeactivated, AccountLocked, InvalidCredentials
from auth.tokens import verify_dummy, verify_password

if TYPE_CHECKING:
    from auth.lockout import LockoutPolicy
    from auth.models import Account
    from auth.store import AuthStore


def verify_credentials(
    store: AuthStore, policy: LockoutPolicy, identifier: str, secret: str, now: datetime
) -> Account:
    """Return the Account for a correct identifier/secret pair or raise.

    Raises:
        InvalidCredentials: unknown identifier or wrong secret (indistinguishable).
        AccountLocked:      locked now, or this failure reached the threshold.
        AccountDeactivated: account exists but is inactive.
    """
    account = store.get_account_by_email(identifier)
    if account is None or account.password_hash is None:
        # Equalize timing -- do NOT return before running bcrypt [C1]
        verify_dummy(secret)
        raise InvalidCredentials()

    decision = policy.evaluate(account, now)
    if not decision.allowed:
        raise AccountLocked(retry_after=decision.retry_after, account_id=account.id)

    if not account.is_active:
        raise AccountDeactivated(account_id=account.id)

    if not verify_password(secret, account.password_hash):
        updated = store.apply_lockout(account.id, partial(policy.record_failure, now=now)) or account
        if policy.is_locked(updated, now):
            retry_after = int(policy.window.total_seconds())
            raise AccountLocked(retry_after=retry_after, account_id=account.id, triggered=True)
        raise InvalidCredentials(account_id=account.id)

    if account.failed_login_attempts or account.locked_until is not None:
        account = store.apply_lockout(account.id, policy.record_success) or account
    return account
