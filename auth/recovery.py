"""
auth/recovery.py -- Forgot-password / reset-password flow.

request_reset() never reveals whether an email is registered: the caller
always answers with the same generic message. For an active account a
single-use grant (SHA-256 of an opaque token) is committed first, and only
then is the email sent.

complete_reset() consumes the grant atomically, stores the new hash, clears
lockout state and revokes every refresh token of the account so that any
session opened with the old password ends.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth import audit as events
from auth.errors import ResetTokenInvalid
from auth.models import PasswordReset
from auth.tokens import generate_opaque_token, hash_opaque_token, hash_password

if TYPE_CHECKING:
    from auth.audit import AuditLog
    from auth.mailer import Mailer
    from auth.store import AuthStore

logger = logging.getLogger("sessionkeeper.auth.recovery")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordRecovery:
    def __init__(
        self,
        store: AuthStore,
        mailer: Mailer,
        audit: AuditLog,
        expire_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.audit = audit
        self.ttl = timedelta(seconds=expire_seconds)
        self.clock = clock

    def request_reset(self, email: str, ip: str | None = None) -> None:
        account = self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("Password reset requested for unknown or inactive identifier")
            return
        now = self.clock()
        raw = generate_opaque_token()
        self.store.create_password_reset(
            PasswordReset(account_id=account.id, token_hash=hash_opaque_token(raw), expires_at=now + self.ttl),
            now,
        )
        self.audit.record(events.PASSWORD_RESET_REQUESTED, account_id=account.id, ip=ip)
        # Committed above; the SMTP round trip happens outside any transaction.
        self.mailer.send_password_reset(
            account.email, account.display_name, raw, expires_minutes=int(self.ttl.total_seconds() // 60)
        )

    def complete_reset(self, token: str, new_password: str, ip: str | None = None) -> int:
        """Set a new password from a reset link. Returns the account id.

        Raises ResetTokenInvalid for unknown, used or expired tokens.
        """
        now = self.clock()
        grant = self.store.consume_password_reset(hash_opaque_token(token), now)
        if grant is None:
            raise ResetTokenInvalid()
        account = self.store.get_account(grant.account_id)
        if account is None or not account.is_active:
            raise ResetTokenInvalid()
        self.store.set_password(account.id, hash_password(new_password))
        revoked = self.store.revoke_account_tokens(account.id, "password_reset", now)
        self.audit.record(
            events.PASSWORD_RESET_COMPLETED, account_id=account.id, detail={"sessions_revoked": revoked}, ip=ip
        )
        return account.id
