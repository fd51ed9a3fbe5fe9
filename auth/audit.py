"""
auth/audit.py -- Best-effort audit trail of authentication events.

Audit is observational, not transactional: AuditLog.record() is always called
after the operation it describes has committed, and it never raises. A failed
write is logged locally and dropped, so an audit outage can neither fail nor
roll back a login, a rotation or a logout.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from auth.models import AuditEvent

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("sessionkeeper.auth.audit")

# Event kinds
LOGIN_SUCCESS = "login_success"
LOGIN_FAILURE = "login_failure"
LOCKOUT_TRIGGERED = "lockout_triggered"
LOGIN_LOCKED = "login_locked"
LOGIN_DEACTIVATED = "login_deactivated"
LOGOUT = "logout"
REFRESH_SUCCESS = "refresh_success"
REFRESH_GRACE_REPLAY = "refresh_grace_replay"
REFRESH_REUSED = "refresh_reused"
REFRESH_FAILED = "refresh_failed"
SESSIONS_REVOKED = "sessions_revoked"
ACCOUNT_UNLOCKED = "account_unlocked"
PASSWORD_RESET_REQUESTED = "password_reset_requested"
PASSWORD_RESET_COMPLETED = "password_reset_completed"


class AuditLog:
    """Fire-and-forget sink in front of AuthStore.add_audit_event().

    Usage:
        audit = AuditLog(store)
        audit.record(LOGIN_SUCCESS, account_id=7, ip="203.0.113.9")
    """

    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def record(
        self,
        kind: str,
        *,
        account_id: int | None = None,
        target: str | None = None,
        detail: dict[str, Any] | None = None,
        ip: str | None = None,
    ) -> None:
        try:
            self._store.add_audit_event(
                AuditEvent(
                    kind=kind,
                    account_id=account_id,
                    target=target,
                    detail=json.dumps(detail, default=str) if detail else None,
                    ip=ip,
                )
            )
        except Exception:
            # Never propagate: the primary operation already succeeded or failed on its own.
            logger.warning("Audit write failed (kind=%s account_id=%s)", kind, account_id, exc_info=True)


def client_ip(request, trust_proxy_headers: bool = False) -> str | None:
    """Best-effort source address of a Starlette request.

    X-Forwarded-For is attacker-controlled unless a trusted proxy sets it, so
    it is only honoured when TRUST_PROXY_HEADERS=true.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None
