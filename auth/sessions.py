"""
auth/sessions.py -- Session lifecycle: login, refresh rotation, logout,
administrative invalidation.

Refresh-token chain state machine (one record per link):

    ACTIVE --rotate--> ROTATED (revoked, replaced_by -> next link)
    ACTIVE --expire--> EXPIRED
    ACTIVE --logout/admin/reset--> REVOKED

rotate() outcomes for a presented value:
    unknown                      -> RefreshInvalid
    revoked, rotated within the grace window
                                 -> the pair that rotation produced, if this
                                    process still holds it and its refresh
                                    record is still active; else RefreshReused
                                    (the chain is left alone inside the window)
    revoked otherwise            -> RefreshReused; the successor keeps working
                                    unless revoke_chain_on_reuse is enabled,
                                    which revokes every forward link too
    expired                      -> RefreshExpired
    account missing/inactive     -> record revoked, RefreshInvalid
    active                       -> new pair; old record revoked in the same
                                    transaction (AuthStore.rotate_refresh_token)

Concurrency: rotations of the same token inside one process are serialized by
a striped lock keyed on the token hash, so the loser of a duplicate refresh
always sees the winner's committed state and cached pair. Across processes the
conditional UPDATE in the store still guarantees a single winner.

Audit events are written after the corresponding store transaction commits.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth import audit as events
from auth.credentials import verify_credentials
from auth.errors import AccountDeactivated, AccountLocked, AuthError, RefreshExpired, RefreshInvalid, RefreshReused
from auth.lockout import LockoutPolicy
from auth.models import RefreshTokenRecord, SessionTokens
from auth.tokens import generate_opaque_token, hash_opaque_token

if TYPE_CHECKING:
    from auth.audit import AuditLog
    from auth.models import Account
    from auth.store import AuthStore
    from auth.tokens import TokenIssuer
    from core.config import Settings

logger = logging.getLogger("sessionkeeper.auth.sessions")

_LOCK_STRIPES = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _GraceCache:
    """Pairs produced by recent rotations, keyed by the hash they replaced.

    Entries live for the grace window only. Expiry uses time.monotonic so a
    test clock or wall-clock jump cannot keep a pair alive. Stale entries are
    evicted on every put, and at most max_entries are held; beyond that the
    oldest entry goes first (insertion order is deadline order, the TTL being
    fixed). Losing an entry early only turns a grace replay into RefreshReused.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 10_000) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[str, tuple[float, SessionTokens]] = {}
        self._lock = threading.Lock()

    def put(self, token_hash: str, tokens: SessionTokens) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._evict(time.monotonic())
            while len(self._entries) >= self._max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[token_hash] = (time.monotonic() + self._ttl, tokens)

    def get(self, token_hash: str) -> SessionTokens | None:
        with self._lock:
            entry = self._entries.get(token_hash)
            if entry is None:
                return None
            deadline, tokens = entry
            if deadline < time.monotonic():
                del self._entries[token_hash]
                return None
            return tokens

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self, now: float) -> None:
        stale = [key for key, (deadline, _) in self._entries.items() if deadline < now]
        for key in stale:
            del self._entries[key]


class SessionService:
    """Orchestrates credential verification, token issuance and rotation.

    Usage:
        service = SessionService(store, issuer, AuditLog(store), settings)
        tokens = service.login("user@example.com", "secret", ip="203.0.113.9")
        tokens = service.rotate(tokens.refresh_token)
        service.logout(tokens.refresh_token)
    """

    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        audit: AuditLog,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.audit = audit
        self.clock = clock
        self.policy = LockoutPolicy(
            threshold=settings.lockout_threshold,
            window=timedelta(seconds=settings.lockout_window_seconds),
        )
        self.grace = timedelta(seconds=settings.refresh_reuse_grace_seconds)
        self.revoke_chain_on_reuse = settings.revoke_chain_on_reuse
        self._recent = _GraceCache(settings.refresh_reuse_grace_seconds)
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, ip: str | None = None) -> SessionTokens:
        now = self.clock()
        try:
            account = verify_credentials(self.store, self.policy, identifier, secret, now)
        except AuthError as exc:
            self._audit_login_failure(exc, identifier, ip)
            raise
        self.store.update_last_login(account.id, now)
        tokens = self._issue(account, now)
        self.audit.record(events.LOGIN_SUCCESS, account_id=account.id, ip=ip)
        logger.info("Login succeeded for account %s", account.id)
        return tokens

    def _audit_login_failure(self, exc: AuthError, identifier: str, ip: str | None) -> None:
        if isinstance(exc, AccountLocked):
            kind = events.LOCKOUT_TRIGGERED if exc.triggered else events.LOGIN_LOCKED
        elif isinstance(exc, AccountDeactivated):
            kind = events.LOGIN_DEACTIVATED
        else:
            kind = events.LOGIN_FAILURE
        self.audit.record(kind, account_id=exc.account_id, target=identifier.strip().lower(), ip=ip)
        logger.info("Login rejected (%s) for account %s", exc.code, exc.account_id)

    # ------------------------------------------------------------------
    # Refresh rotation
    # ------------------------------------------------------------------

    def rotate(self, presented: str, ip: str | None = None) -> SessionTokens:
        token_hash = hash_opaque_token(presented)
        with self._stripe(token_hash):
            return self._rotate_locked(token_hash, ip)

    def _rotate_locked(self, token_hash: str, ip: str | None) -> SessionTokens:
        now = self.clock()
        record = self.store.get_refresh_token(token_hash)
        if record is None:
            self.audit.record(events.REFRESH_FAILED, detail={"reason": "unknown"}, ip=ip)
            raise RefreshInvalid()

        if record.is_revoked:
            return self._handle_revoked(record, token_hash, now, ip)

        if record.expires_at <= now:
            self.audit.record(events.REFRESH_FAILED, account_id=record.account_id, detail={"reason": "expired"}, ip=ip)
            raise RefreshExpired(account_id=record.account_id)

        account = self.store.get_account(record.account_id)
        if account is None or not account.is_active:
            self.store.revoke_refresh_token(record.id, "account_inactive", now)
            self.audit.record(
                events.REFRESH_FAILED, account_id=record.account_id, detail={"reason": "account_inactive"}, ip=ip
            )
            raise RefreshInvalid(account_id=record.account_id)

        raw = generate_opaque_token()
        replacement = RefreshTokenRecord(
            account_id=account.id,
            token_hash=hash_opaque_token(raw),
            issued_at=now,
            expires_at=now + self.issuer.refresh_ttl,
        )
        stored = self.store.rotate_refresh_token(record.id, replacement, now)
        if stored is None:
            # Another process rotated this record between our read and our write.
            current = self.store.get_refresh_token(token_hash)
            return self._handle_revoked(current or record, token_hash, now, ip)

        tokens = SessionTokens(
            access_token=self.issuer.create_access_token(account, now),
            access_expires_in=self.issuer.access_expires_in,
            refresh_token=raw,
            refresh_expires_in=self.issuer.refresh_expires_in,
            account=account,
        )
        self._recent.put(token_hash, tokens)
        self.audit.record(
            events.REFRESH_SUCCESS, account_id=account.id, detail={"record": record.id, "replaced_by": stored.id}, ip=ip
        )
        return tokens

    def _handle_revoked(
        self, record: RefreshTokenRecord, token_hash: str, now: datetime, ip: str | None
    ) -> SessionTokens:
        in_grace = (
            record.revoked_reason == "rotated"
            and record.revoked_at is not None
            and now - record.revoked_at <= self.grace
        )
        if in_grace:
            replay = self._recent.get(token_hash)
            if replay is not None and self._successor_alive(record, now):
                self.audit.record(events.REFRESH_GRACE_REPLAY, account_id=record.account_id, ip=ip)
                return replay
            self.audit.record(
                events.REFRESH_REUSED,
                account_id=record.account_id,
                detail={"record": record.id, "reason": record.revoked_reason, "within_grace": True},
                ip=ip,
            )
            raise RefreshReused(account_id=record.account_id)

        revoked = 0
        if self.revoke_chain_on_reuse and record.replaced_by is not None:
            revoked = self.store.revoke_chain(record.replaced_by, "reuse_detected", now)
        logger.warning(
            "Refresh token reuse for account %s (record %s, %d downstream sessions revoked)",
            record.account_id,
            record.id,
            revoked,
        )
        self.audit.record(
            events.REFRESH_REUSED,
            account_id=record.account_id,
            detail={"record": record.id, "reason": record.revoked_reason, "chain_revoked": revoked},
            ip=ip,
        )
        raise RefreshReused(account_id=record.account_id)

    def _successor_alive(self, record: RefreshTokenRecord, now: datetime) -> bool:
        """A grace replay may only hand out a pair whose refresh record is still live."""
        if record.replaced_by is None:
            return False
        successor = self.store.get_refresh_token_by_id(record.replaced_by)
        return successor is not None and not successor.is_revoked and successor.expires_at > now

    # ------------------------------------------------------------------
    # Logout and administrative invalidation
    # ------------------------------------------------------------------

    def logout(self, presented: str | None, ip: str | None = None) -> None:
        """Revoke the presented refresh token if it is still active. Always succeeds."""
        if not presented:
            return
        record = self.store.get_refresh_token(hash_opaque_token(presented))
        if record is None:
            return
        if self.store.revoke_refresh_token(record.id, "logout", self.clock()):
            self.audit.record(events.LOGOUT, account_id=record.account_id, ip=ip)

    def revoke_sessions(
        self, account_ids: Iterable[int], actor_id: int | None = None, ip: str | None = None
    ) -> dict[int, int]:
        """Revoke every active refresh record of each account. Returns {account_id: count}."""
        now = self.clock()
        result: dict[int, int] = {}
        for account_id in dict.fromkeys(account_ids):
            result[account_id] = self.store.revoke_account_tokens(account_id, "admin", now)
        self.audit.record(
            events.SESSIONS_REVOKED,
            account_id=actor_id,
            target=",".join(str(a) for a in result),
            detail={"revoked": result},
            ip=ip,
        )
        return result

    def unlock(self, account_id: int, actor_id: int | None = None, ip: str | None = None) -> bool:
        unlocked = self.store.reset_lockout(account_id)
        if unlocked:
            self.audit.record(events.ACCOUNT_UNLOCKED, account_id=actor_id, target=str(account_id), ip=ip)
        return unlocked

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, account: Account, now: datetime) -> SessionTokens:
        raw = generate_opaque_token()
        self.store.create_refresh_token(
            RefreshTokenRecord(
                account_id=account.id,
                token_hash=hash_opaque_token(raw),
                issued_at=now,
                expires_at=now + self.issuer.refresh_ttl,
            )
        )
        return SessionTokens(
            access_token=self.issuer.create_access_token(account, now),
            access_expires_in=self.issuer.access_expires_in,
            refresh_token=raw,
            refresh_expires_in=self.issuer.refresh_expires_in,
            account=account,
        )

    def _stripe(self, token_hash: str) -> threading.Lock:
        return self._stripes[int(token_hash[:8], 16) % _LOCK_STRIPES]
