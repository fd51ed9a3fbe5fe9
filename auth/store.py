"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh and password-reset tokens are stored as SHA-256 hex only. The raw
  values never reach this module.

Transactions:
  Every multi-statement operation runs inside engine.begin() so it commits or
  rolls back as a unit. Two operations carry the subsystem's real invariants:

  apply_lockout() re-reads the account row (SELECT ... FOR UPDATE where the
  dialect supports it) and writes the policy's next state in the same
  transaction. Sequential attempts therefore never act on a stale counter.

  rotate_refresh_token() revokes the presented record with a conditional
  UPDATE ("where revoked_at is null") and inserts its replacement in the same
  transaction. If the conditional update touches no row another request has
  already rotated it: the whole transaction rolls back and the caller gets
  None. There is never a moment where both records are usable, and never a
  revoked record without its replacement.

Timestamps are stored as fixed-width UTC ISO-8601 strings (microsecond
precision, +00:00 suffix) so string comparison in SQL agrees with time order.

DB path: auth/sessionkeeper_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Account, AuditEvent, PasswordReset, RefreshTokenRecord

logger = logging.getLogger("sessionkeeper.auth.store")

# Hard stop for forward-pointer walks. A chain longer than this means one
# session refreshed every few seconds for weeks; something else is wrong.
_MAX_CHAIN_LENGTH = 10_000

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-case
    Column("display_name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="student"),
    Column("password_hash", Text),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(30)),
    Column("replaced_by", Integer),
)

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(50), nullable=False, index=True),
    Column("account_id", Integer, index=True),
    Column("target", String(255)),
    Column("detail", Text),  # JSON text
    Column("ip", String(64)),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class _LostRace(Exception):
    """Internal: the conditional revoke matched no row; roll the transaction back."""


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for accounts, refresh tokens, audit events and reset grants.

    Usage:
        store = AuthStore()
        account_id = store.create_account(Account(email="a@b.c", display_name="A", role="admin",
                                                  password_hash=hash_password("secret")))
        account = store.get_account_by_email("A@B.C")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint. Never raises."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError:
            logger.warning("Credential store ping failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists
        (case-insensitively, since emails are stored normalized).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    display_name=account.display_name,
                    role=account.role,
                    password_hash=account.password_hash,
                    is_active=account.is_active,
                    failed_login_attempts=account.failed_login_attempts,
                    locked_until=_iso(account.locked_until),
                    created_at=_iso(account.created_at or _utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def get_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup by login identifier."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(func.lower(_accounts.c.email) == normalize_email(email))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def apply_lockout(self, account_id: int, transition: Callable[[Account], Account]) -> Account | None:
        """Read the account under a row lock, apply a lockout transition, persist it.

        transition is one of LockoutPolicy.record_failure/record_success bound
        to a clock value. Returns the account as written, or None if it vanished.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _accounts.select().where(_accounts.c.id == account_id).with_for_update()
            ).fetchone()
            if row is None:
                return None
            updated = transition(_row_to_account(row))
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    failed_login_attempts=updated.failed_login_attempts,
                    locked_until=_iso(updated.locked_until),
                )
            )
        return updated

    def update_last_login(self, account_id: int, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_iso(now)))

    def reset_lockout(self, account_id: int) -> bool:
        """Administrative unlock. Returns False if the account does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def set_password(self, account_id: int, password_hash: str) -> bool:
        """Store a new hash and clear lockout state in one write."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(password_hash=password_hash, failed_login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def set_active(self, account_id: int, is_active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(is_active=is_active)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        """Insert a fresh ACTIVE record (login path). Returns it with its ID."""
        with self.engine.begin() as conn:
            record_id = _insert_refresh(conn, record)
        return _with_id(record, record_id)

    def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def get_refresh_token_by_id(self, record_id: int) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def rotate_refresh_token(
        self, old_id: int, replacement: RefreshTokenRecord, now: datetime
    ) -> RefreshTokenRecord | None:
        """Atomically revoke old_id and create its replacement.

        Returns the stored replacement, or None if old_id was already revoked
        by the time this transaction ran (a concurrent rotation won).
        """
        try:
            with self.engine.begin() as conn:
                claimed = conn.execute(
                    _refresh_tokens.update()
                    .where((_refresh_tokens.c.id == old_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                    .values(revoked_at=_iso(now), revoked_reason="rotated")
                )
                if claimed.rowcount != 1:
                    raise _LostRace()
                new_id = _insert_refresh(conn, replacement)
                conn.execute(
                    _refresh_tokens.update().where(_refresh_tokens.c.id == old_id).values(replaced_by=new_id)
                )
        except _LostRace:
            return None
        return _with_id(replacement, new_id)

    def revoke_refresh_token(self, record_id: int, reason: str, now: datetime) -> bool:
        """Revoke one record if still active. Returns True if this call revoked it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(now), revoked_reason=reason)
            )
        return result.rowcount > 0

    def revoke_chain(self, record_id: int, reason: str, now: datetime) -> int:
        """Revoke every record reachable from record_id via replaced_by pointers.

        record_id itself is included. Returns the number of records this call
        revoked (already-revoked links are walked through, not counted).
        """
        revoked = 0
        seen: set[int] = set()
        with self.engine.begin() as conn:
            current: int | None = record_id
            while current is not None and current not in seen and len(seen) < _MAX_CHAIN_LENGTH:
                seen.add(current)
                row = conn.execute(
                    select(_refresh_tokens.c.replaced_by, _refresh_tokens.c.revoked_at)
                    .where(_refresh_tokens.c.id == current)
                    .with_for_update()
                ).fetchone()
                if row is None:
                    break
                if row.revoked_at is None:
                    conn.execute(
                        _refresh_tokens.update()
                        .where(_refresh_tokens.c.id == current)
                        .values(revoked_at=_iso(now), revoked_reason=reason)
                    )
                    revoked += 1
                current = row.replaced_by
        return revoked

    def revoke_account_tokens(self, account_id: int, reason: str, now: datetime) -> int:
        """Revoke every still-active refresh record of an account. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(now), revoked_reason=reason)
            )
        return result.rowcount

    def count_active_refresh_tokens(self, account_id: int, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def add_audit_event(self, audit_event: AuditEvent) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_events.insert().values(
                    kind=audit_event.kind,
                    account_id=audit_event.account_id,
                    target=audit_event.target,
                    detail=audit_event.detail,
                    ip=audit_event.ip,
                    created_at=_iso(audit_event.created_at or _utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def list_audit_events(
        self, kind: str | None = None, account_id: int | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        """Newest first. Optional filters are ANDed."""
        query = _audit_events.select()
        if kind is not None:
            query = query.where(_audit_events.c.kind == kind)
        if account_id is not None:
            query = query.where(_audit_events.c.account_id == account_id)
        query = query.order_by(_audit_events.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit(r) for r in rows]

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def create_password_reset(self, reset: PasswordReset, now: datetime) -> int:
        """Store a new reset grant, retiring any unused grant of the same account."""
        with self.engine.begin() as conn:
            conn.execute(
                _password_resets.update()
                .where((_password_resets.c.account_id == reset.account_id) & (_password_resets.c.used_at.is_(None)))
                .values(used_at=_iso(now))
            )
            result = conn.execute(
                _password_resets.insert().values(
                    account_id=reset.account_id,
                    token_hash=reset.token_hash,
                    created_at=_iso(reset.created_at or now),
                    expires_at=_iso(reset.expires_at),
                )
            )
            return result.inserted_primary_key[0]

    def consume_password_reset(self, token_hash: str, now: datetime) -> PasswordReset | None:
        """Mark an unused, unexpired grant as used and return it; None otherwise.

        The conditional update makes a grant single-use even under concurrent
        submissions of the same link.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _password_resets.select().where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.used_at.is_(None))
                    & (_password_resets.c.expires_at > _iso(now))
                )
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _password_resets.update()
                .where((_password_resets.c.id == row.id) & (_password_resets.c.used_at.is_(None)))
                .values(used_at=_iso(now))
            )
            if result.rowcount != 1:
                return None
        reset = _row_to_reset(row)
        reset.used_at = now
        return reset

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self, before: datetime) -> int:
        """Delete refresh and reset records that expired or were retired before `before`.

        Returns the total number of rows deleted.
        """
        cutoff = _iso(before)
        with self.engine.begin() as conn:
            tokens = conn.execute(
                _refresh_tokens.delete().where(
                    or_(_refresh_tokens.c.expires_at < cutoff, _refresh_tokens.c.revoked_at < cutoff)
                )
            )
            resets = conn.execute(
                _password_resets.delete().where(
                    or_(_password_resets.c.expires_at < cutoff, _password_resets.c.used_at < cutoff)
                )
            )
        return tokens.rowcount + resets.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement helpers
# ---------------------------------------------------------------------------


def _insert_refresh(conn, record: RefreshTokenRecord) -> int:
    result = conn.execute(
        _refresh_tokens.insert().values(
            account_id=record.account_id,
            token_hash=record.token_hash,
            issued_at=_iso(record.issued_at),
            expires_at=_iso(record.expires_at),
        )
    )
    return result.inserted_primary_key[0]


def _with_id(record: RefreshTokenRecord, record_id: int) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=record_id,
        account_id=record.account_id,
        token_hash=record.token_hash,
        issued_at=record.issued_at,
        expires_at=record.expires_at,
    )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        role=row.role,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_dt(row.locked_until),
        created_at=_dt(row.created_at),
        last_login=_dt(row.last_login),
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        issued_at=_dt(row.issued_at),
        expires_at=_dt(row.expires_at),
        revoked_at=_dt(row.revoked_at),
        revoked_reason=row.revoked_reason,
        replaced_by=row.replaced_by,
    )


def _row_to_audit(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        kind=row.kind,
        account_id=row.account_id,
        target=row.target,
        detail=row.detail,
        ip=row.ip,
        created_at=_dt(row.created_at),
    )


def _row_to_reset(row) -> PasswordReset:
    return PasswordReset(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        created_at=_dt(row.created_at),
        expires_at=_dt(row.expires_at),
        used_at=_dt(row.used_at),
    )
