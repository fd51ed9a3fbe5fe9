"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the lockout policy and the session service do the work.

Timestamps are timezone-aware UTC datetimes. The store converts them to and
from fixed-width ISO-8601 strings at the persistence boundary.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES = ("admin", "teacher", "student")


@dataclass
class Account:
    """One credential record per person.

    email is the login identifier. It is stored lower-cased and compared
    case-insensitively. failed_login_attempts and locked_until are owned by the
    lockout policy; is_active is owned by administrative actions.

    locked_until is either None or a moment that was in the future when it was
    written. Once the clock passes it the account is unlocked without a write.
    """

    email: str
    display_name: str
    role: str  # one of ROLES
    id: int | None = None
    password_hash: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side half of a refresh token.

    Only token_hash (SHA-256 hex of the opaque value) is persisted; the raw
    value exists solely in the client's cookie. replaced_by points forward to
    the record created when this one was rotated.
    """

    account_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None  # "rotated", "logout", "admin", "reuse_detected", ...
    replaced_by: int | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class AccessClaims:
    """Verified claim set of an access token. Never persisted."""

    account_id: int
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class SessionTokens:
    """Everything the transport layer needs after login or rotation."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int
    account: Account


@dataclass
class AuditEvent:
    kind: str
    account_id: int | None = None
    target: str | None = None
    detail: str | None = None  # JSON text
    ip: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class PasswordReset:
    """Single-use password reset grant. token_hash is SHA-256 hex of the emailed value."""

    account_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    used_at: datetime | None = None
