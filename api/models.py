"""
API request and response models for SessionKeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

import json
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, AuditEvent

# bcrypt only sees the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    # Not stripped: whitespace can be part of a password.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})

    @field_validator("email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=16, max_length=255)
    new_password: str = Field(min_length=8, max_length=_BCRYPT_MAX_BYTES)

    @field_validator("new_password")
    @classmethod
    def fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise ValueError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
        return value


class RevokeSessionsRequest(BaseModel):
    """Body for POST /api/v1/auth/sessions/revoke (admin bulk invalidation)."""

    account_ids: list[int] = Field(min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str
    role: str

    @classmethod
    def from_account(cls, account: Account) -> AccountInfo:
        return cls(id=account.id, email=account.email, display_name=account.display_name, role=account.role)


class TokenResponse(BaseModel):
    """Body of a successful login or refresh. The refresh token travels only as a cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountInfo


class MeResponse(BaseModel):
    account: AccountInfo
    is_active: bool
    last_login: Optional[str] = None


class MessageResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


class UnlockResponse(BaseModel):
    account_id: int
    unlocked: bool


class RevokeSessionsResponse(BaseModel):
    revoked: dict[int, int]
    total: int


class AuditEventResponse(BaseModel):
    id: int
    kind: str
    account_id: Optional[int] = None
    target: Optional[str] = None
    detail: Optional[dict] = None
    ip: Optional[str] = None
    created_at: str

    @classmethod
    def from_event(cls, audit_event: AuditEvent) -> AuditEventResponse:
        return cls(
            id=audit_event.id,
            kind=audit_event.kind,
            account_id=audit_event.account_id,
            target=audit_event.target,
            detail=json.loads(audit_event.detail) if audit_event.detail else None,
            ip=audit_event.ip,
            created_at=audit_event.created_at.isoformat() if audit_event.created_at else "",
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
