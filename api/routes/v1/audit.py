"""
api/routes/v1/audit.py -- Read access to the security audit trail.

Routes:
  GET /api/v1/audit?kind=&account_id=&limit=  -- recent events, newest first (admin only)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEventResponse
from auth.dependencies import require_admin
from auth.models import AccessClaims
from auth.store import AuthStore

router = APIRouter()


@router.get("/audit", response_model=list[AuditEventResponse])
def list_audit_events(
    request: Request,
    kind: Optional[str] = Query(None, max_length=64),
    account_id: Optional[int] = Query(None, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    claims: AccessClaims = Depends(require_admin),
) -> list[AuditEventResponse]:
    store: AuthStore = request.app.state.auth_store
    events = store.list_audit_events(kind=kind, account_id=account_id, limit=limit)
    return [AuditEventResponse.from_event(e) for e in events]
