"""
api/errors.py -- Render AuthError outcomes into the standard error envelope.

Shared by the exception handler in api/main.py and by routes that must attach
extra headers or cookie changes to a failure response (POST /auth/refresh
clears a dead refresh cookie).
"""

from __future__ import annotations

import logging

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AccountLocked, AuthError, RefreshReused

logger = logging.getLogger("sessionkeeper.api")


def auth_error_response(exc: AuthError) -> JSONResponse:
    if isinstance(exc, (RefreshReused, AccountLocked)):
        logger.warning("Auth failure: %s (account_id=%s)", exc.code, exc.account_id)
    else:
        logger.info("Auth failure: %s", exc.code)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(
            exclude_none=True
        ),
    )
    if exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response
