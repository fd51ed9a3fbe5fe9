"""
auth/errors.py -- Expected authentication outcomes as exceptions.

Every class here is a user-facing result with its own wire code and HTTP
status. None of them is a server error: the API layer renders them into the
standard error envelope and logs them at INFO/WARNING only. Anything that is
not an AuthError (database down, missing signing key) is unexpected and goes
through the generic 500 handler.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 401
    message = "Authentication failed."

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        account_id: int | None = None,
    ) -> None:
        self.message = message or self.message
        self.retry_after = retry_after
        # Known account behind the failure, for audit only. Never rendered.
        self.account_id = account_id
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountLocked(AuthError):
    """Raised for the attempt that triggers the lock and every attempt while it holds.

    triggered is True only for the failing attempt that reached the threshold.
    """

    code = "account_locked"
    status_code = 429
    message = "Account locked after too many failed login attempts. Try again later."

    def __init__(self, message: str | None = None, *, triggered: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.triggered = triggered


class AccountDeactivated(AuthError):
    code = "account_deactivated"
    status_code = 403
    message = "This account has been deactivated. Contact an administrator."


class RefreshError(AuthError):
    """Base for every refresh failure; all of them are 401 and clear the cookie."""

    code = "refresh_failed"
    status_code = 401
    message = "Session could not be refreshed."


class RefreshInvalid(RefreshError):
    code = "refresh_invalid"
    message = "Invalid refresh token."


class RefreshExpired(RefreshError):
    code = "refresh_expired"
    message = "Refresh token expired. Please log in again."


class RefreshReused(RefreshError):
    code = "refresh_reused"
    message = "Refresh token was already used. Please log in again."


class NoSession(RefreshError):
    code = "no_session"
    message = "Authentication required."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many requests."


class ResetTokenInvalid(AuthError):
    code = "reset_token_invalid"
    status_code = 400
    message = "Password reset link is invalid or has expired."


_BY_CODE: dict[str, type[AuthError]] = {
    cls.code: cls
    for cls in (
        InvalidCredentials,
        AccountLocked,
        AccountDeactivated,
        RefreshError,
        RefreshInvalid,
        RefreshExpired,
        RefreshReused,
        NoSession,
        RateLimited,
        ResetTokenInvalid,
    )
}


def error_for_code(code: str | None, status_code: int) -> type[AuthError]:
    """Map a wire error code back to its exception class.

    Used by the HTTP edge backend to re-raise upstream outcomes locally.
    Unknown codes fall back by status: 401 -> RefreshInvalid, otherwise AuthError.
    """
    if code and code in _BY_CODE:
        return _BY_CODE[code]
    if status_code == 401:
        return RefreshInvalid
    return AuthError
