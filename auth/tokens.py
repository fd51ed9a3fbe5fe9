"""
auth/tokens.py -- Password hashing, access-token signing, refresh-token values,
and the refresh cookie.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in verify_credentials() so response time
       does not reveal whether an identifier exists [C1]. bcrypt.checkpw
       compares digests in constant time.

  Access tokens: python-jose with HS256. Claims are sub (account id), email,
       role, iat, exp and typ="access". Validity is a pure function of the
       signature and exp -- no database lookup. The signing key is never read
       from ambient global state: a KeyRing is built once at startup from
       Settings and injected into TokenIssuer.

  Key rotation: the KeyRing is an ordered list of (secret, valid_from). The
       newest key whose valid_from has passed signs; every key verifies,
       newest first, so tokens signed just before a cut-over stay valid until
       they expire. Each token carries a "kid" header to skip the search.

  Refresh tokens: secrets.token_urlsafe(48) -- 384 bits, opaque, not
       self-describing. Only SHA-256(raw) is stored; a DB leak does not yield
       usable tokens. SHA-256 (not bcrypt) because the input is already
       high-entropy and lookups must be O(1) by hash.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import AccessClaims

if TYPE_CHECKING:
    from auth.models import Account
    from core.config import Settings

logger = logging.getLogger("sessionkeeper.auth")

_ALGORITHM = "HS256"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes (and bcrypt 5.x refuses longer
    input); the API layer rejects new passwords over 72 UTF-8 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessionkeeper_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Burn one bcrypt comparison against a constant placeholder [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningKey:
    secret: str
    valid_from: datetime = _EPOCH

    @property
    def kid(self) -> str:
        # Fingerprint, not the secret. Stable across restarts.
        return hashlib.sha256(self.secret.encode("utf-8")).hexdigest()[:16]


class KeyRing:
    """Ordered set of HMAC keys: newest valid_from first.

    Usage:
        ring = KeyRing([SigningKey(old), SigningKey(new, valid_from=cutover)])
        ring.signing_key(now)   # newest key already in effect
        ring.candidates(kid)    # keys to try when verifying
    """

    def __init__(self, keys: list[SigningKey]) -> None:
        if not keys:
            raise ValueError("KeyRing needs at least one signing key.")
        self._keys = sorted(keys, key=lambda k: k.valid_from, reverse=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyRing:
        keys = [SigningKey(settings.secret_key)]
        keys.extend(SigningKey(entry.secret, entry.valid_from) for entry in settings.signing_keys)
        return cls(keys)

    @property
    def keys(self) -> list[SigningKey]:
        return list(self._keys)

    def signing_key(self, now: datetime) -> SigningKey:
        for key in self._keys:
            if key.valid_from <= now:
                return key
        raise ValueError("No signing key is valid yet; check SIGNING_KEYS valid_from values.")

    def candidates(self, kid: str | None) -> list[SigningKey]:
        if kid:
            matching = [k for k in self._keys if k.kid == kid]
            if matching:
                return matching
        return list(self._keys)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies access tokens; mints refresh token values.

    Holds the KeyRing and lifetimes injected at startup. Stateless otherwise,
    so one instance is shared by every request thread.
    """

    def __init__(self, keyring: KeyRing, access_ttl: timedelta, refresh_ttl: timedelta) -> None:
        if access_ttl >= refresh_ttl:
            raise ValueError("Access token lifetime must be shorter than refresh token lifetime.")
        self.keyring = keyring
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            KeyRing.from_settings(settings),
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        )

    def create_access_token(self, account: Account, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        key = self.keyring.signing_key(now)
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "role": account.role,
            "typ": "access",
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, key.secret, algorithm=_ALGORITHM, headers={"kid": key.kid})

    def decode_access_token(self, token: str) -> AccessClaims | None:
        """Verify signature and expiry. Returns None on any failure.

        Returning None (rather than raising) keeps the caller simple: any
        invalid token is treated as unauthenticated.
        """
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError:
            return None
        for key in self.keyring.candidates(kid):
            try:
                payload = jwt.decode(token, key.secret, algorithms=[_ALGORITHM])
            except JWTError:
                continue
            return _claims_from_payload(payload)
        return None

    @property
    def access_expires_in(self) -> int:
        return int(self.access_ttl.total_seconds())

    @property
    def refresh_expires_in(self) -> int:
        return int(self.refresh_ttl.total_seconds())


def _claims_from_payload(payload: dict) -> AccessClaims | None:
    if payload.get("typ") != "access":
        return None
    try:
        return AccessClaims(
            account_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        return None


def unverified_expiry(token: str) -> datetime | None:
    """Read exp without verifying the signature.

    Only for the edge relay's "is this cookie still worth forwarding" check;
    the resource layer always verifies properly.
    """
    try:
        exp = jwt.get_unverified_claims(token).get("exp")
    except JWTError:
        return None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Opaque tokens (refresh tokens, password reset tokens)
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(48)


def hash_opaque_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, settings: Settings) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite: "lax" by default -- not sent on cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the refresh record's lifetime.
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path="/",
    )


def clear_refresh_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
    )
