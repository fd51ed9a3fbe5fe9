"""
auth/ratelimit.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware), by the api/ route modules
and by web/routes.py (to apply per-route limits with @limiter.limit()). It
lives in auth/ so the API and the edge relay count against one store without
either layer importing the other.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Key functions:
  remote_address -- anonymous auth endpoints (login, refresh, password reset),
                    on both /api/v1/auth and the /session edge routes.
  actor_key      -- privileged bulk endpoints. An authenticated operator gets
                    their own quota instead of sharing one with every
                    anonymous client behind the same NAT.
"""

from slowapi import Limiter
from starlette.requests import Request

from auth.audit import client_ip
from auth.dependencies import bearer_token
from core.config import get_settings

_settings = get_settings()


def remote_address(request: Request) -> str:
    """Client address, honouring X-Forwarded-For only behind a trusted proxy."""
    return client_ip(request, _settings.trust_proxy_headers) or "127.0.0.1"


def actor_key(request: Request) -> str:
    """Rate-limit key: the verified access-token subject, else the remote address.

    Only a token that verifies against the key ring counts -- an attacker
    cannot mint fresh quotas by sending random bearer strings.
    """
    token = bearer_token(request)
    issuer = getattr(request.app.state, "token_issuer", None)
    if token and issuer is not None:
        claims = issuer.decode_access_token(token)
        if claims is not None:
            return f"account:{claims.account_id}"
    return f"ip:{remote_address(request)}"


limiter = Limiter(
    key_func=remote_address,
    default_limits=[_settings.default_rate_limit],
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)

# Shared buckets: the API route and its edge counterpart draw on one quota per address.
LOGIN_SCOPE = "login"
REFRESH_SCOPE = "refresh"
