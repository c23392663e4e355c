"""
Auth dependencies and rate limiting middleware.
"""

import os
import time
from typing import Annotated

from fastapi import Depends, Request, Response

from yomi.api_errors import APIError, translate_engine_error
from yomi.auth import User
from yomi.exceptions import AdminRequired


RATE_LIMIT_PER_MIN = int(os.environ.get("YOMI_RATE_LIMIT_PER_MIN", "60"))


# ---------------------------------------------------------------------------
# Rate limiter (token bucket per API key)
# ---------------------------------------------------------------------------

class RateLimiter:
    """In-memory token bucket rate limiter, per API key hash."""

    def __init__(self, rate: int = 60):
        self.rate = rate              # tokens per minute
        self.buckets: dict[str, tuple[float, float]] = {}  # key_hash -> (tokens, last_refill)

    def check(self, key_hash: str) -> tuple[bool, dict]:
        """
        Consume one token. Returns (allowed, headers).
        Headers are always populated for the response.
        """
        now = time.monotonic()
        tokens, last = self.buckets.get(key_hash, (float(self.rate), now))

        tokens = min(float(self.rate), tokens + (now - last) * self.rate / 60.0)

        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(max(0, int(tokens) - 1)),
        }

        if tokens < 1.0:
            headers["Retry-After"] = "60"
            self.buckets[key_hash] = (tokens, now)
            return False, headers

        self.buckets[key_hash] = (tokens - 1.0, now)
        return True, headers


# Replaced in tests
rate_limiter = RateLimiter(RATE_LIMIT_PER_MIN)


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def _get_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_auth(request: Request, response: Response) -> User:
    """Require a valid API key. Returns the authenticated User."""
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")

    user = request.app.state.auth_store.authenticate(token)
    if user is None:
        raise APIError(401, "invalid_api_key", "Invalid or rotated API key")

    allowed, headers = rate_limiter.check(user.api_key_hash)
    for k, v in headers.items():
        response.headers[k] = v
    if not allowed:
        raise APIError(429, "rate_limited", "Rate limit exceeded")

    return user


async def require_admin(user: Annotated[User, Depends(require_auth)],
                        request: Request) -> User:
    """Require a user whose profile has the admin role."""
    profile = request.app.state.ledger.profiles.get(user.profile_id)
    if profile is None or not profile.is_admin:
        raise translate_engine_error(AdminRequired("Admin role required"))
    return user


AuthUser = Annotated[User, Depends(require_auth)]
AdminUser = Annotated[User, Depends(require_admin)]
