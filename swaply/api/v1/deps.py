"""
Shared endpoint dependencies.

WHAT: Authentication, rate limiting and service access for routes
WHY: Every messaging route runs as an authenticated, rate-limited user
HOW: FastAPI Depends() chain; identity and limiter are swappable singletons
"""

from typing import Optional

from fastapi import Depends, Header
from starlette.concurrency import run_in_threadpool

from ...services.identity import IdentityProvider, TokenIdentityProvider, bearer_token
from ...services.messaging_service import MessagingService, get_messaging_service
from ...services.rate_limiter import InMemoryRateLimiter, RateLimiter
from ...utils.exceptions import AuthenticationException, RateLimitedException

_identity: IdentityProvider = TokenIdentityProvider()
_rate_limiter: RateLimiter = InMemoryRateLimiter()


def get_identity_provider() -> IdentityProvider:
    return _identity


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter):
    global _rate_limiter
    _rate_limiter = limiter


def get_service() -> MessagingService:
    return get_messaging_service()


async def get_current_user_id(
    authorization: Optional[str] = Header(None),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> str:
    """
    Resolve the bearer token to a user id.

    Raises:
        AuthenticationException: missing or unknown token
    """
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationException()
    user_id = await run_in_threadpool(identity.resolve, token)
    if user_id is None:
        raise AuthenticationException("Token inválido")
    return user_id


async def rate_limited_user(
    user_id: str = Depends(get_current_user_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> str:
    """
    Authenticated user within their request budget.

    Raises:
        RateLimitedException: budget exhausted (carries retry_after seconds)
    """
    if not limiter.allow(user_id):
        raise RateLimitedException(user_id, limiter.retry_after(user_id))
    return user_id
