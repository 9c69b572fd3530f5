"""
Identity provider.

WHAT: Resolve an opaque bearer token to a user id
WHY: REST and the socket gateway authenticate with the same credential
HOW: Token lookup in the users table; other providers implement resolve()
"""

from typing import Optional

from sqlalchemy import select

from ..core.database import get_db, retry_read
from ..core.models import User


class IdentityProvider:
    """Interface: resolve(token) -> user id or None."""

    def resolve(self, token: Optional[str]) -> Optional[str]:
        raise NotImplementedError


class TokenIdentityProvider(IdentityProvider):
    """Looks tokens up in the users table."""

    @retry_read
    def resolve(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with get_db() as db:
            return db.scalar(select(User.user_id).where(User.auth_token == token))


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
