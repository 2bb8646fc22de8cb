"""
shared/middleware/auth.py
Bearer-token dependencies. A request is resolved to an active User and the
role gates below decide which booking, partner and wallet routes it may hit.
Logged-out tokens are refused via the Redis deny-list.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.exceptions import Unauthenticated, Unauthorized
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AccessClaims:
    user_id: UUID
    role: UserRole
    jti: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict) -> "AccessClaims":
        try:
            return cls(
                user_id=UUID(payload["sub"]),
                role=UserRole(payload["role"]),
                jti=payload["jti"],
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError):
            raise Unauthenticated("Malformed access token")

    @property
    def seconds_left(self) -> int:
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


async def get_access_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    redis=Depends(get_redis),
) -> AccessClaims:
    if credentials is None:
        raise Unauthenticated()
    try:
        claims = AccessClaims.from_payload(verify_access_token(credentials.credentials))
    except JWTError:
        raise Unauthenticated("Invalid or expired token")

    if await RedisCache(redis).is_token_revoked(claims.jti):
        raise Unauthenticated("Token has been revoked")
    return claims


async def get_current_user(
    claims: AccessClaims = Depends(get_access_claims),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the caller; deactivated accounts are refused even with a live token."""
    user = await db.get(User, claims.user_id)
    if user is None:
        raise Unauthenticated("User not found")
    if not user.is_active:
        raise Unauthorized("User account is inactive")
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            raise Unauthorized(
                "This action is limited to other roles",
                required_roles=[r.value for r in self.roles],
            )
        return current_user


require_customer = RoleRequired(UserRole.CUSTOMER)
require_partner = RoleRequired(UserRole.SERVICE_PARTNER)
require_admin = RoleRequired(UserRole.ADMIN, UserRole.SUPER_ADMIN)
require_assigner = RoleRequired(UserRole.BUSINESS_PARTNER, UserRole.ADMIN, UserRole.SUPER_ADMIN)
