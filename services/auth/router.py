"""
services/auth/router.py
Session endpoints for bearer-token clients. Tokens are issued by the
identity service; this API only validates and revokes them.
"""

from fastapi import APIRouter, Depends

from config.redis_client import RedisCache, get_redis
from shared.middleware.auth import AccessClaims, get_access_claims, get_current_user
from shared.models.models import User
from shared.schemas.schemas import MessageResponse, UserResponse

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/logout", response_model=MessageResponse, summary="Revoke the current token")
async def logout(
    claims: AccessClaims = Depends(get_access_claims),
    redis=Depends(get_redis),
):
    """Deny-list the token id until the token would have expired anyway."""
    if claims.seconds_left > 0:
        await RedisCache(redis).revoke_token(claims.jti, claims.seconds_left)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Current user")
async def get_me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)
