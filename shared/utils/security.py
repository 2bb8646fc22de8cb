"""
shared/utils/security.py
JWT helpers. Access tokens carry the user id, role and a unique jti so a
single token can be deny-listed on logout.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings

TOKEN_TYPE = "access"


def create_access_token(user_id, role: str, ttl: Optional[timedelta] = None) -> tuple[str, str]:
    """Sign an access token for ``user_id``. Returns ``(token, jti)``."""
    jti = uuid.uuid4().hex
    issued = datetime.now(timezone.utc)
    ttl = ttl or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": str(user_id),
        "role": role,
        "jti": jti,
        "iat": issued,
        "exp": issued + ttl,
        "type": TOKEN_TYPE,
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Decode ``token``; raises JWTError when it is invalid, expired or not an access token."""
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != TOKEN_TYPE:
        raise JWTError("Invalid token type")
    return payload
