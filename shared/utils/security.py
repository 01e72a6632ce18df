"""
shared/utils/security.py
JWT creation/verification.

Tokens are issued by the external identity service; create_access_token
exists for local development and tests and signs the same claim shape.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    principal_id: str,
    principal_type: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti).
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(principal_id),
        "type": principal_type,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "token_use": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("token_use") != "access":
        raise JWTError("Invalid token type")
    if not payload.get("sub") or not payload.get("type"):
        raise JWTError("Missing principal claims")
    return payload
