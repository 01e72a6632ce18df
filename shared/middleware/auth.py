"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
JWT is validated here and turned into a tagged principal; the core never
sees raw claims.
"""

import hmac
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from config.settings import settings
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


# ── Principals ────────────────────────────────────────────────

@dataclass(frozen=True)
class RequesterPrincipal:
    """An authenticated vehicle owner."""
    id: uuid.UUID


@dataclass(frozen=True)
class ProviderPrincipal:
    """An authenticated workshop."""
    id: uuid.UUID


Principal = Union[RequesterPrincipal, ProviderPrincipal]

PRINCIPAL_TYPES = {
    "requester": RequesterPrincipal,
    "provider": ProviderPrincipal,
}


def principal_type_name(principal: Principal) -> str:
    if isinstance(principal, RequesterPrincipal):
        return "requester"
    if isinstance(principal, ProviderPrincipal):
        return "provider"
    raise TypeError(f"Unknown principal: {principal!r}")


# ── Dependencies ──────────────────────────────────────────────

async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        principal_cls = PRINCIPAL_TYPES[payload["type"]]
        principal_id = uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return principal_cls(id=principal_id)


class PrincipalRequired:
    """Dependency factory restricting an endpoint to one principal type."""

    def __init__(self, principal_cls: type):
        self.principal_cls = principal_cls

    async def __call__(self, principal: Principal = Depends(get_principal)) -> Principal:
        if not isinstance(principal, self.principal_cls):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required principal: {self.principal_cls.__name__}",
            )
        return principal


require_requester = PrincipalRequired(RequesterPrincipal)
require_provider = PrincipalRequired(ProviderPrincipal)


async def require_internal_token(
    x_internal_token: Optional[str] = Header(None),
) -> None:
    """Guard for endpoints called by the payment collaborator."""
    if not settings.INTERNAL_API_TOKEN or not hmac.compare_digest(
        x_internal_token or "", settings.INTERNAL_API_TOKEN
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )
