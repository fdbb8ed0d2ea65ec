"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The identity service issues the JWT; this service only validates it and
trusts the {sub, role} principal it carries.
"""

import logging
import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import User, UserRole
from shared.utils.exceptions import AuthorizationError
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(str(payload["sub"]))
        self.role: UserRole = UserRole(payload["role"])
        self.email: Optional[str] = payload.get("email")
        self.jti: Optional[str] = payload.get("jti")


def decode_token(token: str) -> TokenData:
    """Validate a raw JWT and return its principal. Raises JWTError/ValueError."""
    payload = verify_access_token(token)
    return TokenData(payload)


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_token(credentials.credentials)
    except (JWTError, ValueError, KeyError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    user = await db.get(User, token_data.user_id)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if user.role != token_data.role:
        # Roles never change, so a mismatch means a stale or forged token
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            logger.warning(
                "Role check failed",
                extra={"user_id": str(current_user.id), "role": current_user.role.value},
            )
            raise AuthorizationError(
                reason=f"required role: {[r.value for r in self.roles]}"
            )
        return current_user


# Convenience role dependencies
require_homeowner = RoleRequired(UserRole.HOMEOWNER)
require_worker = RoleRequired(UserRole.WORKER)
require_any_role = RoleRequired(UserRole.HOMEOWNER, UserRole.WORKER)
