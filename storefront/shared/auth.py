"""
Authentication and authorization utilities for the Orders and Inventory services.

Validates JWT bearer tokens issued by the identity service. Token issuance is
not handled here.
"""
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> CurrentUser:
    """
    Decode and validate a bearer token.

    Raises:
        JWTError: If the token is invalid or expired
        ValueError: If required claims are missing
    """
    payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    user_id_str: str = payload.get("sub")
    email: str = payload.get("email")
    role: str = payload.get("role")

    if user_id_str is None or email is None or role is None:
        raise ValueError("Token is missing required claims")

    return CurrentUser(id=int(user_id_str), email=email, role=role, token=token)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if token is invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        return decode_token(credentials.credentials)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Args:
        current_user: Current authenticated user (injected)

    Returns:
        Current user if they are an admin

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
