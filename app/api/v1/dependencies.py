"""
Dependencies for API endpoints.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from app.core.exceptions import AuthenticationError
from app.core.security import decode_access_token
from app.schemas.user import User, TokenData

# Bearer tokens are issued by the practice manager's identity service
bearer_scheme = HTTPBearer(auto_error=False, description="Access token from the identity service")


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """
    Get the current authenticated user from the JWT token.

    The token carries the practice (tenant) the user acts for.

    Args:
        credentials: Bearer credentials from the Authorization header

    Returns:
        User: The authenticated user

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    try:
        payload = decode_access_token(credentials.credentials)
        token_data = TokenData(**payload)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except (jwt.PyJWTError, ValueError):
        raise AuthenticationError("Invalid token")

    return User(
        id=token_data.sub,
        tenant_id=token_data.tenant_id,
        email=token_data.email,
        role=token_data.role,
    )
