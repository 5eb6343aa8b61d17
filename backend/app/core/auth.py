"""
Bearer JWT verification for FastAPI.

Tokens are issued by the account service and signed with AUTH_JWT_SECRET.
The ``sub`` claim carries the user's UUID; this service keeps no user
table of its own.
"""
import uuid
from typing import Any, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode an access token.

    Token structure:
    {
      "sub": "3f0c7a52-...",
      "email": "user@example.com",
      "iat": 1234567890,
      "exp": 1234567890
    }
    """
    if not settings.auth_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth secret not configured",
        )

    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authorization token",
        ) from exc


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> uuid.UUID:
    """
    Resolve the authenticated user's id from the bearer token.

    - Expects Authorization: Bearer <jwt> header
    - Verifies and decodes the token
    - Returns the ``sub`` claim as a UUID
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    if credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme",
        )

    claims = verify_access_token(credentials.credentials)

    try:
        return uuid.UUID(str(claims.get("sub")))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing required claims",
        ) from exc
