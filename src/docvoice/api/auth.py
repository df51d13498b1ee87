"""
API Authentication

Bearer JWT validation for the application's own tokens (HS256 signed with
JWT_SECRET).
"""

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict

from docvoice.config import settings

logger = structlog.get_logger()


class TokenPayload(BaseModel):
    """Decoded application token."""

    model_config = ConfigDict(extra="allow")

    userId: str
    email: str | None = None
    exp: int | None = None
    iat: int | None = None


def verify_token(token: str) -> TokenPayload:
    """
    Verify a token and return its payload.

    Raises:
        HTTPException: 401 if the token is invalid or no secret is configured
    """
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=settings.jwt_algorithms)
        return TokenPayload(**payload)
    except (JWTError, ValueError) as e:
        logger.warning("JWT verification failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )


class BearerAuth:
    """
    FastAPI dependency for bearer token validation.

    Usage:
        @router.post("/session")
        async def create_session(user: TokenPayload = Depends(auth_required)):
            return {"user_id": user.userId}
    """

    async def __call__(
        self,
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(HTTPBearer(auto_error=False)),
    ) -> TokenPayload:
        if credentials is None or not credentials.credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authentication token",
            )

        payload = verify_token(credentials.credentials)
        request.state.user = payload
        request.state.user_id = payload.userId
        return payload


auth_required = BearerAuth()


async def get_current_user(payload: TokenPayload = Depends(auth_required)) -> TokenPayload:
    """Get the current authenticated user."""
    return payload


__all__ = ["TokenPayload", "verify_token", "BearerAuth", "auth_required", "get_current_user"]
