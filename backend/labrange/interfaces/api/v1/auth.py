"""
Lab Range - Authentication Dependencies
Bearer JWTs are issued by the learning platform; this service only verifies them.
"""

from typing import Annotated, Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from labrange.core.config import Settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, settings: Settings) -> dict:
    """Verify a platform token and return its claims."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as e:
        raise _unauthorized("Token expired") from e
    except JWTError as e:
        raise _unauthorized("Invalid token") from e


async def get_current_user(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> dict:
    """
    Resolve the caller from the bearer token.

    The platform puts the user id in ``sub``. Tokens without a ``type``
    claim are treated as access tokens; refresh tokens are refused.
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    claims = decode_token(credentials.credentials, request.app.state.settings)

    if claims.get("type", "access") != "access":
        raise _unauthorized("Invalid token type")

    user_id = claims.get("sub")
    if not user_id:
        logger.warning("Token without subject", path=request.url.path)
        raise _unauthorized("Invalid token payload")

    return {
        "id": str(user_id),
        "username": claims.get("username"),
        "role": claims.get("role"),
    }
