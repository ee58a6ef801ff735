"""FastAPI dependencies that turn a bearer token into a platform user."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.auth.jwt import TokenTypeError, access_token_subject
from commerce.database import get_db
from commerce.models.user import User

# Strict bearer: a missing token is rejected before the route runs
_bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token to a ``User`` row.

    Raises:
        HTTPException 401: Invalid, expired or wrong-type token, or unknown user.
    """
    try:
        user_id = access_token_subject(credentials.credentials)
    except TokenTypeError:
        raise _unauthorized("Invalid token type") from None
    except JWTError:
        raise _unauthorized("Could not validate credentials") from None

    user = await db.get(User, user_id)
    if user is None:
        raise _unauthorized("Could not validate credentials")
    return user


async def get_current_active_user(user: User = Depends(get_current_user)) -> User:
    """403 for deactivated accounts; billing actions need a live account."""
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")
    return user


async def require_admin(user: User = Depends(get_current_active_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
