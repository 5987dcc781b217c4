"""Auth dependency -- resolves the calling user from the bearer token."""

from uuid import UUID

import jwt as pyjwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.auth import decode_token
from app.repos.user_repo import get_user_by_id

_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> dict:
    """Return the users row for the bearer token.

    Raises 401 if the token is missing, invalid, expired, or names no user.
    """
    if credentials is None:
        raise _unauthorized("Missing authentication token")

    try:
        payload = decode_token(credentials.credentials)
    except pyjwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except pyjwt.PyJWTError:
        raise _unauthorized("Invalid authentication token")

    try:
        user_id = UUID(payload.get("sub") or "")
    except ValueError:
        raise _unauthorized("Invalid token payload")

    user = await get_user_by_id(user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user
