from typing import Optional

import jwt
from fastapi import Cookie, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import services
from .errors import UnauthorizedError
from .schemas import UserOut
from .tokens import decode_access_token

security = HTTPBearer(auto_error=False)


def get_access_token(
    access_token: Optional[str] = Cookie(None, alias="accessToken"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Pick the access token from the cookie, falling back to the header."""
    if access_token:
        return access_token
    if credentials is not None:
        return credentials.credentials
    return None


def _resolve(token: str) -> UserOut:
    try:
        user_id = decode_access_token(token)
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid access token")

    user = services.get_user(user_id)
    if user is None:
        raise UnauthorizedError("Invalid access token")
    return user


def get_current_user(token: Optional[str] = Depends(get_access_token)) -> UserOut:
    if not token:
        raise UnauthorizedError("Unauthorized request")
    return _resolve(token)


def get_optional_user(token: Optional[str] = Depends(get_access_token)) -> Optional[UserOut]:
    """Resolve the viewer when a valid token is present, else ``None``."""
    if not token:
        return None
    try:
        return _resolve(token)
    except UnauthorizedError:
        return None
