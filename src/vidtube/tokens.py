"""Access/refresh JWT issuance, verification and rotation."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

import jwt
from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import InternalError, UnauthorizedError
from .models.user import User

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"

TOKEN_ROTATION_COUNTER = Counter(
    "refresh_token_rotations_total", "Refresh token rotations by outcome", ["outcome"]
)


def _encode(claims: Dict[str, object], secret: str, expires: timedelta, token_type: str) -> str:
    now = datetime.now(timezone.utc)
    payload = dict(claims)
    payload.update(
        {"type": token_type, "iat": now, "exp": now + expires, "jti": uuid.uuid4().hex}
    )
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User) -> str:
    return _encode(
        {
            "sub": str(user.id),
            "email": user.email,
            "username": user.username,
            "fullName": user.full_name,
        },
        settings.access_token_secret,
        timedelta(minutes=settings.access_token_expire_minutes),
        ACCESS,
    )


def create_refresh_token(user: User) -> str:
    return _encode(
        {"sub": str(user.id)},
        settings.refresh_token_secret,
        timedelta(minutes=settings.refresh_token_expire_minutes),
        REFRESH,
    )


def _decode(token: str, secret: str, token_type: str) -> int:
    payload = jwt.decode(
        token,
        secret,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )
    if payload.get("type") != token_type:
        raise jwt.InvalidTokenError("unexpected token type")
    try:
        return int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise jwt.InvalidTokenError("malformed subject") from exc


def decode_access_token(token: str) -> int:
    """Return the user id carried by a valid access token.

    Raises ``jwt.PyJWTError`` when the signature, expiry or type is wrong.
    """
    return _decode(token, settings.access_token_secret, ACCESS)


def decode_refresh_token(token: str) -> int:
    return _decode(token, settings.refresh_token_secret, REFRESH)


def issue_tokens(session: Session, user_id: int) -> Dict[str, str]:
    """Mint a token pair for the user and persist the refresh token.

    Any earlier refresh token of the user is overwritten and so stops
    being accepted by :func:`rotate_tokens`.
    """
    try:
        user = session.get(User, user_id)
        if user is None:
            raise LookupError(f"user {user_id} not found")
        access_token = create_access_token(user)
        refresh_token = create_refresh_token(user)
        user.refresh_token = refresh_token
        session.commit()
    except (LookupError, SQLAlchemyError) as exc:
        session.rollback()
        logger.exception("token issuance failed user=%s", user_id, exc_info=exc)
        raise InternalError(
            "Something went wrong while generating refresh and access tokens"
        ) from exc
    return {"access_token": access_token, "refresh_token": refresh_token}


def rotate_tokens(session: Session, incoming_refresh_token: str | None) -> Dict[str, str]:
    """Exchange a refresh token for a new pair.

    The stored token is swapped with a conditional UPDATE so that two
    concurrent refreshes presenting the same token cannot both succeed.
    """
    if not incoming_refresh_token:
        TOKEN_ROTATION_COUNTER.labels(outcome="missing").inc()
        raise UnauthorizedError(INVALID_REFRESH_MESSAGE)

    try:
        user_id = decode_refresh_token(incoming_refresh_token)
    except jwt.PyJWTError:
        TOKEN_ROTATION_COUNTER.labels(outcome="invalid").inc()
        raise UnauthorizedError(INVALID_REFRESH_MESSAGE)

    user = session.get(User, user_id)
    if user is None or user.refresh_token != incoming_refresh_token:
        TOKEN_ROTATION_COUNTER.labels(outcome="rejected").inc()
        raise UnauthorizedError(INVALID_REFRESH_MESSAGE)

    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    try:
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.refresh_token == incoming_refresh_token)
            .values(refresh_token=refresh_token)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            TOKEN_ROTATION_COUNTER.labels(outcome="rejected").inc()
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("refresh token rotation failed user=%s", user_id, exc_info=exc)
        raise InternalError("Something went wrong while refreshing tokens") from exc

    TOKEN_ROTATION_COUNTER.labels(outcome="rotated").inc()
    logger.info("rotated refresh token user=%s", user_id)
    return {"access_token": access_token, "refresh_token": refresh_token}
