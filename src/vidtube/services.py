"""Service layer for registration, login and account maintenance."""

import logging
from typing import Dict, Optional

from prometheus_client import Counter
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import SessionLocal
from .errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    handle_service_error,
)
from .models.user import User
from .schemas import LoginResult, UserOut
from .security import hash_password, verify_password
from .tokens import issue_tokens, rotate_tokens
from .uploads import upload_on_cloudinary

logger = logging.getLogger(__name__)

REGISTRATION_COUNTER = Counter("user_registrations_total", "Total users registered")
LOGIN_COUNTER = Counter("user_logins_total", "Login attempts by outcome", ["outcome"])


def _blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_user(user_id: int) -> Optional[UserOut]:
    """Return the sanitized user, or ``None`` if it does not exist."""
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        return UserOut.model_validate(user) if user else None
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def register_user(
    full_name: Optional[str],
    email: Optional[str],
    username: Optional[str],
    password: Optional[str],
    avatar_local_path: Optional[str],
    cover_image_local_path: Optional[str] = None,
) -> UserOut:
    """Create a user after uploading the avatar and optional cover image.

    Parameters
    ----------
    full_name, email, username, password: str
        Identity fields; none may be blank.
    avatar_local_path: str
        Path of the staged avatar file. Required.
    cover_image_local_path: str, optional
        Path of the staged cover image. A failed upload leaves the
        cover image empty instead of failing the registration.

    Returns
    -------
    UserOut
        The created user without credential fields.
    """
    if any(_blank(v) for v in (full_name, email, username, password)):
        raise BadRequestError("All fields are required")

    username = username.strip().lower()
    email = email.strip()
    session: Session = SessionLocal()
    try:
        existing = (
            session.query(User)
            .filter(or_(User.email == email, User.username == username))
            .first()
        )
        if existing:
            raise ConflictError("User with email or username already exists")

        if not avatar_local_path:
            raise BadRequestError("Avatar file is required")

        avatar = upload_on_cloudinary(avatar_local_path)
        cover_image = upload_on_cloudinary(cover_image_local_path)
        if not avatar:
            raise InternalError("Error uploading avatar")

        user = User(
            full_name=full_name.strip(),
            avatar=avatar["url"],
            cover_image=(cover_image or {}).get("url") or "",
            email=email,
            username=username,
            password_hash=hash_password(password),
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError as exc:
            # Another registration took the username or email since the check.
            raise ConflictError("User with email or username already exists") from exc

        created = session.get(User, user.id)
        if created is None:
            raise InternalError("Something went wrong while registering the user")
        REGISTRATION_COUNTER.inc()
        logger.info("registered user id=%s username=%s", created.id, created.username)
        return UserOut.model_validate(created)
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def login_user(
    password: str, email: Optional[str] = None, username: Optional[str] = None
) -> LoginResult:
    """Check credentials and issue a fresh token pair."""
    if _blank(email) and _blank(username):
        raise BadRequestError("Username or email is required")

    filters = []
    if not _blank(email):
        filters.append(User.email == email.strip())
    if not _blank(username):
        filters.append(User.username == username.strip().lower())

    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(or_(*filters)).first()
        if user is None:
            LOGIN_COUNTER.labels(outcome="unknown_user").inc()
            raise NotFoundError("User does not exist")
        if not verify_password(password, user.password_hash):
            LOGIN_COUNTER.labels(outcome="bad_password").inc()
            raise UnauthorizedError("Invalid user credentials")

        tokens = issue_tokens(session, user.id)
        LOGIN_COUNTER.labels(outcome="success").inc()
        logger.info("user logged in id=%s", user.id)
        return LoginResult(
            user=UserOut.model_validate(_get_user(session, user.id)),
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
        )
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def logout_user(user_id: int) -> None:
    """Forget the stored refresh token so it can no longer be exchanged."""
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        user.refresh_token = None
        session.commit()
        logger.info("user logged out id=%s", user_id)
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def refresh_access_token(incoming_refresh_token: Optional[str]) -> Dict[str, str]:
    session: Session = SessionLocal()
    try:
        return rotate_tokens(session, incoming_refresh_token)
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def change_current_password(user_id: int, old_password: str, new_password: str) -> None:
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        if not verify_password(old_password, user.password_hash):
            raise UnauthorizedError("Invalid old password")
        if _blank(new_password):
            raise BadRequestError("New password is required")
        user.password_hash = hash_password(new_password)
        session.commit()
        logger.info("password changed id=%s", user_id)
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def _email_taken(session: Session, email: str, user_id: int) -> bool:
    return (
        session.query(User.id)
        .filter(User.email == email, User.id != user_id)
        .first()
        is not None
    )


def update_account_details(
    user_id: int, full_name: Optional[str], email: Optional[str]
) -> UserOut:
    """Replace the full name and email of the user."""
    if _blank(full_name) or _blank(email):
        raise BadRequestError("All fields are required")

    email = email.strip()
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        if _email_taken(session, email, user_id):
            raise ConflictError("Email is already in use")
        user.full_name = full_name.strip()
        user.email = email
        try:
            session.commit()
        except IntegrityError as exc:
            raise ConflictError("Email is already in use") from exc
        return UserOut.model_validate(_get_user(session, user_id))
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def _replace_image(user_id: int, local_path: Optional[str], attribute: str, label: str) -> UserOut:
    if not local_path:
        raise BadRequestError(f"{label} file is missing")

    uploaded = upload_on_cloudinary(local_path)
    if not uploaded:
        raise InternalError(f"Error while uploading {label.lower()}")

    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        setattr(user, attribute, uploaded["url"])
        session.commit()
        logger.info("updated %s id=%s", attribute, user_id)
        return UserOut.model_validate(_get_user(session, user_id))
    except Exception as exc:
        handle_service_error(session, exc)
    finally:
        session.close()


def update_user_avatar(user_id: int, avatar_local_path: Optional[str]) -> UserOut:
    return _replace_image(user_id, avatar_local_path, "avatar", "Avatar")


def update_user_cover_image(user_id: int, cover_image_local_path: Optional[str]) -> UserOut:
    return _replace_image(user_id, cover_image_local_path, "cover_image", "Cover image")
