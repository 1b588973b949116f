"""
services/auth_service.py: Authentication use cases behind /auth/*.

Responsibilities:
  - User registration and credential verification (bcrypt)
  - Issuing a token pair on register/login
  - Refresh-token rotation and logout, delegated to TokenIssuer

Layer rules:
  - No imports from routes or schemas
  - No use of flask.request, flask.g, or HTTP status codes outside AppError
  - Never commits; the route commits once the service returns

Password storage:
  - Hashed with bcrypt (cost factor from config BCRYPT_LOG_ROUNDS, default 12)
  - Raw password is never stored, never logged
"""

from __future__ import annotations

import functools
import logging

import bcrypt
from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.user import User
from backend.app.services.token_issuer import token_issuer_for

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────

@functools.lru_cache(maxsize=None)
def _dummy_hash(rounds: int) -> bytes:
    """
    Hash checked when the identifier matches no user. Built at the configured
    cost so an unknown username takes as long as a wrong password.
    """
    return bcrypt.hashpw(b"dummy-password", bcrypt.gensalt(rounds=rounds))


def _build_user_dict(user: User) -> dict:
    """Serialises a User to a plain dict. No business logic."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "created_at": user.created_at.isoformat(),
    }


def _find_user(identifier: str, session: Session) -> User | None:
    column = User.email if "@" in identifier else User.username
    return session.execute(
        select(User).where(column == identifier)
    ).scalar_one_or_none()


def verify_credentials(identifier: str, password: str, session: Session) -> User:
    """
    Resolves a username or email plus password to a User.

    Raises:
      AppError(INVALID_CREDENTIALS, 401): unknown identifier or wrong password.
      Same error for both to avoid username enumeration.
    """
    user = _find_user(identifier, session)
    if user is not None:
        stored_hash = user.password_hash.encode("utf-8")
    else:
        stored_hash = _dummy_hash(current_app.config.get("BCRYPT_LOG_ROUNDS", 12))

    if not bcrypt.checkpw(password.encode("utf-8"), stored_hash) or user is None:
        logger.info("Login failed for identifier %r", identifier)
        raise AppError(
            ErrorCode.INVALID_CREDENTIALS,
            "The username or password is incorrect.",
            401,
        )
    return user


# ── Public service functions ───────────────────────────────────────────────

def register_user(
        username: str,
        email: str,
        password: str,
        session: Session,
) -> dict:
    """
    Creates a new user account and issues an access + refresh token pair.

    Raises:
      AppError(DUPLICATE_EMAIL, 409)   : email already registered
      AppError(DUPLICATE_USERNAME, 409): username already taken

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    existing_email = session.execute(
        select(User).where(User.email == email)
    ).scalar_one_or_none()
    if existing_email is not None:
        raise AppError(
            ErrorCode.DUPLICATE_EMAIL,
            f"The email address '{email}' is already registered.",
            409,
            field="email",
        )

    existing_username = session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()
    if existing_username is not None:
        raise AppError(
            ErrorCode.DUPLICATE_USERNAME,
            f"The username '{username}' is already taken.",
            409,
            field="username",
        )

    rounds = current_app.config.get("BCRYPT_LOG_ROUNDS", 12)
    password_hash = bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds),
    ).decode("utf-8")

    user = User(
        username=username,
        email=email,
        password_hash=password_hash,
    )
    session.add(user)
    session.flush()  # populate user.id before creating refresh token

    pair = token_issuer_for(session).issue_pair(user.id)
    logger.info("Registered user %s", user.id)

    return {
        "user": _build_user_dict(user),
        **pair.to_dict(),
    }


def login_user(
        identifier: str,
        password: str,
        session: Session,
) -> dict:
    """
    Validates credentials and issues a new access + refresh token pair.

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    user = verify_credentials(identifier, password, session)
    pair = token_issuer_for(session).issue_pair(user.id)
    logger.info("User %s logged in", user.id)

    return {
        "user": _build_user_dict(user),
        **pair.to_dict(),
    }


def refresh_session(
        raw_refresh_token: str,
        session: Session,
) -> dict:
    """
    Rotates a refresh token: the presented token is revoked and a new
    access + refresh pair is returned. Presenting the old token again fails.

    Raises:
      AppError(REFRESH_TOKEN_NOT_FOUND | REFRESH_TOKEN_REVOKED |
               REFRESH_TOKEN_EXPIRED, 401)

    Returns: {"access_token": "...", "refresh_token": "..."}
    """
    return token_issuer_for(session).rotate(raw_refresh_token).to_dict()


def logout_user(
        raw_refresh_token: str,
        session: Session,
) -> None:
    """
    Revokes a refresh token. Idempotent: an unknown or already-revoked token
    is not an error, so a client can always complete its local logout.

    Access tokens are stateless and expire naturally.
    """
    token_issuer_for(session).revoke(raw_refresh_token)


def get_current_user(user_id: int, session: Session) -> dict:
    """
    Returns the profile of the currently authenticated user.

    Raises:
      AppError(USER_NOT_FOUND, 404): user_id from JWT no longer exists in DB.
    """
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} not found.",
            404,
        )
    return _build_user_dict(user)
