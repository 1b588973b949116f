"""
middleware/auth_middleware.py: Access-token gateway and the @require_auth
decorator.

AuthGateway.verify_access_token() is the one verifier used by both REST
routes (through @require_auth) and the persistent-connection handshake
(realtime/connection_auth.py). It sorts every failure into exactly two
buckets:

  TOKEN_EXPIRED (401): signature valid, exp in the past. Refreshable: the
                        client rotates its refresh token and replays.
  TOKEN_INVALID (401): bad signature, malformed token, wrong type, bad sub.
                        Fatal for that request: rotating a refresh token
                        cannot repair a structurally bad access token.

PyJWT checks the signature before the registered claims, so
ExpiredSignatureError is only ever raised for a correctly signed token.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Verifies it through the app's AuthGateway
  3. Attaches user_id (int) to flask.g for the duration of the request

Error codes:
  TOKEN_MISSING  (401): no Authorization header
  TOKEN_INVALID  (401): malformed header or any fatal verification failure
  TOKEN_EXPIRED  (401): valid token but exp claim is in the past
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import jwt
from flask import current_app, g, request

from backend.app.errors import AppError, ErrorCode
from backend.app.services.token_issuer import ACCESS_TOKEN_TYPE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    subject_id: int
    expires_at: datetime


class AuthGateway:

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    @classmethod
    def from_config(cls, config) -> "AuthGateway":
        return cls(
            secret_key=config["JWT_SECRET_KEY"],
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
        )

    def decode(self, raw_token: str) -> dict:
        """
        Returns the verified claims of an access token.

        Raises AppError(TOKEN_EXPIRED) or AppError(TOKEN_INVALID).
        """
        try:
            payload = jwt.decode(
                raw_token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AppError(
                ErrorCode.TOKEN_EXPIRED,
                "The access token has expired. Use POST /auth/refresh to obtain a new one.",
                401,
            )
        except jwt.InvalidTokenError as exc:
            # Covers: bad signature, malformed token, missing claims, etc.
            # Logged, not alerted on.
            logger.warning("Rejected access token: %s", exc.__class__.__name__)
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "The access token is invalid or has been tampered with.",
                401,
            )

        if payload.get("type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "The presented token is not an access token.",
                401,
            )
        return payload

    def authenticate(self, raw_token: str) -> AccessClaims:
        payload = self.decode(raw_token)

        try:
            subject_id = int(payload["sub"])
        except (TypeError, ValueError):
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "The 'sub' claim in the access token is not a valid user ID.",
                401,
            )
        return AccessClaims(
            subject_id=subject_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify_access_token(self, raw_token: str) -> int:
        """Returns the subject (user) id of a valid access token."""
        return self.authenticate(raw_token).subject_id


def get_gateway() -> AuthGateway:
    """Returns the AuthGateway registered on the current app by create_app()."""
    return current_app.extensions["auth_gateway"]


def parse_bearer_header(auth_header: str) -> str:
    """
    Extracts the token from an "Authorization: Bearer <token>" value.

    Raises AppError(TOKEN_MISSING) for an empty header and
    AppError(TOKEN_INVALID) for any other shape.
    """
    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )
    return parts[1]


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces access-token authentication.

    Attaches the authenticated user's ID to flask.g.user_id.
    Raises AppError for all auth failures; the global error handler converts
    these to the correct JSON response. Routes never catch AppError.

    Usage:
        @auth_bp.route("/me")
        @require_auth
        def me():
            user_id = g.user_id  # always an int when this runs
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _authenticate_request() -> None:
    raw_token = parse_bearer_header(request.headers.get("Authorization", ""))
    g.user_id = get_gateway().verify_access_token(raw_token)
