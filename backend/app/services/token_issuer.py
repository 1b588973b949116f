"""
services/token_issuer.py: Access/refresh token issuance, verification,
rotation and revocation.

Token design:
  - Access token: JWT, HS256, sub = user_id (str), type = "access".
    Stateless: never persisted, no revocation list. A leaked access token is
    usable until exp; the TTL bounds that window.
  - Refresh token: 256 random bits (secrets.token_urlsafe(32)), returned to
    the client once. Only its SHA-256 hex digest is stored (RefreshStore).
  - Rotation: every successful POST /auth/refresh revokes the presented
    record and creates its successor in the same DB transaction. A record is
    good for exactly one rotation.

Layer rules:
  - No flask.request, flask.g, or HTTP routing concerns.
  - TokenIssuer itself never touches current_app; token_issuer_for() is the
    single place that reads Flask config, so the class is unit-testable with
    a mocked store.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.refresh_token import RefreshToken
from backend.app.services.refresh_store import RefreshStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
        }


class PurgeSchedule:
    """Throttles the opportunistic TTL sweep to one run per `interval`."""

    def __init__(self, interval: timedelta) -> None:
        self._interval = interval
        self._last_run: datetime | None = None
        self._lock = threading.Lock()

    def due(self, now: datetime) -> bool:
        with self._lock:
            if self._last_run is not None and now - self._last_run < self._interval:
                return False
            self._last_run = now
            return True


# ── Private helpers ────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for DateTime(timezone=True).
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_refresh_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw refresh token. The only form ever stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ── TokenIssuer ────────────────────────────────────────────────────────────

class TokenIssuer:

    def __init__(
            self,
            store: RefreshStore,
            *,
            secret_key: str,
            access_ttl: timedelta,
            refresh_ttl: timedelta,
            algorithm: str = "HS256",
            purge_schedule: PurgeSchedule | None = None,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._purge_schedule = purge_schedule

    def issue_access_token(self, subject_id: int) -> str:
        """
        Creates a signed JWT access token.
        Payload: sub (user_id as str), iat, exp, jti, type.
        """
        now = _utcnow()
        payload = {
            "sub": str(subject_id),
            "iat": now,
            "exp": now + self._access_ttl,
            # Keeps two tokens minted in the same second distinct.
            "jti": secrets.token_hex(8),
            "type": ACCESS_TOKEN_TYPE,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def issue_refresh_token(self, subject_id: int) -> tuple[str, RefreshToken]:
        """
        Creates a refresh token record and returns (raw_token, record).

        The raw value leaves this function exactly once and is never stored.
        """
        now = _utcnow()
        self._purge_if_due(now)

        raw_token = secrets.token_urlsafe(32)
        record = self._store.add(
            user_id=subject_id,
            token_hash=hash_refresh_token(raw_token),
            expires_at=now + self._refresh_ttl,
        )
        return raw_token, record

    def issue_pair(self, subject_id: int) -> TokenPair:
        raw_refresh, _record = self.issue_refresh_token(subject_id)
        return TokenPair(
            access_token=self.issue_access_token(subject_id),
            refresh_token=raw_refresh,
        )

    def verify_refresh_token(self, raw_token: str) -> int:
        """
        Returns the subject id bound to a usable refresh token.

        Raises:
          AppError(REFRESH_TOKEN_NOT_FOUND, 401): no record for this hash
          AppError(REFRESH_TOKEN_REVOKED, 401)  : rotated or logged out
          AppError(REFRESH_TOKEN_EXPIRED, 401)  : past expires_at
        """
        return self._load_usable(raw_token).user_id

    def rotate(self, raw_token: str) -> TokenPair:
        """
        Exchanges a refresh token for a new access + refresh pair.

        verify -> revoke old -> create new, inside the caller's transaction.
        The revoke is conditional; if another rotation of the same token got
        there first this call fails with REFRESH_TOKEN_REVOKED and creates
        nothing.
        """
        record = self._load_usable(raw_token)

        if not self._store.revoke_if_active(record.id):
            logger.warning(
                "Concurrent rotation lost for refresh token record %s (user %s)",
                record.id,
                record.user_id,
            )
            raise AppError(
                ErrorCode.REFRESH_TOKEN_REVOKED,
                "The refresh token has already been used or revoked.",
                401,
            )

        pair = self.issue_pair(record.user_id)
        logger.info("Rotated refresh token record %s for user %s", record.id, record.user_id)
        return pair

    def revoke(self, raw_token: str) -> bool:
        """
        Logout path. Idempotent: unknown, expired or already-revoked tokens
        return False without raising.
        """
        record = self._store.get_by_hash(hash_refresh_token(raw_token))
        if record is None or record.revoked:
            return False
        revoked = self._store.revoke_if_active(record.id)
        if revoked:
            logger.info("Revoked refresh token record %s for user %s", record.id, record.user_id)
        return revoked

    # ── Internals ──────────────────────────────────────────────────────────

    def _load_usable(self, raw_token: str) -> RefreshToken:
        record = self._store.get_by_hash(hash_refresh_token(raw_token))

        if record is None:
            raise AppError(
                ErrorCode.REFRESH_TOKEN_NOT_FOUND,
                "The refresh token is not recognised.",
                401,
            )
        if record.revoked:
            logger.warning(
                "Revoked refresh token presented for record %s (user %s)",
                record.id,
                record.user_id,
            )
            raise AppError(
                ErrorCode.REFRESH_TOKEN_REVOKED,
                "The refresh token has already been used or revoked.",
                401,
            )
        if _as_utc(record.expires_at) <= _utcnow():
            raise AppError(
                ErrorCode.REFRESH_TOKEN_EXPIRED,
                "The refresh token has expired. Please sign in again.",
                401,
            )
        return record

    def _purge_if_due(self, now: datetime) -> None:
        if self._purge_schedule is not None and self._purge_schedule.due(now):
            self._store.purge_expired(now)


def token_issuer_for(session: Session) -> TokenIssuer:
    """Builds a TokenIssuer bound to `session` from the current app's config."""
    config = current_app.config
    return TokenIssuer(
        RefreshStore(session),
        secret_key=config["JWT_SECRET_KEY"],
        algorithm=config.get("JWT_ALGORITHM", "HS256"),
        access_ttl=config["JWT_ACCESS_TOKEN_EXPIRES"],
        refresh_ttl=config["JWT_REFRESH_TOKEN_EXPIRES"],
        purge_schedule=current_app.extensions.get("refresh_purge_schedule"),
    )
