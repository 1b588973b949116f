"""
services/refresh_store.py: Persistence for refresh-token hash records.

The only code path allowed to write the refresh_tokens table. TokenIssuer
owns the rules (what to verify, when to revoke); this module owns the SQL.

Layer rules:
  - No flask.request, flask.g, or HTTP status codes.
  - Never commits. The route commits the session once the whole unit of work
    (e.g. revoke-old + create-new during rotation) has been flushed.
  - Receives hashes only. A raw refresh token never reaches this module.

Revocation is a conditional UPDATE (WHERE revoked = false) and reports
whether this caller performed the flip. Under concurrent rotation of the
same token exactly one UPDATE matches the row; PostgreSQL blocks the second
writer on the row lock and re-evaluates its WHERE clause after the first
commits, so the loser sees rowcount 0.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from backend.app.models.refresh_token import RefreshToken

logger = logging.getLogger(__name__)


class RefreshStore:

    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, user_id: int, token_hash: str, expires_at: datetime) -> RefreshToken:
        """Persists a new, unrevoked record and flushes so it has an id."""
        record = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            revoked=False,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_by_hash(self, token_hash: str) -> RefreshToken | None:
        return self._session.execute(
            select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        ).scalar_one_or_none()

    def revoke_if_active(self, record_id: int) -> bool:
        """
        Flips revoked false -> true for one record.

        Returns True only for the caller whose UPDATE matched the row. A
        record that is already revoked (by a concurrent rotation, or by
        logout) returns False and is left untouched.
        """
        result = self._session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record_id, RefreshToken.revoked.is_(False))
            .values(revoked=True)
        )
        return result.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        """Deletes every record whose expires_at is in the past. Returns the count."""
        result = self._session.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired refresh token record(s)", purged)
        return purged
