"""
realtime/connection_auth.py: Authentication for persistent connections.

The transport (socket server, websocket layer) is not part of this package.
It calls into ConnectionAuthRegistry at three points:

  handshake(sid, auth_params)  : at connect time; raises AppError to refuse
  reauthenticate(sid, token)   : when the client pushes a refreshed token
  sweep()                      : periodically, to catch mid-session expiry
                                 (start_sweeper() runs it on a timer thread)

The registry is built through app.extensions["connection_auth_factory"](emit),
where `emit(sid, event, payload)` sends an event to one connection. A
connection whose token stops verifying receives an explicit
AUTH_ERROR_EVENT carrying the error code and a `refreshable` flag, so the
client can refresh and reconnect instead of treating the drop as a network
failure. The registry then forgets the connection; the transport is expected
to close it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from backend.app.errors import REFRESHABLE_CODES, AppError, ErrorCode
from backend.app.middleware.auth_middleware import AuthGateway

logger = logging.getLogger(__name__)

AUTH_ERROR_EVENT = "auth_error"

Emitter = Callable[[str, str, dict], None]


@dataclass
class ConnectionSession:
    sid: str
    user_id: int
    expires_at: datetime
    client_type: str | None = None
    token: str = field(default="", repr=False)


def auth_error_payload(error: AppError) -> dict:
    """Body of the auth_error event. `refreshable` tells the client whether to rotate."""
    return {
        "code": error.code,
        "message": error.message,
        "refreshable": error.code in REFRESHABLE_CODES,
    }


class ConnectionAuthRegistry:

    def __init__(
            self,
            gateway: AuthGateway,
            emit: Emitter,
            sweep_interval: timedelta = timedelta(seconds=30),
    ) -> None:
        self._gateway = gateway
        self._emit = emit
        self._sweep_interval = sweep_interval
        self._sessions: dict[str, ConnectionSession] = {}
        self._lock = threading.Lock()

    def handshake(self, sid: str, auth_params: Mapping[str, Any] | None) -> ConnectionSession:
        """
        Verifies the access token carried in the handshake auth parameters.

        Raises AppError(TOKEN_MISSING | TOKEN_EXPIRED | TOKEN_INVALID); the
        transport turns that into a refused connection with the same code.
        """
        params = auth_params or {}
        token = params.get("token")
        if not token:
            raise AppError(
                ErrorCode.TOKEN_MISSING,
                "Connection handshake must carry an access token.",
                401,
            )

        claims = self._gateway.authenticate(token)
        session = ConnectionSession(
            sid=sid,
            user_id=claims.subject_id,
            expires_at=claims.expires_at,
            client_type=params.get("client_type"),
            token=token,
        )
        with self._lock:
            self._sessions[sid] = session

        logger.info(
            "Connection %s authenticated for user %s (client_type=%s)",
            sid,
            session.user_id,
            session.client_type,
        )
        return session

    def reauthenticate(self, sid: str, token: str) -> ConnectionSession:
        """
        Replaces the credential of an open connection.

        On failure the connection receives an auth_error and is forgotten,
        then the AppError is re-raised to the transport.
        """
        with self._lock:
            session = self._sessions.get(sid)
        if session is None:
            raise AppError(
                ErrorCode.TOKEN_INVALID,
                "Unknown connection; perform a full handshake.",
                401,
            )

        try:
            claims = self._gateway.authenticate(token)
            if claims.subject_id != session.user_id:
                raise AppError(
                    ErrorCode.TOKEN_INVALID,
                    "A connection cannot switch to another user's token.",
                    401,
                )
        except AppError as error:
            self._fail(sid, error)
            raise

        with self._lock:
            # A sweep may have dropped the connection while the token was checked.
            if self._sessions.get(sid) is not session:
                raise AppError(
                    ErrorCode.TOKEN_INVALID,
                    "The connection was closed during reauthentication; perform a full handshake.",
                    401,
                )
            session.token = token
            session.expires_at = claims.expires_at
        return session

    def sweep(self, now: datetime | None = None) -> list[str]:
        """
        Signals every connection whose access token has expired.

        Returns the sids that received an auth_error.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [s.sid for s in self._sessions.values() if s.expires_at <= now]

        error = AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The access token for this connection has expired.",
            401,
        )
        for sid in expired:
            self._fail(sid, error)
        return expired

    def start_sweeper(self) -> threading.Event:
        """
        Runs sweep() every sweep_interval on a daemon thread.

        Returns the event that stops the thread once set.
        """
        stop = threading.Event()

        def _loop() -> None:
            while not stop.wait(self._sweep_interval.total_seconds()):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Connection auth sweep failed")

        threading.Thread(target=_loop, name="connection-auth-sweeper", daemon=True).start()
        return stop

    def disconnect(self, sid: str) -> None:
        with self._lock:
            self._sessions.pop(sid, None)

    def get(self, sid: str) -> ConnectionSession | None:
        with self._lock:
            return self._sessions.get(sid)

    def _fail(self, sid: str, error: AppError) -> None:
        with self._lock:
            self._sessions.pop(sid, None)
        logger.info("Connection %s auth error: %s", sid, error.code)
        self._emit(sid, AUTH_ERROR_EVENT, auth_error_payload(error))
