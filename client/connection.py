"""
client/connection.py: Keeps the persistent connection authenticated.

The transport itself (socket.io, websockets, ...) lives behind the
PersistentConnection interface. ConnectionSupervisor wires it to a
SessionClient:

  auth_error from the server  → SessionClient.handle_connection_auth_error,
                                then reconnect with the returned token
  credentials_updated         → re-authenticate the live connection
  session_terminated          → disconnect

An AccessExpired error on the connection therefore joins the same
single-flight refresh as concurrent REST calls.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Mapping

from client.errors import SessionError
from client.events import CREDENTIALS_UPDATED, SESSION_TERMINATED
from client.session_client import SessionClient
from client.session_state import TokenPair

logger = logging.getLogger(__name__)


class PersistentConnection(abc.ABC):
    """Transport adapter; implementations must be safe to disconnect twice."""

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        ...

    @abc.abstractmethod
    async def connect(self, access_token: str) -> None:
        """Opens the connection, presenting `access_token` in the handshake."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...

    @abc.abstractmethod
    async def update_auth(self, access_token: str) -> None:
        """Re-authenticates an open connection without reconnecting."""


class ConnectionSupervisor:

    def __init__(self, session: SessionClient, connection: PersistentConnection) -> None:
        self._session = session
        self._connection = connection
        self._lock = asyncio.Lock()
        self._active = False
        self._token: str | None = None
        self._unsubscribers: list = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def token(self) -> str | None:
        """The access token the connection last authenticated with."""
        return self._token

    async def start(self) -> None:
        """Subscribes to session events and opens the connection."""
        if self._active:
            return
        self._active = True
        self._unsubscribers = [
            self._session.events.subscribe(CREDENTIALS_UPDATED, self._on_credentials_updated),
            self._session.events.subscribe(SESSION_TERMINATED, self._on_session_terminated),
        ]
        await self._ensure_connected()

    async def stop(self) -> None:
        self._active = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        async with self._lock:
            await self._disconnect_locked()

    async def handle_auth_error(self, payload: Mapping[str, Any]) -> None:
        """
        Called by the transport when the server emits auth_error.

        The server drops the connection after emitting, so the connection is
        re-opened with a fresh token on success. SessionError propagates to
        the caller after the connection is closed.
        """
        used_token = self._token
        async with self._lock:
            await self._disconnect_locked()

        try:
            token = await self._session.handle_connection_auth_error(payload, used_token=used_token)
        except SessionError as exc:
            logger.warning("Connection auth could not be recovered: %r", exc)
            raise

        # The credentials_updated handler may already have reconnected.
        async with self._lock:
            if self._active and not self._connection.connected and self._session.access_token == token:
                await self._connect_locked(token)

    # ── Event handlers ─────────────────────────────────────────────────────

    async def _on_credentials_updated(self, tokens: TokenPair) -> None:
        async with self._lock:
            if not self._active:
                return
            if self._connection.connected:
                if self._token != tokens.access_token:
                    await self._connection.update_auth(tokens.access_token)
                    self._token = tokens.access_token
                    logger.debug("Connection re-authenticated with refreshed token")
            else:
                await self._connect_locked(tokens.access_token)

    async def _on_session_terminated(self, _error: SessionError | None) -> None:
        async with self._lock:
            await self._disconnect_locked()

    # ── Helpers ────────────────────────────────────────────────────────────

    async def _ensure_connected(self) -> None:
        token = self._session.access_token
        if token is None:
            return
        async with self._lock:
            if self._active and not self._connection.connected:
                await self._connect_locked(token)

    async def _connect_locked(self, token: str) -> None:
        await self._connection.connect(token)
        self._token = token
        logger.info("Persistent connection established")

    async def _disconnect_locked(self) -> None:
        if self._connection.connected:
            await self._connection.disconnect()
            logger.info("Persistent connection closed")
        self._token = None
