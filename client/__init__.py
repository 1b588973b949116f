"""
client: Async session client for the sessionguard API.

    session = SessionClient.from_settings()
    await session.login("alice", "Password1")
    resp = await session.request("GET", "/auth/me")
"""

from client.config import ClientSettings
from client.connection import ConnectionSupervisor, PersistentConnection
from client.errors import (
    AccessExpiredError,
    AccessInvalidError,
    AuthRequestError,
    RefreshExpiredError,
    RefreshNotFoundError,
    RefreshRevokedError,
    RefreshTransientError,
    SessionError,
    SessionExpiredError,
    SessionTerminatedError,
)
from client.events import CREDENTIALS_UPDATED, SESSION_TERMINATED, SessionEvents
from client.session_client import SessionClient
from client.session_state import SessionPhase, TokenPair

__all__ = [
    "AccessExpiredError",
    "AccessInvalidError",
    "AuthRequestError",
    "ClientSettings",
    "ConnectionSupervisor",
    "CREDENTIALS_UPDATED",
    "PersistentConnection",
    "RefreshExpiredError",
    "RefreshNotFoundError",
    "RefreshRevokedError",
    "RefreshTransientError",
    "SESSION_TERMINATED",
    "SessionClient",
    "SessionError",
    "SessionEvents",
    "SessionExpiredError",
    "SessionPhase",
    "SessionTerminatedError",
    "TokenPair",
]
