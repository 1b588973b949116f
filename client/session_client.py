"""
client/session_client.py: Single-flight refresh coordinator.

SessionClient owns the token pair and the session phase. Every REST call
and the persistent connection obtain credentials through it, and every
refreshable failure they observe is funnelled into one shared refresh:

  AUTHENTICATED ──(first AccessExpired)──▶ REFRESHING
  REFRESHING ──(rotation ok)──────────────▶ AUTHENTICATED  new pair, waiters replay
  REFRESHING ──(refresh token unusable)───▶ UNAUTHENTICATED  waiters fail, logout event
  REFRESHING ──(timeout / network / 5xx)──▶ AUTHENTICATED  old pair kept, waiters fail

The phase, the token pair and the in-flight refresh future are only read or
written while holding `_lock`. The caller that moves the session into
REFRESHING creates the future and starts the refresh task inside the same
critical section, so a second refresh cannot start while one is pending;
every later observer attaches to the existing future.

Waiters await asyncio.shield(future): a cancelled caller stops waiting but
does not cancel the refresh other callers depend on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import httpx

from client.auth_api import AuthApi
from client.config import ClientSettings
from client.errors import (
    AccessExpiredError,
    AccessInvalidError,
    RefreshTransientError,
    SessionError,
    SessionExpiredError,
    SessionTerminatedError,
    access_error_from_response,
)
from client.events import CREDENTIALS_UPDATED, SESSION_TERMINATED, SessionEvents
from client.session_state import SessionPhase, SessionState, TokenPair

logger = logging.getLogger(__name__)


def _mark_retrieved(future: asyncio.Future) -> None:
    # A refresh whose only waiter was cancelled must not log
    # "exception was never retrieved".
    if not future.cancelled():
        future.exception()


class SessionClient:

    def __init__(
            self,
            http_client: httpx.AsyncClient,
            *,
            refresh_timeout: float = 10.0,
            auth_api: AuthApi | None = None,
            events: SessionEvents | None = None,
            owns_http_client: bool = False,
    ) -> None:
        self._http = http_client
        self._auth_api = auth_api or AuthApi(http_client)
        self._refresh_timeout = refresh_timeout
        self._owns_http_client = owns_http_client
        self.events = events or SessionEvents()

        self._state = SessionState()
        self._lock = asyncio.Lock()
        self._refresh_future: asyncio.Future[str] | None = None
        self._refresh_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: ClientSettings | None = None) -> "SessionClient":
        settings = settings or ClientSettings.from_env()
        http_client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )
        return cls(
            http_client,
            refresh_timeout=settings.refresh_timeout,
            owns_http_client=True,
        )

    # ── Accessors ──────────────────────────────────────────────────────────

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def tokens(self) -> TokenPair | None:
        return self._state.tokens

    @property
    def access_token(self) -> str | None:
        tokens = self._state.tokens
        return tokens.access_token if tokens is not None else None

    @property
    def subject(self) -> dict | None:
        return self._state.subject

    # ── Session lifecycle ──────────────────────────────────────────────────

    async def login(self, identifier: str, password: str) -> dict:
        """Signs in with a username or email. Returns the user dict."""
        tokens, user = await self._auth_api.login(identifier, password)
        await self._install(tokens, user)
        logger.info("Signed in as user %s", user.get("id"))
        return user

    async def register(self, username: str, email: str, password: str) -> dict:
        tokens, user = await self._auth_api.register(username, email, password)
        await self._install(tokens, user)
        logger.info("Registered and signed in as user %s", user.get("id"))
        return user

    async def restore(
            self,
            access_token: str,
            refresh_token: str,
            subject: dict | None = None,
    ) -> None:
        """Re-installs a previously persisted pair, e.g. at process start."""
        await self._install(TokenPair(access_token, refresh_token), subject)

    async def logout(self) -> None:
        """
        Ends the session locally, then revokes the refresh token server-side.

        Pending waiters fail with SessionTerminatedError. A failed server-side
        revocation is logged; the local session is gone either way.

        Logging out while REFRESHING cancels the rotation and revokes the
        pre-rotation token. If the server had already committed that rotation,
        its successor record is never revoked; it was never handed to the
        caller and lapses at its TTL.
        """
        async with self._lock:
            tokens = self._state.tokens
            self._abort_refresh_locked(SessionTerminatedError("The session was logged out."))
            self._state.clear()

        if tokens is not None:
            try:
                await self._auth_api.logout(tokens.refresh_token)
            except (httpx.HTTPError, SessionError) as exc:
                logger.warning("Server-side logout failed: %r", exc)

        await self.events.publish(SESSION_TERMINATED, None)

    async def aclose(self) -> None:
        """
        Shutdown: rejects pending waiters, announces the end of a live session
        and closes the owned HTTP client. The refresh token is not revoked.
        """
        async with self._lock:
            had_session = self._state.tokens is not None
            self._abort_refresh_locked(SessionTerminatedError("The session client was closed."))
            self._state.clear()

        if had_session:
            await self.events.publish(SESSION_TERMINATED, None)

        if self._owns_http_client:
            await self._http.aclose()

    # ── Operations ─────────────────────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Sends an authenticated request through the shared httpx client.

        An AccessExpired answer triggers (or joins) the single-flight refresh
        and the request is replayed once with the new access token. Request
        bodies must be replayable (json=, data=, content=bytes).

        Raises:
          AccessInvalidError    : token rejected as invalid; no refresh tried
          SessionExpiredError   : refresh token unusable; session is over
          RefreshTransientError : refresh did not complete; retry later
          SessionTerminatedError: no session, or logged out while waiting
        """
        token = await self._usable_access_token()
        response = await self._send(method, url, token, kwargs)

        error = access_error_from_response(response)
        if error is None:
            return response
        if not isinstance(error, AccessExpiredError):
            raise error

        fresh_token = await self._fresh_access_token(stale_token=token)
        logger.debug("Replaying %s %s with refreshed credentials", method, url)
        response = await self._send(method, url, fresh_token, kwargs)

        error = access_error_from_response(response)
        if error is not None:
            raise error
        return response

    async def refresh(self) -> str:
        """
        Manual refresh, e.g. a retry after RefreshTransientError.
        Joins an in-flight refresh if there is one. Returns the access token.
        """
        async with self._lock:
            self._ensure_session_locked()
            stale = self._state.tokens.access_token
        return await self._fresh_access_token(stale_token=stale)

    async def handle_connection_auth_error(
            self,
            payload: Mapping[str, Any],
            used_token: str | None = None,
    ) -> str:
        """
        Entry point for an auth_error event from the persistent connection.

        `used_token` is the access token the connection authenticated with.
        Returns the access token to reconnect with.

        Raises AccessInvalidError for a non-refreshable error; otherwise the
        same errors as refresh().
        """
        code = payload.get("code")
        refreshable = payload.get("refreshable", code == "TOKEN_EXPIRED")
        if not refreshable:
            raise AccessInvalidError(
                payload.get("message") or "The connection token was rejected.",
                code=code,
            )

        if used_token is None:
            async with self._lock:
                self._ensure_session_locked()
                used_token = self._state.tokens.access_token
        return await self._fresh_access_token(stale_token=used_token)

    # ── Single-flight core ─────────────────────────────────────────────────

    async def _usable_access_token(self) -> str:
        """Current access token; waits for an in-flight refresh first."""
        async with self._lock:
            self._ensure_session_locked()
            future = self._refresh_future
            if future is None:
                return self._state.tokens.access_token
        return await asyncio.shield(future)

    async def _fresh_access_token(self, stale_token: str) -> str:
        """
        Returns an access token newer than `stale_token`.

        Starts the refresh if none is in flight and `stale_token` is still
        the installed token; joins the in-flight one otherwise. A caller
        whose token was already replaced gets the current token directly.
        """
        async with self._lock:
            self._ensure_session_locked()
            if self._refresh_future is None:
                if self._state.tokens.access_token != stale_token:
                    return self._state.tokens.access_token
                self._start_refresh_locked()
            future = self._refresh_future
        return await asyncio.shield(future)

    def _start_refresh_locked(self) -> None:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)

        self._refresh_future = future
        self._state.phase = SessionPhase.REFRESHING
        self._refresh_task = asyncio.create_task(
            self._run_refresh(future, self._state.tokens.refresh_token)
        )
        logger.info("Access token expired; refreshing session")

    async def _run_refresh(self, future: asyncio.Future[str], refresh_token: str) -> None:
        try:
            tokens = await asyncio.wait_for(
                self._auth_api.refresh(refresh_token),
                timeout=self._refresh_timeout,
            )
        except asyncio.TimeoutError:
            await self._refresh_failed(
                future,
                RefreshTransientError(
                    f"Refresh did not complete within {self._refresh_timeout}s.",
                ),
            )
        except SessionExpiredError as exc:
            await self._session_expired(future, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # RefreshTransientError, AuthRequestError, or anything unexpected:
            # the rotation did not commit, so the old pair stays installed.
            await self._refresh_failed(future, exc)
        else:
            await self._refresh_succeeded(future, tokens)

    async def _refresh_succeeded(self, future: asyncio.Future[str], tokens: TokenPair) -> None:
        async with self._lock:
            if future is not self._refresh_future:
                return  # aborted by logout/close while the call was in flight
            # Installed before the future resolves: no replay can run ahead
            # of the credential update.
            self._state.install(tokens)
            self._refresh_future = None
            self._refresh_task = None
            future.set_result(tokens.access_token)

        logger.info("Session refreshed")
        await self.events.publish(CREDENTIALS_UPDATED, tokens)

    async def _refresh_failed(self, future: asyncio.Future[str], error: Exception) -> None:
        async with self._lock:
            if future is not self._refresh_future:
                return
            self._state.phase = SessionPhase.AUTHENTICATED
            self._refresh_future = None
            self._refresh_task = None
            future.set_exception(error)

        logger.warning("Session refresh failed, keeping current tokens: %r", error)

    async def _session_expired(self, future: asyncio.Future[str], error: SessionExpiredError) -> None:
        async with self._lock:
            if future is not self._refresh_future:
                return
            self._state.clear()
            self._refresh_future = None
            self._refresh_task = None
            future.set_exception(error)

        logger.warning("Session ended by server: %s", error.code)
        await self.events.publish(SESSION_TERMINATED, error)

    def _abort_refresh_locked(self, error: SessionTerminatedError) -> None:
        future, task = self._refresh_future, self._refresh_task
        self._refresh_future = None
        self._refresh_task = None
        if future is not None and not future.done():
            future.set_exception(error)
        if task is not None and not task.done():
            task.cancel()

    # ── Helpers ────────────────────────────────────────────────────────────

    async def _install(self, tokens: TokenPair, subject: dict | None) -> None:
        async with self._lock:
            # A new login supersedes a refresh of the previous session.
            self._abort_refresh_locked(SessionTerminatedError("Superseded by a new sign-in."))
            self._state.install(tokens, subject)
        await self.events.publish(CREDENTIALS_UPDATED, tokens)

    def _ensure_session_locked(self) -> None:
        if self._state.phase is SessionPhase.UNAUTHENTICATED or self._state.tokens is None:
            raise SessionTerminatedError("Not signed in.")

    async def _send(
            self,
            method: str,
            url: str,
            token: str,
            kwargs: dict[str, Any],
    ) -> httpx.Response:
        headers = dict(kwargs.get("headers") or {})
        headers["Authorization"] = f"Bearer {token}"
        options = {key: value for key, value in kwargs.items() if key != "headers"}
        return await self._http.request(method, url, headers=headers, **options)
