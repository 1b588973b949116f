"""
client/auth_api.py: Thin httpx wrapper over the /auth endpoints.

Raises the client/errors.py taxonomy. In particular refresh() sorts every
failure into either SessionExpiredError (server said the refresh token is
unusable) or RefreshTransientError (the exchange did not complete), because
SessionClient reacts to those two very differently.
"""

from __future__ import annotations

import httpx

from client.errors import (
    AuthRequestError,
    RefreshTransientError,
    SessionExpiredError,
    classify_error_code,
    read_error,
)
from client.session_state import TokenPair


def _token_pair(data: dict) -> TokenPair:
    return TokenPair(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
    )


def _raise_for_auth_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    code, message = read_error(response)
    raise AuthRequestError(message, code=code, status_code=response.status_code)


class AuthApi:
    """Calls relative to the base_url of the injected httpx.AsyncClient."""

    def __init__(self, http_client: httpx.AsyncClient, prefix: str = "/auth") -> None:
        self._client = http_client
        self._prefix = prefix

    async def login(self, identifier: str, password: str) -> tuple[TokenPair, dict]:
        field_name = "email" if "@" in identifier else "username"
        response = await self._client.post(
            f"{self._prefix}/login",
            json={field_name: identifier, "password": password},
        )
        _raise_for_auth_error(response)
        data = response.json()["data"]
        return _token_pair(data), data["user"]

    async def register(self, username: str, email: str, password: str) -> tuple[TokenPair, dict]:
        response = await self._client.post(
            f"{self._prefix}/register",
            json={"username": username, "email": email, "password": password},
        )
        _raise_for_auth_error(response)
        data = response.json()["data"]
        return _token_pair(data), data["user"]

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchanges a refresh token for a rotated pair.

        Raises:
          RefreshNotFoundError / RefreshRevokedError / RefreshExpiredError
          RefreshTransientError: timeout, connection failure, or 5xx
          AuthRequestError     : any other non-2xx answer
        """
        try:
            response = await self._client.post(
                f"{self._prefix}/refresh",
                json={"refresh_token": refresh_token},
            )
        except httpx.TransportError as exc:
            # TimeoutException is a TransportError subclass.
            raise RefreshTransientError(
                f"Refresh request failed: {exc.__class__.__name__}",
            ) from exc

        if response.status_code >= 500:
            code, message = read_error(response)
            raise RefreshTransientError(message, code=code, status_code=response.status_code)

        if not response.is_success:
            code, message = read_error(response)
            error_class = classify_error_code(code)
            if error_class is not None and issubclass(error_class, SessionExpiredError):
                raise error_class(message, code=code, status_code=response.status_code)
            raise AuthRequestError(message, code=code, status_code=response.status_code)

        return _token_pair(response.json()["data"])

    async def logout(self, refresh_token: str) -> None:
        response = await self._client.post(
            f"{self._prefix}/logout",
            json={"refresh_token": refresh_token},
        )
        _raise_for_auth_error(response)
