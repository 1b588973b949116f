"""Shared fixtures for session client tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest

from client.session_client import SessionClient
from client.session_state import TokenPair

BASE_URL = "http://api.test/api/v1"


def error_response(status: int, code: str, message: str = "error") -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


def pair_response(access: str, refresh: str, user: dict | None = None) -> httpx.Response:
    data: dict = {"access_token": access, "refresh_token": refresh}
    if user is not None:
        data["user"] = user
    return httpx.Response(200, json={"data": data, "warnings": []})


class FakeAuthApi:
    """
    Stands in for AuthApi so tests control when and how a refresh completes.

    Each refresh() call pops the next outcome: a TokenPair is returned, an
    exception is raised. While `gate` is clear, refresh() blocks.
    """

    def __init__(self) -> None:
        self.refresh_calls: list[str] = []
        self.logout_calls: list[str] = []
        self.outcomes: list[TokenPair | Exception] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.logout_error: Exception | None = None

    async def refresh(self, refresh_token: str) -> TokenPair:
        self.refresh_calls.append(refresh_token)
        await self.gate.wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def logout(self, refresh_token: str) -> None:
        self.logout_calls.append(refresh_token)
        if self.logout_error is not None:
            raise self.logout_error


@pytest.fixture
async def http_client() -> AsyncIterator[httpx.AsyncClient]:
    """Real httpx client for respx mocking."""
    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        yield client


@pytest.fixture
def fake_auth_api() -> FakeAuthApi:
    return FakeAuthApi()


@pytest.fixture
async def session(http_client, fake_auth_api) -> AsyncIterator[SessionClient]:
    """SessionClient signed in with pair (access-1, refresh-1); refresh goes to FakeAuthApi."""
    client = SessionClient(http_client, auth_api=fake_auth_api, refresh_timeout=1.0)
    await client.restore("access-1", "refresh-1", subject={"id": 1})
    yield client
    await client.aclose()
