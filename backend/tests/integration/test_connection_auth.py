"""
tests/integration/test_connection_auth.py: the connection auth registry the
app factory exposes to a socket transport.
"""

from __future__ import annotations

import pytest

from backend.app.errors import AppError, ErrorCode

from .conftest import refresh, register


def _registry(app, emitted: list):
    factory = app.extensions["connection_auth_factory"]
    return factory(lambda sid, event, payload: emitted.append((sid, event, payload)))


def test_factory_registry_accepts_issued_access_token(app, client):
    data = register(client, "alice")
    registry = _registry(app, [])

    session = registry.handshake("sid-1", {"token": data["access_token"], "client_type": "web"})

    assert session.user_id == data["user"]["id"]
    assert registry.get("sid-1") is session


def test_factory_registry_takes_rotated_token_on_reauthentication(app, client):
    data = register(client, "alice")
    registry = _registry(app, [])
    registry.handshake("sid-1", {"token": data["access_token"]})

    rotated = refresh(client, data["refresh_token"]).get_json()["data"]
    session = registry.reauthenticate("sid-1", rotated["access_token"])

    assert session.token == rotated["access_token"]


def test_factory_registry_refuses_refresh_token_as_credential(app, client):
    data = register(client, "alice")
    registry = _registry(app, [])

    with pytest.raises(AppError) as exc_info:
        registry.handshake("sid-1", {"token": data["refresh_token"]})

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID
