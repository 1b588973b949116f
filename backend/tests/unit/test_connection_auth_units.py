"""
Unit tests for ConnectionAuthRegistry (persistent-connection authentication).
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import jwt
import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.middleware.auth_middleware import AuthGateway
from backend.app.realtime.connection_auth import (
    AUTH_ERROR_EVENT,
    ConnectionAuthRegistry,
    auth_error_payload,
)

SECRET = "unit-test-secret-key-0123456789abcdef"


def _token(sub: str = "7", ttl: timedelta = timedelta(minutes=5)) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": sub, "iat": now, "exp": now + ttl, "type": "access"},
        SECRET,
        algorithm="HS256",
    )


@pytest.fixture
def emitted() -> list:
    return []


@pytest.fixture
def registry(emitted) -> ConnectionAuthRegistry:
    return ConnectionAuthRegistry(
        AuthGateway(SECRET),
        lambda sid, event, payload: emitted.append((sid, event, payload)),
    )


class TestHandshake:

    def test_valid_token_registers_connection(self, registry):
        session = registry.handshake("sid-1", {"token": _token(), "client_type": "web"})

        assert session.user_id == 7
        assert session.client_type == "web"
        assert registry.get("sid-1") is session

    def test_missing_token_is_refused(self, registry):
        with pytest.raises(AppError) as exc_info:
            registry.handshake("sid-1", {})
        assert exc_info.value.code == ErrorCode.TOKEN_MISSING
        assert registry.get("sid-1") is None

    def test_none_auth_params_is_refused(self, registry):
        with pytest.raises(AppError) as exc_info:
            registry.handshake("sid-1", None)
        assert exc_info.value.code == ErrorCode.TOKEN_MISSING

    def test_expired_token_is_refused_as_expired(self, registry):
        with pytest.raises(AppError) as exc_info:
            registry.handshake("sid-1", {"token": _token(ttl=timedelta(seconds=-5))})
        assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED

    def test_invalid_token_is_refused_as_invalid(self, registry):
        with pytest.raises(AppError) as exc_info:
            registry.handshake("sid-1", {"token": "bad.token.here"})
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID


class TestReauthenticate:

    def test_fresh_token_replaces_expiry(self, registry):
        registry.handshake("sid-1", {"token": _token(ttl=timedelta(minutes=1))})

        session = registry.reauthenticate("sid-1", _token(ttl=timedelta(minutes=30)))

        assert session.expires_at > datetime.now(timezone.utc) + timedelta(minutes=20)

    def test_unknown_connection_is_invalid(self, registry, emitted):
        with pytest.raises(AppError) as exc_info:
            registry.reauthenticate("nope", _token())
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID
        assert emitted == []

    def test_other_users_token_fails_and_drops_connection(self, registry, emitted):
        registry.handshake("sid-1", {"token": _token(sub="7")})

        with pytest.raises(AppError):
            registry.reauthenticate("sid-1", _token(sub="8"))

        assert registry.get("sid-1") is None
        sid, event, payload = emitted[0]
        assert (sid, event) == ("sid-1", AUTH_ERROR_EVENT)
        assert payload["code"] == ErrorCode.TOKEN_INVALID
        assert payload["refreshable"] is False

    def test_expired_token_emits_refreshable_error(self, registry, emitted):
        registry.handshake("sid-1", {"token": _token()})

        with pytest.raises(AppError):
            registry.reauthenticate("sid-1", _token(ttl=timedelta(seconds=-5)))

        assert emitted[0][2]["refreshable"] is True

    def test_connection_swept_mid_check_is_not_revived(self, registry, emitted):
        registry.handshake("sid-1", {"token": _token(ttl=timedelta(minutes=1))})
        authenticate = registry._gateway.authenticate

        def authenticate_while_swept(token):
            claims = authenticate(token)
            registry.sweep(now=datetime.now(timezone.utc) + timedelta(minutes=5))
            return claims

        with patch.object(registry._gateway, "authenticate", side_effect=authenticate_while_swept):
            with pytest.raises(AppError) as exc_info:
                registry.reauthenticate("sid-1", _token(ttl=timedelta(minutes=30)))

        assert exc_info.value.code == ErrorCode.TOKEN_INVALID
        assert registry.get("sid-1") is None
        assert [event[2]["code"] for event in emitted] == [ErrorCode.TOKEN_EXPIRED]


class TestSweep:

    def test_sweep_signals_only_expired_connections(self, registry, emitted):
        registry.handshake("short", {"token": _token(ttl=timedelta(minutes=1))})
        registry.handshake("long", {"token": _token(ttl=timedelta(minutes=30))})

        expired = registry.sweep(now=datetime.now(timezone.utc) + timedelta(minutes=5))

        assert expired == ["short"]
        assert registry.get("short") is None
        assert registry.get("long") is not None
        assert emitted == [("short", AUTH_ERROR_EVENT, {
            "code": ErrorCode.TOKEN_EXPIRED,
            "message": "The access token for this connection has expired.",
            "refreshable": True,
        })]

    def test_disconnect_forgets_connection(self, registry):
        registry.handshake("sid-1", {"token": _token()})
        registry.disconnect("sid-1")
        assert registry.sweep(now=datetime.now(timezone.utc) + timedelta(days=1)) == []

    def test_sweeper_thread_signals_expired_connection(self):
        signalled = threading.Event()
        registry = ConnectionAuthRegistry(
            AuthGateway(SECRET),
            lambda sid, event, payload: signalled.set(),
            sweep_interval=timedelta(milliseconds=10),
        )
        registry.handshake("sid-1", {"token": _token(ttl=timedelta(seconds=2))})

        stop = registry.start_sweeper()
        try:
            assert signalled.wait(timeout=5)
        finally:
            stop.set()

        assert registry.get("sid-1") is None


def test_auth_error_payload_marks_only_expired_as_refreshable():
    expired = AppError(ErrorCode.TOKEN_EXPIRED, "expired", 401)
    invalid = AppError(ErrorCode.TOKEN_INVALID, "invalid", 401)

    assert auth_error_payload(expired)["refreshable"] is True
    assert auth_error_payload(invalid)["refreshable"] is False
