"""
tests/integration/conftest.py: Fixtures and helpers for all integration tests.

Design:
  - Tests run against the TestingConfig database: in-memory SQLite by
    default, or PostgreSQL when TEST_DATABASE_URL is set.
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - register(client, ...)    → dict with user + tokens
  - login(client, ...)       → dict with user + tokens
  - refresh(client, token)   → HTTP response
  - auth_headers(token)      → {"Authorization": "Bearer <token>"}
  - expire_refresh_token(raw) → moves a stored record's expiry into the past

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, update

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.models.refresh_token import RefreshToken
from backend.app.models.user import User
from backend.app.services.token_issuer import hash_refresh_token


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.

    Steps:
      1. Create app with TestingConfig.
      2. Run db.create_all() to create all tables.
      3. Yield the app for the test session.
      4. Drop all tables at teardown.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows between tests in FK-safe order.

    refresh_tokens are deleted before users (CASCADE would handle it on
    PostgreSQL, but SQLite does not enforce foreign keys by default).
    """
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        _db.session.execute(delete(RefreshToken))
        _db.session.execute(delete(User))
        _db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def register(
    client,
    username: str = "alice",
    email: str | None = None,
    password: str = "Password1",
) -> dict:
    """
    Registers a new user and returns the full response data dict.
    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    if email is None:
        email = f"{username}@test.com"
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": username, "email": email, "password": password},
    )
    assert resp.status_code == 201, f"register failed: {resp.get_json()}"
    return resp.get_json()["data"]


def login(client, username: str, password: str = "Password1") -> dict:
    """
    Logs in a user and returns the response data dict.
    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    resp = client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password},
    )
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    return resp.get_json()["data"]


def refresh(client, refresh_token: str):
    """POST /auth/refresh. Returns the HTTP response."""
    return client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})


def auth_headers(token: str) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token}"}


def expire_refresh_token(app, raw_token: str, ago: timedelta = timedelta(minutes=1)) -> None:
    """Moves the stored expiry of `raw_token` into the past."""
    with app.app_context():
        _db.session.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == hash_refresh_token(raw_token))
            .values(expires_at=datetime.now(timezone.utc) - ago)
        )
        _db.session.commit()


def stored_record(app, raw_token: str) -> RefreshToken | None:
    """Returns the refresh_tokens row for `raw_token`, detached from the session."""
    with app.app_context():
        record = _db.session.execute(
            _db.select(RefreshToken).where(RefreshToken.token_hash == hash_refresh_token(raw_token))
        ).scalar_one_or_none()
        if record is not None:
            _db.session.expunge(record)
        return record
