"""
Unit tests for TokenIssuer with a mocked RefreshStore.

Covers the verification order (not found → revoked → expired), rotation
semantics, lost concurrent rotations, idempotent revoke and the purge
throttle. Database behaviour is covered in tests/integration.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import jwt
import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.services.token_issuer import (
    PurgeSchedule,
    TokenIssuer,
    TokenPair,
    hash_refresh_token,
)

SECRET = "unit-test-secret-key-0123456789abcdef"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(record_id=1, user_id=7, revoked=False, expires_at=None):
    return SimpleNamespace(
        id=record_id,
        user_id=user_id,
        revoked=revoked,
        expires_at=expires_at or NOW + timedelta(days=1),
    )


def _issuer(store=None, purge_schedule=None) -> TokenIssuer:
    if store is None:
        store = MagicMock()
        store.add.side_effect = lambda **kwargs: SimpleNamespace(id=99, **kwargs)
    return TokenIssuer(
        store,
        secret_key=SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=30),
        purge_schedule=purge_schedule,
    )


@pytest.fixture
def frozen_now():
    with patch("backend.app.services.token_issuer._utcnow", return_value=NOW):
        yield NOW


# ═══════════════════════════════════════════════════════════════════════════
# Issuance
# ═══════════════════════════════════════════════════════════════════════════

class TestIssue:

    def test_access_token_carries_subject_type_and_ttl(self, frozen_now):
        token = _issuer().issue_access_token(7)

        payload = jwt.decode(
            token, SECRET, algorithms=["HS256"], options={"verify_exp": False},
        )
        assert payload["sub"] == "7"
        assert payload["type"] == "access"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_two_access_tokens_in_same_instant_differ(self, frozen_now):
        issuer = _issuer()
        assert issuer.issue_access_token(7) != issuer.issue_access_token(7)

    def test_refresh_token_stores_only_the_hash(self, frozen_now):
        store = MagicMock()
        store.add.side_effect = lambda **kwargs: SimpleNamespace(id=1, **kwargs)

        raw, record = _issuer(store).issue_refresh_token(7)

        kwargs = store.add.call_args.kwargs
        assert kwargs["token_hash"] == hash_refresh_token(raw)
        assert kwargs["token_hash"] != raw
        assert kwargs["user_id"] == 7
        assert kwargs["expires_at"] == NOW + timedelta(days=30)
        assert record.id == 1

    def test_refresh_tokens_are_unique(self, frozen_now):
        issuer = _issuer()
        raw_a, _ = issuer.issue_refresh_token(7)
        raw_b, _ = issuer.issue_refresh_token(7)
        assert raw_a != raw_b
        assert len(raw_a) >= 43  # 32 bytes, urlsafe base64

    def test_issue_pair_returns_both_tokens(self, frozen_now):
        pair = _issuer().issue_pair(7)
        assert isinstance(pair, TokenPair)
        assert pair.to_dict().keys() == {"access_token", "refresh_token"}

    def test_hash_is_sha256_hex(self):
        digest = hash_refresh_token("abc")
        assert len(digest) == 64
        assert digest == hash_refresh_token("abc")


# ═══════════════════════════════════════════════════════════════════════════
# Verification order
# ═══════════════════════════════════════════════════════════════════════════

class TestVerify:

    def test_unknown_token_is_not_found(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = None

        with pytest.raises(AppError) as exc_info:
            _issuer(store).verify_refresh_token("nope")

        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_NOT_FOUND
        assert exc_info.value.http_status == 401

    def test_revoked_is_reported_before_expired(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(
            revoked=True, expires_at=NOW - timedelta(days=1),
        )

        with pytest.raises(AppError) as exc_info:
            _issuer(store).verify_refresh_token("raw")

        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_REVOKED

    def test_expired_token(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(expires_at=NOW - timedelta(seconds=1))

        with pytest.raises(AppError) as exc_info:
            _issuer(store).verify_refresh_token("raw")

        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_EXPIRED

    def test_expiry_boundary_is_expired(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(expires_at=NOW)

        with pytest.raises(AppError) as exc_info:
            _issuer(store).verify_refresh_token("raw")

        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_EXPIRED

    def test_naive_expiry_is_treated_as_utc(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(
            expires_at=(NOW + timedelta(hours=1)).replace(tzinfo=None),
        )

        assert _issuer(store).verify_refresh_token("raw") == 7

    def test_lookup_uses_hash_of_raw_token(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record()

        _issuer(store).verify_refresh_token("raw-value")

        store.get_by_hash.assert_called_once_with(hash_refresh_token("raw-value"))


# ═══════════════════════════════════════════════════════════════════════════
# Rotation
# ═══════════════════════════════════════════════════════════════════════════

class TestRotate:

    def test_rotate_revokes_old_and_issues_new_pair(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(record_id=5, user_id=7)
        store.revoke_if_active.return_value = True
        store.add.side_effect = lambda **kwargs: SimpleNamespace(id=6, **kwargs)

        pair = _issuer(store).rotate("old-raw")

        store.revoke_if_active.assert_called_once_with(5)
        assert store.add.call_args.kwargs["user_id"] == 7
        assert pair.refresh_token != "old-raw"
        payload = jwt.decode(
            pair.access_token, SECRET, algorithms=["HS256"], options={"verify_exp": False},
        )
        assert payload["sub"] == "7"

    def test_lost_concurrent_rotation_is_revoked_and_issues_nothing(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record()
        store.revoke_if_active.return_value = False

        with pytest.raises(AppError) as exc_info:
            _issuer(store).rotate("raw")

        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_REVOKED
        store.add.assert_not_called()

    def test_rotate_of_unusable_token_does_not_revoke(self, frozen_now):
        store = MagicMock()
        store.get_by_hash.return_value = _record(expires_at=NOW - timedelta(days=1))

        with pytest.raises(AppError):
            _issuer(store).rotate("raw")

        store.revoke_if_active.assert_not_called()
        store.add.assert_not_called()


# ═══════════════════════════════════════════════════════════════════════════
# Revocation (logout)
# ═══════════════════════════════════════════════════════════════════════════

class TestRevoke:

    def test_revoke_active_token(self):
        store = MagicMock()
        store.get_by_hash.return_value = _record(record_id=4)
        store.revoke_if_active.return_value = True

        assert _issuer(store).revoke("raw") is True
        store.revoke_if_active.assert_called_once_with(4)

    def test_revoke_unknown_token_is_noop(self):
        store = MagicMock()
        store.get_by_hash.return_value = None

        assert _issuer(store).revoke("raw") is False
        store.revoke_if_active.assert_not_called()

    def test_revoke_already_revoked_is_noop(self):
        store = MagicMock()
        store.get_by_hash.return_value = _record(revoked=True)

        assert _issuer(store).revoke("raw") is False
        store.revoke_if_active.assert_not_called()


# ═══════════════════════════════════════════════════════════════════════════
# Purge throttle
# ═══════════════════════════════════════════════════════════════════════════

class TestPurgeSchedule:

    def test_first_call_is_due_then_throttled(self):
        schedule = PurgeSchedule(timedelta(hours=1))

        assert schedule.due(NOW) is True
        assert schedule.due(NOW + timedelta(minutes=59)) is False
        assert schedule.due(NOW + timedelta(hours=1)) is True

    def test_issue_refresh_token_purges_when_due(self, frozen_now):
        store = MagicMock()
        store.add.side_effect = lambda **kwargs: SimpleNamespace(id=1, **kwargs)
        issuer = _issuer(store, purge_schedule=PurgeSchedule(timedelta(hours=1)))

        issuer.issue_refresh_token(7)
        issuer.issue_refresh_token(7)

        store.purge_expired.assert_called_once_with(NOW)

    def test_no_schedule_never_purges(self, frozen_now):
        store = MagicMock()
        store.add.side_effect = lambda **kwargs: SimpleNamespace(id=1, **kwargs)

        _issuer(store).issue_refresh_token(7)

        store.purge_expired.assert_not_called()
