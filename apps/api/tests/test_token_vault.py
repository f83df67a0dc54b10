"""
Tests for provider token storage and refresh.

Covers:
- encryption at rest
- duplicate reconciliation on read (newest updated_at wins)
- refresh only when expired, exactly once
- refresh token rotation and failure handling
- a rejected refresh stays failed until the user reconnects
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import ConfigurationError, PersistenceError, ProviderError, TokenError
from models import ProviderToken
from services.token_encryption import encrypt_token
from services.token_vault import TokenVault


def _as_utc(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _add_token_row(db, user_id, access, updated_at, created_at=None, expires_in=3600):
    row = ProviderToken(
        id=uuid4(),
        user_id=user_id,
        provider="whoop",
        access_token=encrypt_token(access),
        refresh_token=encrypt_token(f"refresh-{access}"),
        expires_at=updated_at + timedelta(seconds=expires_in),
        created_at=created_at or updated_at,
        updated_at=updated_at,
    )
    db.add(row)
    db.flush()
    return row


def _expire(db, record):
    record.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.flush()


def _count(db, user_id):
    return db.query(ProviderToken).filter(ProviderToken.user_id == user_id).count()


def test_save_encrypts_and_sets_expiry(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    before = datetime.now(timezone.utc)
    record = vault.save(test_user.id, "A1", "R1", 3600)

    assert record.access_token != "A1"
    assert record.refresh_token != "R1"
    assert vault.access_token_of(record) == "A1"
    expires_at = _as_utc(record.expires_at)
    assert before + timedelta(seconds=3590) <= expires_at <= datetime.now(timezone.utc) + timedelta(seconds=3600)


def test_save_overwrites_single_row(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    vault.save(test_user.id, "A1", "R1", 3600)
    vault.save(test_user.id, "A2", "R2", 3600)

    assert _count(db_session, test_user.id) == 1
    assert vault.access_token_of(vault.get(test_user.id)) == "A2"


def test_get_returns_none_without_token(db_session, test_user):
    assert TokenVault(db_session).get(test_user.id) is None


def test_get_keeps_newest_of_duplicates(db_session, test_user):
    now = datetime.now(timezone.utc)
    for access, minutes_ago in [("old", 10), ("older", 20), ("newest", 0), ("middle", 5)]:
        _add_token_row(db_session, test_user.id, access, now - timedelta(minutes=minutes_ago))

    vault = TokenVault(db_session)
    record = vault.get(test_user.id)

    assert vault.access_token_of(record) == "newest"
    assert _count(db_session, test_user.id) == 1


def test_get_breaks_updated_at_ties_by_created_at(db_session, test_user):
    now = datetime.now(timezone.utc)
    _add_token_row(db_session, test_user.id, "first", now, created_at=now - timedelta(hours=2))
    _add_token_row(db_session, test_user.id, "second", now, created_at=now - timedelta(hours=1))

    vault = TokenVault(db_session)
    assert vault.access_token_of(vault.get(test_user.id)) == "second"
    assert _count(db_session, test_user.id) == 1


def test_get_leaves_other_users_alone(db_session, test_user, other_user):
    now = datetime.now(timezone.utc)
    _add_token_row(db_session, test_user.id, "mine", now)
    _add_token_row(db_session, other_user.id, "theirs-1", now)
    _add_token_row(db_session, other_user.id, "theirs-2", now - timedelta(minutes=1))

    TokenVault(db_session).get(test_user.id)

    assert _count(db_session, other_user.id) == 2


def test_ensure_valid_does_not_refresh_unexpired_token(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    vault.save(test_user.id, "A1", "R1", 3600)

    assert vault.ensure_valid(test_user.id) == "A1"
    assert fake_whoop.calls_of("refresh") == []


def test_ensure_valid_refreshes_expired_token_once(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", "R1", 3600))

    assert vault.ensure_valid(test_user.id) == "A2"
    assert fake_whoop.calls_of("refresh") == [("refresh", "R1")]

    # Now valid again: no further refresh.
    assert vault.ensure_valid(test_user.id) == "A2"
    assert len(fake_whoop.calls_of("refresh")) == 1

    record = vault.get(test_user.id)
    assert _as_utc(record.expires_at) > datetime.now(timezone.utc) + timedelta(minutes=59)


def test_refresh_rotates_refresh_token(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    vault.save(test_user.id, "A1", "R1", 3600)

    vault.refresh(test_user.id)
    vault.refresh(test_user.id)

    assert fake_whoop.calls_of("refresh") == [("refresh", "R1"), ("refresh", "R2")]


def test_refresh_keeps_old_refresh_token_when_not_rotated(db_session, test_user, fake_whoop):
    fake_whoop.refresh_response = {"access_token": "A2", "expires_in": 3600}
    vault = TokenVault(db_session, fake_whoop)
    vault.save(test_user.id, "A1", "R1", 3600)

    vault.refresh(test_user.id)
    vault.refresh(test_user.id)

    assert fake_whoop.calls_of("refresh") == [("refresh", "R1"), ("refresh", "R1")]


def test_refresh_failure_is_token_error(db_session, test_user, fake_whoop):
    fake_whoop.refresh_error = ProviderError("WHOOP token request failed (401)", http_status=401)
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", "R1", 3600))

    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)
    assert len(fake_whoop.calls_of("refresh")) == 1


def test_refresh_without_refresh_token_is_token_error(db_session, test_user, fake_whoop):
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", None, 3600))

    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)
    assert fake_whoop.calls_of("refresh") == []


def test_failed_refresh_is_terminal_until_reconnect(db_session, test_user, fake_whoop):
    fake_whoop.refresh_error = ProviderError("WHOOP token request failed (400)", http_status=400)
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", "R1", 3600))

    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)
    assert vault.get(test_user.id).refresh_failed_at is not None

    # The provider already rejected this refresh token; don't ask again.
    fake_whoop.refresh_error = None
    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)
    assert len(fake_whoop.calls_of("refresh")) == 1

    vault.save(test_user.id, "A9", "R9", 3600)
    assert vault.get(test_user.id).refresh_failed_at is None
    assert vault.ensure_valid(test_user.id) == "A9"


def test_refresh_without_access_token_marks_failure(db_session, test_user, fake_whoop):
    fake_whoop.refresh_response = {"expires_in": 3600}
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", "R1", 3600))

    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)
    assert vault.get(test_user.id).refresh_failed_at is not None


def test_refresh_persist_failure_is_persistence_error(db_session, test_user, fake_whoop, monkeypatch):
    vault = TokenVault(db_session, fake_whoop)
    record = vault.save(test_user.id, "A1", "R1", 3600)

    def failing_flush(*args, **kwargs):
        raise OperationalError("UPDATE provider_token", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "flush", failing_flush)

    with pytest.raises(PersistenceError):
        vault.refresh(test_user.id, record=record)
    assert len(fake_whoop.calls_of("refresh")) == 1


def test_missing_client_config_does_not_mark_failure(db_session, test_user, fake_whoop):
    fake_whoop.refresh_error = ConfigurationError("WHOOP credentials are not configured")
    vault = TokenVault(db_session, fake_whoop)
    _expire(db_session, vault.save(test_user.id, "A1", "R1", 3600))

    with pytest.raises(ConfigurationError):
        vault.ensure_valid(test_user.id)
    assert vault.get(test_user.id).refresh_failed_at is None


def test_ensure_valid_without_token_is_token_error(db_session, test_user, fake_whoop):
    with pytest.raises(TokenError):
        TokenVault(db_session, fake_whoop).ensure_valid(test_user.id)


def test_undecryptable_token_is_token_error(db_session, test_user):
    vault = TokenVault(db_session)
    record = vault.save(test_user.id, "A1", "R1", 3600)
    record.access_token = "gAAAAA-not-a-valid-fernet-token"
    db_session.flush()

    with pytest.raises(TokenError):
        vault.ensure_valid(test_user.id)


def test_mark_synced_does_not_move_updated_at(db_session, test_user):
    vault = TokenVault(db_session)
    record = vault.save(test_user.id, "A1", "R1", 3600)
    updated_at = record.updated_at

    vault.mark_synced(test_user.id)

    record = vault.get(test_user.id)
    assert record.last_sync_at is not None
    assert record.updated_at == updated_at


def test_delete_all_is_idempotent(db_session, test_user):
    vault = TokenVault(db_session)
    now = datetime.now(timezone.utc)
    _add_token_row(db_session, test_user.id, "a", now)
    _add_token_row(db_session, test_user.id, "b", now - timedelta(minutes=1))

    assert vault.delete_all(test_user.id) == 2
    assert vault.delete_all(test_user.id) == 0
    assert _count(db_session, test_user.id) == 0
