"""
Provider token storage and refresh.

Rows are keyed by (user_id, provider) without a unique constraint, so concurrent
saves can leave duplicates. The newest row by `updated_at` is authoritative and
every read purges the rest.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import ConfigurationError, PersistenceError, TokenError
from models import ProviderToken
from services.token_encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_S = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TokenVault:
    def __init__(self, db: Session, client: Any = None, provider: str = "whoop"):
        self.db = db
        self.client = client
        self.provider = provider

    def get(self, user_id: UUID) -> Optional[ProviderToken]:
        """Return the authoritative token row, deleting older duplicates."""
        rows = (
            self.db.query(ProviderToken)
            .filter(ProviderToken.user_id == user_id, ProviderToken.provider == self.provider)
            .order_by(
                ProviderToken.updated_at.desc(),
                ProviderToken.created_at.desc(),
                ProviderToken.id.desc(),
            )
            .all()
        )
        if not rows:
            return None

        newest, stale = rows[0], rows[1:]
        if stale:
            try:
                for row in stale:
                    self.db.delete(row)
                self.db.flush()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to purge duplicate tokens: {e}")
            logger.info(
                "Purged duplicate provider tokens",
                extra={"extra_fields": {
                    "user_id": str(user_id),
                    "provider": self.provider,
                    "purged": len(stale),
                }},
            )
        return newest

    def save(
        self,
        user_id: UUID,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: Optional[int],
    ) -> ProviderToken:
        """Create or overwrite the user's token row."""
        if not access_token:
            raise TokenError("Cannot store an empty access token")

        now = _utcnow()
        expires_at = now + timedelta(seconds=int(expires_in or DEFAULT_EXPIRES_IN_S))
        try:
            record = self.get(user_id)
            if record is None:
                record = ProviderToken(user_id=user_id, provider=self.provider, created_at=now)
                self.db.add(record)
            record.access_token = encrypt_token(access_token)
            record.refresh_token = encrypt_token(refresh_token)
            record.expires_at = expires_at
            record.updated_at = now
            record.refresh_failed_at = None
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save provider token: {e}")
        return record

    def ensure_valid(self, user_id: UUID) -> str:
        """Return a usable access token, refreshing it first if it has expired."""
        record = self.get(user_id)
        if record is None:
            raise TokenError("No WHOOP connection for this user")
        if record.refresh_failed_at is not None:
            raise TokenError("WHOOP token refresh failed earlier; reconnect required")

        if _as_utc(record.expires_at) <= _utcnow():
            return self.refresh(user_id, record=record)
        return self.access_token_of(record)

    def refresh(self, user_id: UUID, record: Optional[ProviderToken] = None) -> str:
        """
        Refresh the user's access token.

        Keeps the stored refresh token when the provider does not rotate it.
        A rejected or unusable refresh is terminal: the row is marked with
        `refresh_failed_at` and the user has to reconnect. A failed write of the
        new token is a PersistenceError.
        """
        record = record or self.get(user_id)
        if record is None:
            raise TokenError("No WHOOP connection for this user")
        if self.client is None:
            raise TokenError("No provider client available for refresh")

        current_refresh = decrypt_token(record.refresh_token)
        if not current_refresh:
            self._mark_refresh_failed(user_id, record)
            raise TokenError("No refresh token stored")

        try:
            payload: Dict[str, Any] = self.client.refresh_access_token(current_refresh)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(
                "WHOOP token refresh failed",
                extra={"extra_fields": {"user_id": str(user_id), "error": str(e)}},
            )
            self._mark_refresh_failed(user_id, record)
            raise TokenError(f"Token refresh failed: {e}")

        access = payload.get("access_token")
        if not access:
            self._mark_refresh_failed(user_id, record)
            raise TokenError("Refresh response did not include an access token")

        now = _utcnow()
        try:
            record.access_token = encrypt_token(access)
            if payload.get("refresh_token"):
                record.refresh_token = encrypt_token(payload["refresh_token"])
            record.expires_at = now + timedelta(seconds=int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_S))
            record.updated_at = now
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist refreshed token: {e}")

        logger.info("WHOOP token refreshed", extra={"extra_fields": {"user_id": str(user_id)}})
        return access

    def delete_all(self, user_id: UUID) -> int:
        try:
            deleted = (
                self.db.query(ProviderToken)
                .filter(ProviderToken.user_id == user_id, ProviderToken.provider == self.provider)
                .delete(synchronize_session=False)
            )
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete provider tokens: {e}")
        return int(deleted or 0)

    def mark_synced(self, user_id: UUID) -> None:
        """Stamp `last_sync_at`; `updated_at` is left alone."""
        record = self.get(user_id)
        if record is None:
            return
        try:
            record.last_sync_at = _utcnow()
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record sync time: {e}")

    def access_token_of(self, record: ProviderToken) -> str:
        token = decrypt_token(record.access_token)
        if not token:
            raise TokenError("Stored access token cannot be decrypted")
        return token

    def _mark_refresh_failed(self, user_id: UUID, record: ProviderToken) -> None:
        # The TokenError that follows is the caller's outcome; a failed write here is only logged.
        try:
            with self.db.begin_nested():
                record.refresh_failed_at = _utcnow()
        except SQLAlchemyError as e:
            logger.warning(
                "Could not mark WHOOP token as failed",
                extra={"extra_fields": {"user_id": str(user_id), "error": str(e)}},
            )
