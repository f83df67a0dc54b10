"""
OAuth state store.

Binds a provider redirect to the user who started it (CSRF protection). The
state value is random and opaque; the user mapping lives in oauth_state and a
state can be claimed by at most one callback.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import PersistenceError, StateError
from models import OAuthState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class OAuthStateStore:
    def __init__(self, db: Session, provider: str = "whoop", ttl_s: Optional[int] = None):
        self.db = db
        self.provider = provider
        self.ttl_s = int(ttl_s if ttl_s is not None else settings.OAUTH_STATE_TTL_S)

    def put(self, user_id: UUID) -> str:
        """Persist a fresh state for `user_id` and return it."""
        state = secrets.token_urlsafe(32)
        now = _utcnow()
        try:
            self._purge_expired(now)
            self.db.add(OAuthState(state=state, user_id=user_id, provider=self.provider, created_at=now))
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist OAuth state: {e}")
        return state

    def claim(self, state: str) -> UUID:
        """
        Claim `state` for the current callback and return its user.

        Raises StateError if the state is unknown, expired or already claimed.
        """
        if not state:
            raise StateError("Missing state")

        row = (
            self.db.query(OAuthState)
            .filter(OAuthState.state == state, OAuthState.provider == self.provider)
            .first()
        )
        if row is None:
            raise StateError("Unknown or already used state")

        now = _utcnow()
        if self.ttl_s > 0 and _as_utc(row.created_at) + timedelta(seconds=self.ttl_s) < now:
            self.delete(state)
            raise StateError("State expired")

        try:
            claimed = self.db.execute(
                update(OAuthState)
                .where(OAuthState.state == state, OAuthState.consumed_at.is_(None))
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to claim OAuth state: {e}")
        if claimed != 1:
            raise StateError("State already used")
        return row.user_id

    def delete(self, state: str) -> None:
        try:
            self.db.execute(
                delete(OAuthState)
                .where(OAuthState.state == state)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete OAuth state: {e}")

    def exists(self, state: str) -> bool:
        return self.db.query(OAuthState.state).filter(OAuthState.state == state).first() is not None

    def purge_expired(self) -> int:
        """Delete states older than the TTL. Returns the number removed."""
        try:
            return self._purge_expired(_utcnow())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to purge OAuth states: {e}")

    def _purge_expired(self, now: datetime) -> int:
        if self.ttl_s <= 0:
            return 0
        cutoff = now - timedelta(seconds=self.ttl_s)
        return self.db.execute(
            delete(OAuthState)
            .where(OAuthState.provider == self.provider, OAuthState.created_at < cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
