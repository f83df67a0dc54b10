"""
WHOOP authorization handshake.

Handshake stages (logged as `handshake_stage`):
INITIATED -> STATE_PERSISTED -> CALLBACK_RECEIVED -> EXCHANGING -> TOKEN_SAVED
-> SYNCING -> COMPLETE, with ERROR reachable from every non-terminal stage.

The initial sync after a successful exchange is best-effort: the connection
stands even when the sync fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.auth import authenticate_bearer
from core.exceptions import (
    IntegrationError,
    InvalidGrantError,
    ProviderError,
    StateError,
    SyncError,
    TokenError,
)
from services.integration_events import EventLogger
from services.oauth_state import OAuthStateStore
from services.token_vault import TokenVault
from services.whoop_client import WhoopClient
from services.whoop_sync import SyncOrchestrator, SyncReport

logger = logging.getLogger(__name__)

PROVIDER = "whoop"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _log_stage(stage: str, user_id: Optional[UUID] = None, **fields: Any) -> None:
    extra_fields = {"handshake_stage": stage, "provider": PROVIDER}
    if user_id is not None:
        extra_fields["user_id"] = str(user_id)
    extra_fields.update(fields)
    level = logging.WARNING if stage == "ERROR" else logging.INFO
    logger.log(level, "WHOOP handshake %s", stage, extra={"extra_fields": extra_fields})


@dataclass
class AuthorizationRequest:
    auth_url: str
    state: str

    def to_dict(self) -> Dict[str, Any]:
        return {"authUrl": self.auth_url, "state": self.state}


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    reused: bool = False


@dataclass
class CallbackOutcome:
    connected: bool
    user_id: UUID
    sync_report: Optional[SyncReport] = None
    sync_error: Optional[str] = None
    reused_existing_token: bool = False

    @property
    def synced(self) -> bool:
        return self.sync_report is not None and self.sync_error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "connected": self.connected,
            "syncResult": self.sync_report.to_dict() if self.sync_report else None,
        }
        if self.sync_error:
            out["syncError"] = self.sync_error
        if self.reused_existing_token:
            out["reusedExistingToken"] = True
        return out


class WhoopAuthorizationCoordinator:
    def __init__(
        self,
        db: Session,
        client: Any = None,
        orchestrator: Optional[SyncOrchestrator] = None,
    ):
        self.db = db
        self.client = client or WhoopClient()
        self.states = OAuthStateStore(db, provider=PROVIDER)
        self.vault = TokenVault(db, self.client, provider=PROVIDER)
        self.orchestrator = orchestrator or SyncOrchestrator(db, self.client, provider=PROVIDER)
        self.events = EventLogger(db, provider=PROVIDER)

    def authorize(self, bearer_token: Optional[str]) -> AuthorizationRequest:
        """Start a handshake for the bearer's user and return the WHOOP consent URL."""
        user = authenticate_bearer(bearer_token, self.db)
        _log_stage("INITIATED", user.id)

        state = self.states.put(user.id)
        _log_stage("STATE_PERSISTED", user.id)

        auth_url = self.client.build_authorization_url(state)
        self.events.record("auth_started", user_id=user.id)
        return AuthorizationRequest(auth_url=auth_url, state=state)

    def callback(self, params: Mapping[str, Any]) -> CallbackOutcome:
        """
        Finish a handshake from the provider redirect (or its JSON equivalent).

        `params` carries either `error` (+ `error_description`) or `code` + `state`.
        """
        error = params.get("error")
        if error:
            _log_stage("ERROR", provider_error=str(error))
            raise ProviderError(
                "WHOOP authorization was not granted",
                provider_error=str(error),
                description=params.get("error_description"),
            )

        code = params.get("code")
        state = params.get("state")
        if not code or not state:
            _log_stage("ERROR", reason="missing_code_or_state")
            raise StateError("Missing code or state")

        user_id = self.states.claim(str(state))
        _log_stage("CALLBACK_RECEIVED", user_id)
        try:
            return self._complete(user_id, str(code))
        finally:
            self.states.delete(str(state))

    def complete_with_code(self, user_id: UUID, code: str, state: Optional[str] = None) -> CallbackOutcome:
        """Complete a pending handshake for an already-authenticated caller."""
        if not code:
            raise StateError("Missing code")
        if state:
            owner = self.states.claim(state)
            if owner != user_id:
                _log_stage("ERROR", user_id, reason="state_owner_mismatch")
                raise StateError("State does not belong to the caller")
        _log_stage("CALLBACK_RECEIVED", user_id)
        try:
            return self._complete(user_id, code)
        finally:
            if state:
                self.states.delete(state)

    def exchange_code(self, user_id: UUID, code: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        A reused or expired code (invalid_grant) is not fatal when the user
        already holds an unexpired token: that token is used instead.
        """
        _log_stage("EXCHANGING", user_id)
        try:
            payload = self.client.exchange_code(code)
        except InvalidGrantError as e:
            record = self.vault.get(user_id)
            now = datetime.now(timezone.utc)
            if record is not None and record.refresh_failed_at is None and _as_utc(record.expires_at) > now:
                logger.info(
                    "WHOOP code already used; reusing existing token",
                    extra={"extra_fields": {"user_id": str(user_id), "handshake_stage": "EXCHANGING"}},
                )
                return TokenGrant(
                    access_token=self.vault.access_token_of(record),
                    refresh_token=None,
                    expires_in=int((_as_utc(record.expires_at) - now).total_seconds()),
                    reused=True,
                )
            raise ProviderError(
                "Authorization code is invalid or expired",
                provider_error=e.provider_error,
                description=e.description,
                http_status=e.http_status,
            ) from e

        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )

    def adopt_tokens(self, user_id: UUID, temp_tokens: Mapping[str, Any]) -> None:
        """Store tokens obtained outside the handshake (e.g. by a native client)."""
        access = (temp_tokens or {}).get("access_token")
        if not access:
            raise StateError("tempTokens.access_token is required")
        self.vault.save(user_id, access, temp_tokens.get("refresh_token"), temp_tokens.get("expires_in"))
        self.events.record("connected", user_id=user_id, details={"via": "temp_tokens"})

    def sync_now(self, user_id: UUID) -> SyncReport:
        """Sync with the stored token, refreshing it first if it has expired."""
        try:
            access_token = self.vault.ensure_valid(user_id)
        except TokenError as e:
            self.events.record("sync", user_id=user_id, error=e)
            raise

        try:
            report = self.orchestrator.run(user_id, access_token)
        except SyncError as e:
            self.events.record(
                "sync",
                user_id=user_id,
                error=e,
                details=e.report.to_dict() if e.report else None,
            )
            raise

        self.vault.mark_synced(user_id)
        self.events.record("sync", user_id=user_id, details=report.to_dict())
        return report

    def status(self, user_id: UUID) -> Dict[str, Any]:
        record = self.vault.get(user_id)
        last_sync = record.last_sync_at if record is not None else None
        return {
            "is_connected": record is not None and record.refresh_failed_at is None,
            "last_sync": _as_utc(last_sync).isoformat() if last_sync else None,
        }

    def disconnect(self, user_id: UUID) -> int:
        """Forget the user's WHOOP tokens. Idempotent."""
        deleted = self.vault.delete_all(user_id)
        self.events.record("disconnected", user_id=user_id, details={"deleted_tokens": deleted})
        logger.info(
            "WHOOP disconnected",
            extra={"extra_fields": {"user_id": str(user_id), "deleted_tokens": deleted}},
        )
        return deleted

    def _complete(self, user_id: UUID, code: str) -> CallbackOutcome:
        try:
            grant = self.exchange_code(user_id, code)
            if not grant.reused:
                self.vault.save(user_id, grant.access_token, grant.refresh_token, grant.expires_in)
        except IntegrationError as e:
            _log_stage("ERROR", user_id, error_code=e.error_code)
            raise
        _log_stage("TOKEN_SAVED", user_id, reused_existing_token=grant.reused)
        self.events.record("connected", user_id=user_id, details={"reused_existing_token": grant.reused})

        outcome = CallbackOutcome(connected=True, user_id=user_id, reused_existing_token=grant.reused)
        _log_stage("SYNCING", user_id)
        try:
            outcome.sync_report = self.orchestrator.run(user_id, grant.access_token)
            self.vault.mark_synced(user_id)
            self.events.record("sync", user_id=user_id, details=outcome.sync_report.to_dict())
        except IntegrationError as e:
            outcome.sync_error = e.error_code
            if isinstance(e, SyncError):
                outcome.sync_report = e.report
            logger.warning(
                "Initial WHOOP sync failed; connection kept",
                extra={"extra_fields": {"user_id": str(user_id), "error_code": e.error_code, "error": str(e)}},
            )
            self.events.record(
                "sync",
                user_id=user_id,
                error=e,
                details=outcome.sync_report.to_dict() if outcome.sync_report else None,
            )

        _log_stage("COMPLETE", user_id, synced=outcome.synced)
        return outcome
