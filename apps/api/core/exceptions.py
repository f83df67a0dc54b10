"""
Integration error taxonomy.

Services raise these; the WHOOP router renders them as JSON, a popup page or a
redirect. Each error carries the HTTP status and a stable machine-readable code.
"""
from typing import Any, Dict, Optional


class IntegrationError(RuntimeError):
    """Base error for the wearable integration core."""

    status_code: int = 500
    error_code: str = "integration_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class AuthError(IntegrationError):
    """Missing or invalid bearer credential. Rejected before any side effect."""

    status_code = 401
    error_code = "unauthorized"


class StateError(IntegrationError):
    """Missing, expired or already-consumed state/code pair."""

    status_code = 400
    error_code = "invalid_state"


class ProviderError(IntegrationError):
    """The provider returned an OAuth error (e.g. the user denied consent)."""

    status_code = 400
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider_error: Optional[str] = None,
        description: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        details = {}
        if provider_error:
            details["provider_error"] = provider_error
        if description:
            details["description"] = description
        super().__init__(message, details=details)
        self.provider_error = provider_error
        self.description = description
        self.http_status = http_status


class InvalidGrantError(ProviderError):
    """Authorization code reused or expired."""

    error_code = "invalid_grant"


class TokenError(IntegrationError):
    """Refresh failed or no usable token: the user has to reconnect."""

    status_code = 401
    error_code = "reconnect_required"


class SyncError(IntegrationError):
    """A mandatory stream failed. `report` holds whatever the other streams saved."""

    status_code = 502
    error_code = "sync_failed"

    def __init__(self, message: str, *, report=None, stream: Optional[str] = None):
        super().__init__(message, details={"stream": stream} if stream else None)
        self.report = report
        self.stream = stream

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.report is not None:
            body["syncResult"] = self.report.to_dict()
        return body


class PersistenceError(IntegrationError):
    """A store write failed. Not retried."""

    status_code = 500
    error_code = "persistence_error"


class ConfigurationError(IntegrationError):
    """Provider client credentials are missing from the environment."""

    status_code = 503
    error_code = "provider_not_configured"
