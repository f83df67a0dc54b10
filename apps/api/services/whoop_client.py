"""
WHOOP API client.

Wraps the OAuth endpoints and the v2 developer API. One instance per request;
the `requests.Session` is injectable so tests can swap in a mock.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.config import settings
from core.exceptions import ConfigurationError, InvalidGrantError, ProviderError

logger = logging.getLogger(__name__)

WHOOP_AUTH_URL = "https://api.prod.whoop.com/oauth/oauth2/auth"
WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"
WHOOP_API_BASE = "https://api.prod.whoop.com/developer/v2"

# `offline` is what makes WHOOP issue a refresh token.
WHOOP_SCOPES = " ".join(
    [
        "offline",
        "read:recovery",
        "read:cycles",
        "read:sleep",
        "read:workout",
        "read:profile",
        "read:body_measurement",
    ]
)

RECOVERY_PATH = "/recovery"
SLEEP_PATH = "/activity/sleep"
WORKOUT_PATH = "/activity/workout"
CYCLE_PATH = "/cycle"
BODY_MEASUREMENT_PATH = "/user/measurement/body"


class WhoopAPIError(RuntimeError):
    """A WHOOP data endpoint answered with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = int(status_code)


def _format_ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _error_payload(response: requests.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {"error_description": (response.text or "")[:500]}


class WhoopClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        session: Optional[requests.Session] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.client_id = client_id or settings.WHOOP_CLIENT_ID
        self.client_secret = client_secret or settings.WHOOP_CLIENT_SECRET
        self.redirect_uri = redirect_uri or settings.WHOOP_REDIRECT_URI
        self.session = session or requests.Session()
        self.page_size = int(page_size or settings.WHOOP_PAGE_SIZE)
        self.max_pages = int(max_pages or settings.WHOOP_MAX_PAGES)

    # --- OAuth ---

    def build_authorization_url(self, state: str) -> str:
        if not self.client_id:
            raise ConfigurationError("WHOOP_CLIENT_ID is not set")

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": WHOOP_SCOPES,
            "state": state,
        }
        return f"{WHOOP_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Dict[str, Any]:
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Returns dict with: access_token, refresh_token (when rotated), expires_in, token_type.
        """
        return self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": "offline",
            }
        )

    def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("WHOOP credentials are not configured")

        body = dict(data)
        body["client_id"] = self.client_id
        body["client_secret"] = self.client_secret

        try:
            r = self.session.post(
                WHOOP_TOKEN_URL,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except requests.RequestException as e:
            raise ProviderError(f"WHOOP token endpoint unreachable: {e}")
        if r.status_code >= 400:
            payload = _error_payload(r)
            error = str(payload.get("error") or "")
            description = payload.get("error_description") or payload.get("message")
            logger.warning(
                "WHOOP token endpoint rejected request",
                extra={"extra_fields": {
                    "grant_type": data.get("grant_type"),
                    "status": r.status_code,
                    "provider_error": error or None,
                }},
            )
            if error == "invalid_grant":
                raise InvalidGrantError(
                    "Authorization grant is invalid or expired",
                    provider_error=error,
                    description=description,
                    http_status=r.status_code,
                )
            raise ProviderError(
                f"WHOOP token request failed ({r.status_code})",
                provider_error=error or None,
                description=description,
                http_status=r.status_code,
            )

        payload = r.json()
        if not payload.get("access_token"):
            raise ProviderError("WHOOP token response did not include an access token")
        return payload

    # --- Data ---

    def fetch_collection(self, access_token: str, path: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """
        Fetch every record of a time-windowed collection, following `next_token`.

        Stops after `max_pages` pages.
        """
        records: List[Dict[str, Any]] = []
        next_token: Optional[str] = None
        pages = 0

        while True:
            params = {
                "start": _format_ts(start),
                "end": _format_ts(end),
                "limit": str(self.page_size),
            }
            if next_token:
                params["nextToken"] = next_token

            payload = self._get(access_token, path, params)
            records.extend(payload.get("records") or [])
            next_token = payload.get("next_token")
            pages += 1

            if not next_token:
                break
            if pages >= self.max_pages:
                logger.warning(
                    "WHOOP pagination cap reached",
                    extra={"extra_fields": {"path": path, "pages": pages, "records": len(records)}},
                )
                break

        return records

    def fetch_body_measurement(self, access_token: str) -> Dict[str, Any]:
        return self._get(access_token, BODY_MEASUREMENT_PATH)

    def _get(self, access_token: str, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        r = self.session.get(
            f"{WHOOP_API_BASE}{path}",
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if r.status_code >= 400:
            raise WhoopAPIError(
                f"WHOOP API error for {path}: {r.status_code} {(r.text or '')[:300]}",
                status_code=r.status_code,
            )
        return r.json()
