"""
WHOOP Integration Router

One endpoint, multiplexed by `action` (query string on GET, JSON body on POST):
- auth: start the OAuth handshake (bearer)
- callback: provider redirect; implied by `code` or `error` in the query
- check-status / sync / disconnect (bearer)
"""
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from core.auth import authenticate_bearer, extract_bearer_token
from core.config import settings
from core.database import get_db
from core.exceptions import IntegrationError, PersistenceError, StateError
from models import User
from services.integration_events import EventLogger
from services.whoop_client import WhoopClient
from services.whoop_oauth import CallbackOutcome, WhoopAuthorizationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["whoop"])


def get_whoop_client() -> WhoopClient:
    return WhoopClient()


def get_coordinator(
    db: Session = Depends(get_db),
    client: WhoopClient = Depends(get_whoop_client),
) -> WhoopAuthorizationCoordinator:
    return WhoopAuthorizationCoordinator(db, client)


async def whoop_params(request: Request) -> Dict[str, Any]:
    """Merge query parameters with a JSON object body (body wins)."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            params.update(body)
    return params


def _wants_json(request: Request) -> bool:
    if request.method == "POST" and "application/json" in request.headers.get("content-type", ""):
        return True
    return "application/json" in request.headers.get("accept", "")


def _error_json(e: IntegrationError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=e.to_dict())


def _recover_session(db: Session, e: IntegrationError) -> None:
    # A failed flush leaves the transaction unusable; start clean before writing events.
    if isinstance(e, PersistenceError):
        db.rollback()


# --- Callback rendering ---

def _app_origin() -> str:
    parsed = urlparse(settings.WHOOP_APP_CALLBACK_URL)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return "*"


def _popup_page(message: Dict[str, Any]) -> HTMLResponse:
    payload = json.dumps(message).replace("</", "<\\/")
    origin = json.dumps(_app_origin())
    title = "WHOOP connected" if message.get("type") == "whoop-auth-success" else "WHOOP connection failed"
    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<p>{title}. You can close this window.</p>
<script>
  (function () {{
    var message = {payload};
    if (window.opener) {{
      window.opener.postMessage(message, {origin});
    }}
    window.close();
  }})();
</script>
</body>
</html>"""
    return HTMLResponse(content=html, status_code=status.HTTP_200_OK)


def _redirect(query: Dict[str, str]) -> RedirectResponse:
    base = settings.WHOOP_APP_CALLBACK_URL
    sep = "&" if "?" in base else "?"
    return RedirectResponse(url=f"{base}{sep}{urlencode(query)}", status_code=status.HTTP_302_FOUND)


def _callback_success(request: Request, outcome: CallbackOutcome):
    if _wants_json(request):
        return outcome.to_dict()
    if settings.WHOOP_CALLBACK_MODE == "popup":
        return _popup_page({"type": "whoop-auth-success", "synced": outcome.synced})
    query = {"connected": "1"}
    if outcome.synced:
        query["synced"] = "1"
    return _redirect(query)


def _callback_failure(request: Request, e: IntegrationError):
    if _wants_json(request):
        return _error_json(e)
    if settings.WHOOP_CALLBACK_MODE == "popup":
        return _popup_page({"type": "whoop-auth-error", "error": e.error_code})
    return _redirect({"error": e.error_code})


# --- Actions ---

def _check_status(coordinator: WhoopAuthorizationCoordinator, user: User, params: Mapping[str, Any]):
    s = coordinator.status(user.id)
    return {"isConnected": s["is_connected"], "lastSync": s["last_sync"]}


def _sync(coordinator: WhoopAuthorizationCoordinator, user: User, params: Mapping[str, Any]):
    code = params.get("code")
    temp_tokens = params.get("tempTokens")

    if code:
        outcome = coordinator.complete_with_code(user.id, str(code), params.get("state"))
        body = {"success": True, "syncResult": outcome.sync_report.to_dict() if outcome.sync_report else None}
        if outcome.sync_error:
            body["syncError"] = outcome.sync_error
        return body

    if temp_tokens is not None:
        if not isinstance(temp_tokens, dict):
            raise StateError("tempTokens must be an object")
        coordinator.adopt_tokens(user.id, temp_tokens)

    report = coordinator.sync_now(user.id)
    return {"success": True, "syncResult": report.to_dict()}


def _disconnect(coordinator: WhoopAuthorizationCoordinator, user: User, params: Mapping[str, Any]):
    coordinator.disconnect(user.id)
    return {"success": True}


_USER_ACTIONS: Dict[str, Callable[[WhoopAuthorizationCoordinator, User, Mapping[str, Any]], Any]] = {
    "check-status": _check_status,
    "sync": _sync,
    "disconnect": _disconnect,
}


@router.api_route("/whoop", methods=["GET", "POST"])
def whoop_endpoint(
    request: Request,
    params: Dict[str, Any] = Depends(whoop_params),
    db: Session = Depends(get_db),
    coordinator: WhoopAuthorizationCoordinator = Depends(get_coordinator),
):
    action: Optional[str] = params.get("action")
    if not action and (params.get("code") or params.get("error")):
        action = "callback"

    if action == "callback":
        try:
            outcome = coordinator.callback(params)
        except IntegrationError as e:
            _recover_session(db, e)
            logger.warning(
                "WHOOP callback failed",
                extra={"extra_fields": {"error_code": e.error_code, "error": e.message}},
            )
            EventLogger(db).record("connect", error=e, details=e.details or None)
            return _callback_failure(request, e)
        return _callback_success(request, outcome)

    if action != "auth" and action not in _USER_ACTIONS:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid action"})

    token = extract_bearer_token(request.headers.get("authorization"))
    try:
        if action == "auth":
            return coordinator.authorize(token).to_dict()
        user = authenticate_bearer(token, db)
        return _USER_ACTIONS[action](coordinator, user, params)
    except IntegrationError as e:
        _recover_session(db, e)
        logger.warning(
            "WHOOP action failed",
            extra={"extra_fields": {"action": action, "error_code": e.error_code, "error": e.message}},
        )
        return _error_json(e)
