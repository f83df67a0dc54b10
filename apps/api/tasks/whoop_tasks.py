"""
Scheduled WHOOP Sync Tasks

Re-runs the WHOOP sync for every connected user.
Runs via Celery Beat; replays are safe because metric writes are upserts.
"""

from typing import Any, Dict, List
from uuid import UUID

from celery import Task
from sqlalchemy.orm import Session

from core.database import get_db_sync
from core.exceptions import IntegrationError, PersistenceError, SyncError
from models import ProviderToken
from services.oauth_state import OAuthStateStore
from services.whoop_oauth import WhoopAuthorizationCoordinator
from tasks import celery_app
import logging

logger = logging.getLogger(__name__)


def sync_user(db: Session, user_id: UUID, client: Any = None) -> Dict[str, Any]:
    """Sync one user and commit. Failures are returned, not raised."""
    coordinator = WhoopAuthorizationCoordinator(db, client)
    try:
        report = coordinator.sync_now(user_id)
        db.commit()
        return {"status": "success", "user_id": str(user_id), "syncResult": report.to_dict()}
    except IntegrationError as e:
        if isinstance(e, PersistenceError):
            db.rollback()
        else:
            # Keep whatever the healthy streams wrote, plus the audit rows.
            db.commit()
        logger.warning(
            "Scheduled WHOOP sync failed",
            extra={"extra_fields": {"user_id": str(user_id), "error_code": e.error_code, "error": str(e)}},
        )
        out: Dict[str, Any] = {"status": "error", "user_id": str(user_id), "error_code": e.error_code, "message": str(e)}
        if isinstance(e, SyncError) and e.report is not None:
            out["syncResult"] = e.report.to_dict()
        return out
    except Exception as e:
        db.rollback()
        logger.error(
            "Scheduled WHOOP sync crashed",
            extra={"extra_fields": {"user_id": str(user_id), "error": str(e)}},
            exc_info=True,
        )
        return {"status": "error", "user_id": str(user_id), "error_code": type(e).__name__, "message": str(e)}


def connected_user_ids(db: Session) -> List[UUID]:
    rows = (
        db.query(ProviderToken.user_id)
        .filter(ProviderToken.provider == "whoop", ProviderToken.refresh_failed_at.is_(None))
        .distinct()
        .all()
    )
    return [r[0] for r in rows]


def sync_all_users(db: Session, client: Any = None) -> Dict[str, Any]:
    user_ids = connected_user_ids(db)
    logger.info(f"Running scheduled WHOOP sync for {len(user_ids)} users")

    results = [sync_user(db, user_id, client) for user_id in user_ids]
    failures = [r for r in results if r["status"] != "success"]
    return {
        "status": "success",
        "users": len(results),
        "succeeded": len(results) - len(failures),
        "failed": len(failures),
        "failures": failures,
    }


@celery_app.task(name="tasks.sync_whoop_user", bind=True)
def sync_whoop_user_task(self: Task, user_id: str) -> Dict:
    """Sync a single user's WHOOP data."""
    db: Session = get_db_sync()
    try:
        return sync_user(db, UUID(user_id))
    except Exception as e:
        db.rollback()
        logger.error(f"Error in sync_whoop_user_task: {str(e)}", exc_info=True)
        return {"status": "error", "user_id": user_id, "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.sync_all_whoop_users")
def sync_all_whoop_users_task() -> Dict:
    """
    Sync every user holding a WHOOP token.

    Called by Celery Beat every 30 minutes. Per-user failures are collected in
    the result rather than raised.
    """
    db: Session = get_db_sync()
    try:
        return sync_all_users(db)
    except Exception as e:
        db.rollback()
        logger.error(f"Error in sync_all_whoop_users_task: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.purge_expired_oauth_states")
def purge_expired_oauth_states_task() -> Dict:
    """Drop OAuth states nobody came back for. Called by Celery Beat hourly."""
    db: Session = get_db_sync()
    try:
        removed = OAuthStateStore(db).purge_expired()
        db.commit()
        if removed:
            logger.info("Purged expired OAuth states", extra={"extra_fields": {"purged": removed}})
        return {"status": "success", "purged": removed}
    except Exception as e:
        db.rollback()
        logger.error(f"Error in purge_expired_oauth_states_task: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
