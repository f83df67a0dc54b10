from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import UUID

import logging
from sqlalchemy.orm import Session

from core.exceptions import IntegrationError
from models import IntegrationEvent

logger = logging.getLogger(__name__)


class EventLogger:
    def __init__(self, db: Session, provider: str = "whoop"):
        self.db = db
        self.provider = provider

    def record(
        self,
        event_type: str,
        *,
        user_id: Optional[UUID] = None,
        status: str = "success",
        details: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """
        Best-effort append-only audit row for integration events.

        Safety:
        - Never throws; a failed write is logged and the caller's outcome stands.
        - Written inside a savepoint so a failure cannot poison the caller's transaction.
        - Details must be bounded and must not contain tokens.
        """
        error_code = None
        error_message = None
        if error is not None:
            status = "error"
            error_code = error.error_code if isinstance(error, IntegrationError) else type(error).__name__
            error_message = str(error)[:1000]

        try:
            with self.db.begin_nested():
                self.db.add(
                    IntegrationEvent(
                        user_id=user_id,
                        provider=self.provider,
                        event_type=event_type,
                        status=status,
                        error_code=error_code,
                        error_message=error_message,
                        details=details or {},
                    )
                )
        except Exception as e:
            logger.warning(
                "Integration event logging failed: %s",
                str(e),
                extra={"extra_fields": {"event_type": event_type, "user_id": str(user_id) if user_id else None}},
            )
