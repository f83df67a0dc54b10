"""
Idempotent metric persistence.

Metric dimensions are get-or-create on (user_id, metric_name, source) and values
are upserted on (metric_id, measurement_date, external_id), so replaying the
same provider records rewrites rows in place instead of duplicating them.

PostgreSQL and SQLite use native INSERT .. ON CONFLICT. Other dialects fall
back to read-then-write on the same keys.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import PersistenceError
from models import Metric, MetricValue

logger = logging.getLogger(__name__)

_NATIVE_UPSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class MetricUpsertWriter:
    def __init__(self, db: Session, source: str = "whoop"):
        self.db = db
        self.source = source
        self._metric_ids: Dict[Tuple[uuid.UUID, str], uuid.UUID] = {}

    @property
    def _insert(self):
        return _NATIVE_UPSERT.get(self.db.get_bind().dialect.name)

    def get_or_create_metric(self, user_id: uuid.UUID, name: str, category: str, unit: str) -> uuid.UUID:
        key = (user_id, name)
        cached = self._metric_ids.get(key)
        if cached is not None:
            return cached

        try:
            insert = self._insert
            if insert is not None:
                stmt = (
                    insert(Metric.__table__)
                    .values(
                        id=uuid.uuid4(),
                        user_id=user_id,
                        metric_name=name,
                        metric_category=category,
                        unit=unit,
                        source=self.source,
                    )
                    .on_conflict_do_nothing(index_elements=["user_id", "metric_name", "source"])
                )
                self.db.execute(stmt)
                metric_id = self._lookup_metric(user_id, name)
            else:
                metric_id = self._lookup_metric(user_id, name)
                if metric_id is None:
                    metric = Metric(
                        user_id=user_id,
                        metric_name=name,
                        metric_category=category,
                        unit=unit,
                        source=self.source,
                    )
                    self.db.add(metric)
                    self.db.flush()
                    metric_id = metric.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get or create metric '{name}': {e}")

        if metric_id is None:
            raise PersistenceError(f"Metric '{name}' missing after insert")
        self._metric_ids[key] = metric_id
        return metric_id

    def upsert_value(
        self,
        metric_id: uuid.UUID,
        value: float,
        measurement_date: date,
        external_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        try:
            insert = self._insert
            if insert is not None:
                stmt = insert(MetricValue.__table__).values(
                    id=uuid.uuid4(),
                    metric_id=metric_id,
                    value=float(value),
                    measurement_date=measurement_date,
                    external_id=external_id,
                    source_data=payload,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["metric_id", "measurement_date", "external_id"],
                    set_={
                        "value": stmt.excluded.value,
                        "source_data": stmt.excluded.source_data,
                        "updated_at": now,
                    },
                )
                self.db.execute(stmt)
                return

            existing = (
                self.db.query(MetricValue)
                .filter(
                    MetricValue.metric_id == metric_id,
                    MetricValue.measurement_date == measurement_date,
                    MetricValue.external_id == external_id,
                )
                .first()
            )
            if existing is None:
                self.db.add(
                    MetricValue(
                        metric_id=metric_id,
                        value=float(value),
                        measurement_date=measurement_date,
                        external_id=external_id,
                        source_data=payload,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                existing.value = float(value)
                existing.source_data = payload
                existing.updated_at = now
            self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to upsert metric value '{external_id}': {e}")

    def write(
        self,
        user_id: uuid.UUID,
        name: str,
        category: str,
        unit: str,
        value: float,
        measurement_date: date,
        external_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Get-or-create the metric, then upsert one value for it."""
        metric_id = self.get_or_create_metric(user_id, name, category, unit)
        self.upsert_value(metric_id, value, measurement_date, external_id, payload)

    def _lookup_metric(self, user_id: uuid.UUID, name: str) -> Optional[uuid.UUID]:
        return self.db.execute(
            select(Metric.id).where(
                Metric.user_id == user_id,
                Metric.metric_name == name,
                Metric.source == self.source,
            )
        ).scalar_one_or_none()
