from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Index, Text, UniqueConstraint, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """
    Minimal identity row: bearer tokens name a user by `sub`, and every
    integration row hangs off it. Profile data lives outside this service.
    """
    __tablename__ = "app_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)


class OAuthState(Base):
    """
    Short-lived CSRF state for the provider handshake.

    - Created at authorize time, claimed once by the callback, then deleted.
    - `consumed_at` is set by an atomic conditional UPDATE so two concurrent
      callbacks cannot both claim the same state.
    """
    __tablename__ = "oauth_state"

    state = Column(Text, primary_key=True)
    user_id = Column(Uuid, ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(Text, nullable=False, default="whoop")
    created_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)


class ProviderToken(Base):
    """
    Provider access/refresh tokens (encrypted at rest).

    Deliberately no unique constraint on (user_id, provider): concurrent saves can
    leave duplicates, and the vault keeps the row with the greatest `updated_at`
    and purges the rest on read.
    """
    __tablename__ = "provider_token"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False)
    provider = Column(Text, nullable=False)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    # Set explicitly on save/refresh only; ordering key for duplicate reconciliation.
    updated_at = Column(DateTime(timezone=True), nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    # Set when a refresh is rejected; the connection stays dead until the next save.
    refresh_failed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_provider_token_user_provider", "user_id", "provider"),
    )


class Metric(Base):
    """Named, unit-typed time series for a user (metric dimension)."""
    __tablename__ = "metric"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False)
    metric_name = Column(Text, nullable=False)
    metric_category = Column(Text, nullable=False)
    unit = Column(Text, nullable=False)
    source = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "metric_name", "source", name="uq_metric_user_name_source"),
    )


class MetricValue(Base):
    """
    One dated, sourced data point of a metric.

    (metric_id, measurement_date, external_id) is unique; ingestion upserts on it.
    """
    __tablename__ = "metric_value"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    metric_id = Column(Uuid, ForeignKey("metric.id", ondelete="CASCADE"), nullable=False)
    value = Column(Float, nullable=False)
    measurement_date = Column(Date, nullable=False)
    external_id = Column(Text, nullable=False)
    source_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("metric_id", "measurement_date", "external_id", name="uq_metric_value_identity"),
        Index("ix_metric_value_metric_date", "metric_id", "measurement_date"),
    )


class IntegrationEvent(Base):
    """Append-only audit trail of handshake/sync outcomes."""
    __tablename__ = "integration_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True, index=True)
    provider = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)  # 'auth_started' | 'connected' | 'sync' | 'token_refresh' | 'disconnected' ...
    status = Column(Text, nullable=False)  # 'success' | 'error'
    error_code = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_integration_event_provider_type", "provider", "event_type"),
    )
