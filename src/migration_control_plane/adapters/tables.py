"""SQLAlchemy ORM tables for the durable control plane store.

Tables (prefix: cp_):
- cp_routing_policies  - one row per operation; ``version`` drives CAS writes
- cp_saga_instances    - saga progress snapshots, rewritten on every transition
- cp_rollback_events   - append-only rollback audit trail

JSON columns are JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for control plane tables."""


class RoutingPolicyRow(Base):
    """Current routing policy of one operation.

    Attributes:
        operation_id: Primary key; the migrated business operation.
        new_path_percentage: Share of buckets routed to New, 0..100.
        targeting_rules: Ordered list of rule dicts.
        sticky_by_key: Whether decisions stick per routing key.
        version: Monotonic CAS version.
    """

    __tablename__ = "cp_routing_policies"

    operation_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    new_path_percentage: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Share of traffic routed to the new path, 0..100",
    )
    targeting_rules: Mapped[list[Any]] = mapped_column(JsonColumn, nullable=False, default=list)
    sticky_by_key: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Monotonically increasing version used for compare-and-swap writes",
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)


class SagaInstanceRow(Base):
    """Durable saga instance snapshot."""

    __tablename__ = "cp_saga_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    definition_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="running | completed | compensating | compensated | compensation_failed",
    )
    input: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    completed_steps: Mapped[list[Any]] = mapped_column(JsonColumn, nullable=False, default=list)
    compensated_steps: Mapped[list[Any]] = mapped_column(JsonColumn, nullable=False, default=list)
    failed_step: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RollbackEventRow(Base):
    """Append-only rollback audit record. Never updated or deleted."""

    __tablename__ = "cp_rollback_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    operation_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    previous_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    new_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False, comment="automatic | manual")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
