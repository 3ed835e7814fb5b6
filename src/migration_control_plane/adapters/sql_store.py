"""SQLAlchemy async implementation of the control plane storage ports.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) in tests. Each port
call runs in its own short transaction from the session factory.

Policy compare-and-swap:
- expected_version == 0 -> INSERT guarded by the primary key; an existing
  row (IntegrityError) is a conflict
- expected_version > 0  -> UPDATE ... WHERE version = :expected; zero rows
  updated is a conflict

Key exports:
- create_engine_and_session_factory(...) - build the engine at startup
- init_schema(engine)                    - create missing tables
- SqlControlPlaneStore                   - IPolicyRepository + ISagaRepository + IRollbackEventLog
"""

from collections.abc import Collection
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from migration_control_plane.adapters.tables import (
    Base,
    RollbackEventRow,
    RoutingPolicyRow,
    SagaInstanceRow,
    as_utc,
)
from migration_control_plane.core.models import (
    RollbackEvent,
    RollbackTrigger,
    RoutingPolicy,
    SagaInstance,
    SagaStatus,
    TargetingRule,
)
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)


def create_engine_and_session_factory(
    database_url: str,
    echo: bool = False,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the async engine and its session factory.

    Args:
        database_url: SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``
            or ``sqlite+aiosqlite:///./control_plane.db``.
        echo: Log SQL statements.

    Returns:
        Tuple of (engine, session factory).
    """
    engine_kwargs: dict[str, Any] = {"echo": echo}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_pre_ping"] = True
    engine = create_async_engine(database_url, **engine_kwargs)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Database engine initialized", dialect=engine.dialect.name)
    return engine, session_factory


async def init_schema(engine: AsyncEngine) -> None:
    """Create any missing control plane tables."""
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", tables=sorted(Base.metadata.tables))


class SqlControlPlaneStore:
    """Durable store for policies, saga instances and rollback events.

    The rollback event log is append-only: this class has no method that
    updates or deletes a cp_rollback_events row.

    Args:
        session_factory: Async session factory bound to the control plane database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize SqlControlPlaneStore.

        Args:
            session_factory: Async session factory.
        """
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # IPolicyRepository
    # ------------------------------------------------------------------

    async def save_policy(self, policy: RoutingPolicy, expected_version: int) -> bool:
        """Persist a policy with compare-and-swap on its version.

        Args:
            policy: The new policy value (version == expected_version + 1).
            expected_version: Version the write is based on. 0 creates.

        Returns:
            True if the write was applied, False on a version conflict.
        """
        values = _policy_values(policy)
        if expected_version == 0:
            try:
                async with self._session_factory() as session, session.begin():
                    session.add(RoutingPolicyRow(**values))
            except IntegrityError:
                logger.info("Policy insert conflicted", operation_id=policy.operation_id)
                return False
            return True

        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RoutingPolicyRow)
                .where(
                    RoutingPolicyRow.operation_id == policy.operation_id,
                    RoutingPolicyRow.version == expected_version,
                )
                .values(**values)
            )
            applied = result.rowcount == 1
        if not applied:
            logger.info(
                "Policy update conflicted",
                operation_id=policy.operation_id,
                expected_version=expected_version,
            )
        return applied

    async def load_policy(self, operation_id: str) -> RoutingPolicy | None:
        async with self._session_factory() as session:
            row = await session.get(RoutingPolicyRow, operation_id)
            return _policy_from_row(row) if row is not None else None

    async def list_policies(self) -> list[RoutingPolicy]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RoutingPolicyRow).order_by(RoutingPolicyRow.operation_id)
            )
            return [_policy_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # ISagaRepository
    # ------------------------------------------------------------------

    async def save_saga_instance(self, instance: SagaInstance) -> None:
        """Insert or replace a saga instance snapshot.

        Args:
            instance: The instance. Its input and step outputs must be JSON-serializable.
        """
        data = instance.model_dump(mode="json")
        row = SagaInstanceRow(
            id=instance.id,
            definition_name=instance.definition_name,
            status=instance.status.value,
            input=data["input"],
            completed_steps=data["completed_steps"],
            compensated_steps=data["compensated_steps"],
            failed_step=instance.failed_step,
            error=instance.error,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
        )
        async with self._session_factory() as session, session.begin():
            await session.merge(row)

    async def load_saga_instance(self, instance_id: str) -> SagaInstance | None:
        async with self._session_factory() as session:
            row = await session.get(SagaInstanceRow, instance_id)
            return _saga_from_row(row) if row is not None else None

    async def list_saga_instances(
        self,
        statuses: Collection[SagaStatus] | None = None,
    ) -> list[SagaInstance]:
        """List saga instances ordered by creation time.

        Args:
            statuses: Optional status allow-list.

        Returns:
            Matching instances.
        """
        stmt = select(SagaInstanceRow).order_by(SagaInstanceRow.created_at)
        if statuses is not None:
            stmt = stmt.where(SagaInstanceRow.status.in_([status.value for status in statuses]))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_saga_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # IRollbackEventLog (append-only)
    # ------------------------------------------------------------------

    async def append_rollback_event(self, event: RollbackEvent) -> None:
        """Append an immutable rollback event.

        Args:
            event: The event to record.
        """
        async with self._session_factory() as session, session.begin():
            session.add(
                RollbackEventRow(
                    id=event.id,
                    operation_id=event.operation_id,
                    previous_percentage=event.previous_percentage,
                    new_percentage=event.new_percentage,
                    policy_version=event.policy_version,
                    triggered_by=event.triggered_by.value,
                    reason=event.reason,
                    occurred_at=event.occurred_at,
                )
            )
        logger.info(
            "Rollback event written",
            event_id=event.id,
            operation_id=event.operation_id,
            triggered_by=event.triggered_by.value,
        )

    async def list_rollback_events(self, operation_id: str) -> list[RollbackEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RollbackEventRow)
                .where(RollbackEventRow.operation_id == operation_id)
                .order_by(RollbackEventRow.occurred_at)
            )
            return [
                RollbackEvent(
                    id=row.id,
                    operation_id=row.operation_id,
                    previous_percentage=row.previous_percentage,
                    new_percentage=row.new_percentage,
                    policy_version=row.policy_version,
                    triggered_by=RollbackTrigger(row.triggered_by),
                    reason=row.reason,
                    occurred_at=as_utc(row.occurred_at),
                )
                for row in result.scalars().all()
            ]


def _policy_values(policy: RoutingPolicy) -> dict[str, Any]:
    return {
        "operation_id": policy.operation_id,
        "new_path_percentage": policy.new_path_percentage,
        "targeting_rules": [rule.model_dump(mode="json") for rule in policy.targeting_rules],
        "sticky_by_key": policy.sticky_by_key,
        "version": policy.version,
        "updated_at": policy.updated_at,
        "updated_by": policy.updated_by,
    }


def _policy_from_row(row: RoutingPolicyRow) -> RoutingPolicy:
    return RoutingPolicy(
        operation_id=row.operation_id,
        new_path_percentage=row.new_path_percentage,
        targeting_rules=tuple(TargetingRule.model_validate(rule) for rule in row.targeting_rules or []),
        sticky_by_key=row.sticky_by_key,
        version=row.version,
        updated_at=as_utc(row.updated_at),
        updated_by=row.updated_by,
    )


def _saga_from_row(row: SagaInstanceRow) -> SagaInstance:
    return SagaInstance.model_validate(
        {
            "id": row.id,
            "definition_name": row.definition_name,
            "status": row.status,
            "input": row.input,
            "completed_steps": row.completed_steps or [],
            "compensated_steps": row.compensated_steps or [],
            "failed_step": row.failed_step,
            "error": row.error,
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
        }
    )
