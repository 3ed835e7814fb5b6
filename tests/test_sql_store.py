"""Tests for SqlControlPlaneStore against SQLite (aiosqlite).

Tests verify:
- Policy compare-and-swap on insert and update
- Policies, saga instances and rollback events round-trip with UTC timestamps
- Saga status filtering
- The rollback event log exposes no update/delete
- RoutingPolicyStore works unchanged over the SQL store
"""

from collections.abc import AsyncGenerator
from datetime import UTC
from pathlib import Path

import pytest
import pytest_asyncio

from migration_control_plane.adapters.sql_store import (
    SqlControlPlaneStore,
    create_engine_and_session_factory,
    init_schema,
)
from migration_control_plane.core.models import (
    CompletedStep,
    RollbackEvent,
    RollbackTrigger,
    RoutingPolicy,
    SagaInstance,
    SagaStatus,
    Target,
    TargetingRule,
)
from migration_control_plane.errors import ConcurrentPolicyUpdate
from migration_control_plane.routing.policy_store import RoutingPolicyStore


@pytest_asyncio.fixture()
async def sql_store(tmp_path: Path) -> AsyncGenerator[SqlControlPlaneStore, None]:
    """Create a SqlControlPlaneStore over a fresh SQLite file.

    Yields:
        The store; the engine is disposed afterwards.
    """
    engine, session_factory = create_engine_and_session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'control_plane.db'}"
    )
    await init_schema(engine)
    yield SqlControlPlaneStore(session_factory)
    await engine.dispose()


def _policy(version: int, percentage: int = 10) -> RoutingPolicy:
    return RoutingPolicy(
        operation_id="checkout",
        new_path_percentage=percentage,
        targeting_rules=(TargetingRule(attribute="region", values=("eu-west-1",), target=Target.NEW),),
        sticky_by_key=True,
        version=version,
        updated_by="test",
    )


class TestPolicyPersistence:
    """Tests for policy CAS writes."""

    @pytest.mark.asyncio()
    async def test_insert_then_conditional_update(self, sql_store: SqlControlPlaneStore) -> None:
        """Create with version 0, then update only from the current version."""
        assert await sql_store.save_policy(_policy(1), expected_version=0) is True
        assert await sql_store.save_policy(_policy(1), expected_version=0) is False
        assert await sql_store.save_policy(_policy(2, 30), expected_version=1) is True
        assert await sql_store.save_policy(_policy(2, 90), expected_version=1) is False

        loaded = await sql_store.load_policy("checkout")

        assert loaded is not None
        assert loaded.version == 2
        assert loaded.new_path_percentage == 30
        assert loaded.targeting_rules[0].values == ("eu-west-1",)
        assert loaded.sticky_by_key is True
        assert loaded.updated_at.tzinfo is not None

    @pytest.mark.asyncio()
    async def test_missing_policy(self, sql_store: SqlControlPlaneStore) -> None:
        """Loading an unknown policy returns None."""
        assert await sql_store.load_policy("ghost") is None
        assert await sql_store.list_policies() == []

    @pytest.mark.asyncio()
    async def test_policy_store_over_sql(self, sql_store: SqlControlPlaneStore) -> None:
        """Two replicas sharing the database detect each other's writes."""
        replica_a = RoutingPolicyStore(sql_store)
        replica_b = RoutingPolicyStore(sql_store)
        await replica_a.set_policy("checkout", 10, expected_version=0, updated_by="a")
        await replica_b.load()
        await replica_b.update_percentage("checkout", 20, expected_version=1, updated_by="b")

        with pytest.raises(ConcurrentPolicyUpdate):
            await replica_a.update_percentage("checkout", 30, expected_version=1, updated_by="a")

        assert replica_a.get("checkout").new_path_percentage == 20


class TestSagaPersistence:
    """Tests for saga instance snapshots."""

    @pytest.mark.asyncio()
    async def test_save_replaces_snapshot(self, sql_store: SqlControlPlaneStore) -> None:
        """Saving the same ID twice keeps the latest snapshot."""
        instance = SagaInstance(id="order-1", definition_name="checkoutOrder", input={"order": 1})
        await sql_store.save_saga_instance(instance)
        progressed = instance.model_copy(
            update={
                "status": SagaStatus.COMPENSATING,
                "completed_steps": [CompletedStep(name="reserve", index=0, output={"reservation": "r-1"})],
                "failed_step": "charge",
                "error": "Step 'charge' failed: declined",
            }
        )
        await sql_store.save_saga_instance(progressed)

        loaded = await sql_store.load_saga_instance("order-1")

        assert loaded is not None
        assert loaded.status is SagaStatus.COMPENSATING
        assert loaded.input == {"order": 1}
        assert loaded.completed_steps[0].output == {"reservation": "r-1"}
        assert loaded.failed_step == "charge"
        assert loaded.created_at.tzinfo == UTC

    @pytest.mark.asyncio()
    async def test_list_filters_by_status(self, sql_store: SqlControlPlaneStore) -> None:
        """list_saga_instances honours the status allow-list."""
        await sql_store.save_saga_instance(SagaInstance(id="a", definition_name="d"))
        await sql_store.save_saga_instance(SagaInstance(id="b", definition_name="d", status=SagaStatus.COMPLETED))

        running = await sql_store.list_saga_instances([SagaStatus.RUNNING])
        everything = await sql_store.list_saga_instances()

        assert [instance.id for instance in running] == ["a"]
        assert {instance.id for instance in everything} == {"a", "b"}


class TestRollbackEventLog:
    """Tests for the append-only rollback log."""

    @pytest.mark.asyncio()
    async def test_append_and_list(self, sql_store: SqlControlPlaneStore) -> None:
        """Events are listed per operation in order of occurrence."""
        first = RollbackEvent(
            operation_id="checkout",
            previous_percentage=50,
            new_percentage=20,
            policy_version=3,
            triggered_by=RollbackTrigger.AUTOMATIC,
            reason="error rate regression",
        )
        second = RollbackEvent(
            operation_id="checkout",
            previous_percentage=20,
            new_percentage=0,
            policy_version=4,
            triggered_by=RollbackTrigger.MANUAL,
            reason="incident",
        )
        await sql_store.append_rollback_event(first)
        await sql_store.append_rollback_event(second)

        events = await sql_store.list_rollback_events("checkout")

        assert [event.id for event in events] == [first.id, second.id]
        assert events[1].triggered_by is RollbackTrigger.MANUAL
        assert await sql_store.list_rollback_events("refund") == []

    def test_no_mutation_methods(self) -> None:
        """The store exposes no way to update or delete rollback events."""
        assert not hasattr(SqlControlPlaneStore, "update_rollback_event")
        assert not hasattr(SqlControlPlaneStore, "delete_rollback_event")
