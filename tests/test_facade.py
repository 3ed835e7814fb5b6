"""End-to-end tests through ControlPlaneFacade.

Tests verify:
- checkout: an unsafe new path is rolled back automatically to 0%
- Rollback evicts sticky decisions so sticky keys return to legacy
- Startup loads persisted policies, applies the seed and reconciles sagas
- Admin operations (get/list/set policy, saga status) behave as documented
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from migration_control_plane.adapters.memory_store import InMemoryControlPlaneStore
from migration_control_plane.core.models import (
    HealthState,
    RollbackTrigger,
    SagaStatus,
    Target,
)
from migration_control_plane.errors import NotFoundError, ValidationError
from migration_control_plane.facade import ControlPlaneFacade
from migration_control_plane.saga.definition import SagaDefinition, SagaStep
from migration_control_plane.settings import Settings


def _report(
    control_plane: ControlPlaneFacade,
    target: Target,
    window_start: datetime,
    count: int,
    error_count: int,
) -> None:
    for _ in range(count):
        control_plane.report_sample(
            operation_id="checkout",
            target=target,
            window_start=window_start,
            request_count=100,
            error_count=error_count,
            p99_latency_ms=180.0,
        )


class TestCheckoutRollback:
    """checkout at 50% with a failing new path is rolled back automatically."""

    @pytest.mark.asyncio()
    async def test_unsafe_new_path_rolled_back(
        self,
        control_plane: ControlPlaneFacade,
        window_start: datetime,
    ) -> None:
        """40 new samples at 20% errors vs 40 legacy samples at 1% ends at 0% with one event."""
        await control_plane.start()
        await control_plane.set_policy("checkout", 50, expected_version=0, updated_by="release-manager")
        _report(control_plane, Target.NEW, window_start, 40, error_count=20)
        _report(control_plane, Target.LEGACY, window_start, 40, error_count=1)

        verdicts = await control_plane.evaluate_health("checkout")
        await control_plane.evaluate_health("checkout")

        assert verdicts[0].state is HealthState.UNSAFE
        assert control_plane.get_policy("checkout").new_path_percentage == 0
        events = await control_plane.list_rollback_events("checkout")
        assert len(events) == 1
        assert events[0].triggered_by is RollbackTrigger.AUTOMATIC
        assert events[0].previous_percentage == 50
        assert all(
            control_plane.route("checkout", f"customer-{i}").target is Target.LEGACY for i in range(200)
        )
        await control_plane.stop()

    @pytest.mark.asyncio()
    async def test_reenable_after_window_does_not_roll_back_again(
        self,
        control_plane: ControlPlaneFacade,
        window_start: datetime,
        clock: MagicMock,
    ) -> None:
        """Evidence from before a rollback ages out once the window has moved on."""
        await control_plane.set_policy("checkout", 50, expected_version=0)
        _report(control_plane, Target.NEW, window_start, 40, error_count=20)
        _report(control_plane, Target.LEGACY, window_start, 40, error_count=1)
        await control_plane.evaluate_health("checkout")
        assert control_plane.get_policy("checkout").new_path_percentage == 0

        clock.return_value = window_start + timedelta(minutes=6)
        await control_plane.set_policy("checkout", 10, expected_version=2)
        verdicts = await control_plane.evaluate_health("checkout")

        assert verdicts[0].state is HealthState.DEGRADED
        assert control_plane.get_policy("checkout").new_path_percentage == 10
        assert len(await control_plane.list_rollback_events("checkout")) == 1

    @pytest.mark.asyncio()
    async def test_future_dated_sample_does_not_hide_current_evidence(
        self,
        control_plane: ControlPlaneFacade,
        window_start: datetime,
    ) -> None:
        """A sample stamped far ahead is rejected and current samples still count."""
        await control_plane.set_policy("checkout", 50, expected_version=0)

        accepted = control_plane.report_sample("checkout", Target.NEW, window_start + timedelta(days=1), 100, 0, 100.0)
        _report(control_plane, Target.NEW, window_start, 40, error_count=20)
        _report(control_plane, Target.LEGACY, window_start, 40, error_count=1)
        verdicts = await control_plane.evaluate_health("checkout")

        assert accepted is False
        assert verdicts[0].state is HealthState.UNSAFE
        assert control_plane.get_policy("checkout").new_path_percentage == 0

    @pytest.mark.asyncio()
    async def test_rollback_evicts_sticky_decisions(
        self,
        control_plane: ControlPlaneFacade,
        window_start: datetime,
    ) -> None:
        """Sticky keys on the new path return to legacy after a rollback."""
        await control_plane.set_policy("checkout", 100, expected_version=0, sticky_by_key=True)
        assert control_plane.route("checkout", "customer-1").target is Target.NEW

        await control_plane.force_rollback("checkout", "incident 42")

        decision = control_plane.route("checkout", "customer-1")
        assert decision.target is Target.LEGACY
        assert decision.source == "percentage"

    @pytest.mark.asyncio()
    async def test_sticky_kept_when_eviction_disabled(
        self,
        store: InMemoryControlPlaneStore,
        mock_notifier: AsyncMock,
        no_sleep: AsyncMock,
    ) -> None:
        """With evict_sticky_on_rollback disabled sticky keys keep their target."""
        settings = Settings(evaluation_interval_seconds=0, evict_sticky_on_rollback=False)
        control_plane = ControlPlaneFacade(store, mock_notifier, settings, sleep=no_sleep)
        await control_plane.set_policy("checkout", 100, expected_version=0, sticky_by_key=True)
        control_plane.route("checkout", "customer-1")

        await control_plane.force_rollback("checkout", "incident 43")

        assert control_plane.route("checkout", "customer-1").target is Target.NEW

    @pytest.mark.asyncio()
    async def test_invalid_sample_rejected(
        self,
        control_plane: ControlPlaneFacade,
        window_start: datetime,
    ) -> None:
        """Samples with more errors than requests are a ValidationError."""
        with pytest.raises(ValidationError):
            control_plane.report_sample("checkout", Target.NEW, window_start, 10, 11, 100.0)


class TestLifecycle:
    """Tests for start() and stop()."""

    @pytest.mark.asyncio()
    async def test_start_applies_seed_without_overwriting(
        self,
        store: InMemoryControlPlaneStore,
        mock_notifier: AsyncMock,
        no_sleep: AsyncMock,
        tmp_path: Path,
    ) -> None:
        """Seeded policies are created; existing policies are left untouched."""
        seed = tmp_path / "policies.yaml"
        seed.write_text(
            "policies:\n"
            "  - operation_id: checkout\n"
            "    new_path_percentage: 25\n"
            "  - operation_id: refund\n"
            "    new_path_percentage: 10\n"
            "    sticky_by_key: true\n",
            encoding="utf-8",
        )
        first = ControlPlaneFacade(store, mock_notifier, Settings(evaluation_interval_seconds=0), sleep=no_sleep)
        await first.set_policy("checkout", 5, expected_version=0)

        settings = Settings(evaluation_interval_seconds=0, policy_seed_path=str(seed))
        restarted = ControlPlaneFacade(store, mock_notifier, settings, sleep=no_sleep)
        await restarted.start()

        assert restarted.get_policy("checkout").new_path_percentage == 5
        refund = restarted.get_policy("refund")
        assert refund.new_path_percentage == 10
        assert refund.sticky_by_key is True
        assert refund.updated_by == "policy-seed"

    @pytest.mark.asyncio()
    async def test_start_reconciles_in_flight_sagas(
        self,
        store: InMemoryControlPlaneStore,
        mock_notifier: AsyncMock,
        settings: Settings,
        no_sleep: AsyncMock,
    ) -> None:
        """A saga left running by a crashed process is finished on startup."""
        invoked: list[str] = []

        def step(name: str) -> SagaStep:
            def invoke(payload: Any) -> Any:
                invoked.append(name)
                return payload

            return SagaStep(name=name, invoke=invoke)

        definition = SagaDefinition(name="checkoutOrder", steps=(step("reserve"), step("charge")))
        crashed = ControlPlaneFacade(store, mock_notifier, settings, sleep=no_sleep)
        instance = await crashed.registry.create("checkoutOrder", {"order": 7}, instance_id="order-7")
        await crashed.registry.record_step_completed(instance, "reserve", 0, {"order": 7})

        restarted = ControlPlaneFacade(store, mock_notifier, settings, sleep=no_sleep)
        restarted.register_saga(definition)
        await restarted.start()

        status = await restarted.get_saga_status("order-7")
        assert status.status is SagaStatus.COMPLETED
        assert invoked == ["charge"]

    @pytest.mark.asyncio()
    async def test_background_loop_starts_and_stops(
        self,
        store: InMemoryControlPlaneStore,
        mock_notifier: AsyncMock,
        no_sleep: AsyncMock,
    ) -> None:
        """A positive evaluation interval runs the loop until stop()."""
        control_plane = ControlPlaneFacade(
            store, mock_notifier, Settings(evaluation_interval_seconds=0.01), sleep=no_sleep
        )

        await control_plane.start()
        await control_plane.stop()


class TestAdministration:
    """Tests for admin operations."""

    @pytest.mark.asyncio()
    async def test_get_policy_unknown(self, control_plane: ControlPlaneFacade) -> None:
        """get_policy raises NotFoundError for unknown operations."""
        with pytest.raises(NotFoundError):
            control_plane.get_policy("ghost")

    @pytest.mark.asyncio()
    async def test_execute_saga_by_name(self, control_plane: ControlPlaneFacade) -> None:
        """Registered sagas can be executed by name and inspected afterwards."""
        control_plane.register_saga(
            SagaDefinition(name="noop", steps=(SagaStep(name="only", invoke=lambda payload: payload),))
        )

        result = await control_plane.execute_saga("noop", {"x": 1}, instance_id="noop-1")
        recovered = await control_plane.recover_saga("noop-1")

        assert result.status is SagaStatus.COMPLETED
        assert recovered.status is SagaStatus.COMPLETED
        assert (await control_plane.get_saga_status("noop-1")).completed_steps[0].output == {"x": 1}

    @pytest.mark.asyncio()
    async def test_list_policies_and_evict(self, control_plane: ControlPlaneFacade) -> None:
        """list_policies is ordered by operation and evict_sticky reports removals."""
        await control_plane.set_policy("refund", 100, expected_version=0, sticky_by_key=True)
        await control_plane.set_policy("checkout", 0, expected_version=0)
        control_plane.route("refund", "k1")
        control_plane.route("refund", "k2")

        assert [policy.operation_id for policy in control_plane.list_policies()] == ["checkout", "refund"]
        assert control_plane.evict_sticky("refund") == 2
