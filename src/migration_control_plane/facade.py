"""ControlPlaneFacade: single entry point of the migration control plane.

Wires the components over one storage backend and one notifier:

    RoutingPolicyStore ──> Bucketer                (route)
            ^
            └── RollbackController <── HealthEvaluator   (report_sample / evaluate_health)
    MigrationRegistry  <── SagaCoordinator         (execute_saga / recover_saga)

The facade holds no business logic of its own. It translates caller input
into component calls, owns the lifecycle (startup load, seeding, saga
reconciliation, the background health loop) and exposes the admin
operations used by the HTTP surface.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import pydantic

from migration_control_plane.adapters.policy_seed import apply_policy_seed, load_policy_seed
from migration_control_plane.core.interfaces import (
    INotifier,
    IPolicyRepository,
    IRollbackEventLog,
    ISagaRepository,
)
from migration_control_plane.core.models import (
    HealthSample,
    HealthVerdict,
    RollbackEvent,
    RoutingDecision,
    RoutingPolicy,
    SagaInstance,
    SagaResult,
    Target,
    TargetingRule,
    utc_now,
)
from migration_control_plane.errors import NotFoundError, ValidationError
from migration_control_plane.health.evaluator import Clock, HealthEvaluator
from migration_control_plane.observability import get_logger
from migration_control_plane.rollback.controller import RollbackController, Sleeper
from migration_control_plane.routing.bucketer import Bucketer
from migration_control_plane.routing.policy_store import RoutingPolicyStore
from migration_control_plane.saga.coordinator import SagaCoordinator
from migration_control_plane.saga.definition import SagaDefinition
from migration_control_plane.saga.registry import MigrationRegistry
from migration_control_plane.settings import Settings

logger = get_logger(__name__)


class ControlPlaneStore(IPolicyRepository, ISagaRepository, IRollbackEventLog, Protocol):
    """A storage backend implementing every control plane storage port."""


class ControlPlaneFacade:
    """Coordinates routing, sagas, health evaluation and rollback.

    Args:
        store: Storage backend (InMemoryControlPlaneStore or SqlControlPlaneStore).
        notifier: Alerting collaborator.
        settings: Service settings. Defaults apply when None.
        sleep: Awaitable sleep used for retry backoff (injectable for tests).
        clock: Current-time source anchoring the health window (injectable for tests).
    """

    def __init__(
        self,
        store: ControlPlaneStore,
        notifier: INotifier,
        settings: Settings | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        """Build and wire every component.

        Args:
            store: Storage backend.
            notifier: Alerting collaborator.
            settings: Service settings.
            sleep: Awaitable sleep for backoff.
            clock: Current UTC time source.
        """
        self._settings = settings or Settings()
        self._notifier = notifier

        self.policy_store = RoutingPolicyStore(store)
        self.bucketer = Bucketer(self.policy_store)
        self.registry = MigrationRegistry(store)
        self.coordinator = SagaCoordinator(
            self.registry,
            notifier,
            compensation_max_attempts=self._settings.compensation_max_attempts,
            compensation_backoff_seconds=self._settings.compensation_backoff_seconds,
            compensation_backoff_max_seconds=self._settings.compensation_backoff_max_seconds,
            default_step_timeout_seconds=self._settings.step_timeout_seconds,
            sleep=sleep,
        )
        self.evaluator = HealthEvaluator(self._settings.health_thresholds(), clock=clock)
        self.controller = RollbackController(
            self.policy_store,
            store,
            notifier,
            rollback_step_size=self._settings.rollback_step_size,
            max_apply_attempts=self._settings.rollback_max_attempts,
            backoff_seconds=self._settings.rollback_backoff_seconds,
            backoff_max_seconds=self._settings.rollback_backoff_max_seconds,
            sleep=sleep,
        )

        self.evaluator.subscribe(self.controller.on_verdict)
        if self._settings.evict_sticky_on_rollback:
            self.controller.subscribe(self._evict_after_rollback)

        self._stop_event: asyncio.Event | None = None
        self._health_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load policies, apply the seed, reconcile sagas and start the health loop.

        Saga definitions must be registered before start() for their
        in-flight instances to be reconciled.
        """
        await self.policy_store.load()

        if self._settings.policy_seed_path:
            seeds = load_policy_seed(Path(self._settings.policy_seed_path))
            await apply_policy_seed(self.policy_store, seeds)

        if self._settings.reconcile_on_startup:
            await self.coordinator.reconcile()

        interval = self._settings.evaluation_interval_seconds
        if interval > 0 and self._health_task is None:
            self._stop_event = asyncio.Event()
            self._health_task = asyncio.create_task(self.evaluator.run(interval, self._stop_event))

        logger.info(
            "Control plane started",
            policies=len(self.policy_store.list_policies()),
            evaluation_interval_seconds=interval,
        )

    async def stop(self) -> None:
        """Stop the background health loop."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._health_task is not None:
            await self._health_task
        self._health_task = None
        self._stop_event = None
        logger.info("Control plane stopped")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(
        self,
        operation_id: str,
        routing_key: str,
        context: dict[str, Any] | None = None,
    ) -> RoutingDecision:
        """Decide Legacy or New for one request. Never raises."""
        return self.bucketer.route(operation_id, routing_key, context)

    def evict_sticky(self, operation_id: str, routing_key: str | None = None) -> int:
        """Forget sticky routing decisions of an operation (or one key)."""
        return self.bucketer.evict_sticky(operation_id, routing_key)

    # ------------------------------------------------------------------
    # Sagas
    # ------------------------------------------------------------------

    def register_saga(self, definition: SagaDefinition) -> None:
        """Register a saga definition so it can be executed by name."""
        self.coordinator.register(definition)

    async def execute_saga(
        self,
        definition: SagaDefinition | str,
        saga_input: Any = None,
        instance_id: str | None = None,
    ) -> SagaResult:
        """Execute a saga to a terminal status.

        Args:
            definition: A SagaDefinition or the name of a registered one.
            saga_input: Input of the first step.
            instance_id: Optional instance ID; an existing instance is resumed.

        Returns:
            SagaResult with a terminal status. Step failures never raise.
        """
        return await self.coordinator.execute(definition, saga_input, instance_id)

    async def recover_saga(self, instance_id: str) -> SagaResult:
        """Resume a saga instance from its recorded progress."""
        return await self.coordinator.recover(instance_id)

    async def get_saga_status(self, instance_id: str) -> SagaInstance:
        """Return the recorded state of a saga instance.

        Raises:
            NotFoundError: If the instance does not exist.
        """
        return await self.registry.get(instance_id)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def report_sample(
        self,
        operation_id: str,
        target: Target | str,
        window_start: datetime,
        request_count: int,
        error_count: int,
        p99_latency_ms: float,
    ) -> bool:
        """Record one metrics sample for an operation and target.

        Returns:
            True if retained, False if older than the rolling window.

        Raises:
            ValidationError: If the sample values are invalid.
        """
        try:
            sample = HealthSample(
                operation_id=operation_id,
                target=target,
                window_start=window_start,
                request_count=request_count,
                error_count=error_count,
                p99_latency_ms=p99_latency_ms,
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid health sample: {exc}", field="sample") from exc
        return self.evaluator.report_sample(sample)

    async def evaluate_health(self, operation_id: str | None = None) -> list[HealthVerdict]:
        """Evaluate the New path and publish verdicts to the rollback controller.

        Args:
            operation_id: One operation, or None for every operation with samples.

        Returns:
            The published verdicts.
        """
        operation_ids = [operation_id] if operation_id is not None else None
        return await self.evaluator.evaluate_and_publish(operation_ids)

    def check_health(self, operation_id: str, target: Target = Target.NEW) -> HealthVerdict:
        """Evaluate one target without publishing the verdict."""
        return self.evaluator.evaluate(operation_id, target)

    # ------------------------------------------------------------------
    # Policy administration
    # ------------------------------------------------------------------

    async def set_policy(
        self,
        operation_id: str,
        new_path_percentage: int,
        *,
        expected_version: int,
        targeting_rules: list[TargetingRule | dict[str, Any]] | tuple[TargetingRule, ...] = (),
        sticky_by_key: bool = False,
        updated_by: str = "operator",
    ) -> RoutingPolicy:
        """Create or replace a routing policy with compare-and-swap.

        Raises:
            ConcurrentPolicyUpdate: If expected_version is stale.
            ValidationError: If the policy values are invalid.
        """
        return await self.policy_store.set_policy(
            operation_id,
            new_path_percentage,
            expected_version=expected_version,
            targeting_rules=targeting_rules,
            sticky_by_key=sticky_by_key,
            updated_by=updated_by,
        )

    def get_policy(self, operation_id: str) -> RoutingPolicy:
        """Return the current policy of an operation.

        Raises:
            NotFoundError: If the operation has no policy.
        """
        policy = self.policy_store.get(operation_id)
        if policy is None:
            raise NotFoundError(resource="RoutingPolicy", resource_id=operation_id)
        return policy

    def list_policies(self) -> list[RoutingPolicy]:
        return self.policy_store.list_policies()

    async def force_rollback(
        self,
        operation_id: str,
        reason: str,
        requested_by: str = "operator",
    ) -> RollbackEvent | None:
        """Route all traffic of an operation back to Legacy immediately.

        Returns:
            The recorded event, or None if the operation was already at 0%.

        Raises:
            NotFoundError: If the operation has no policy.
        """
        return await self.controller.force_rollback(operation_id, reason, requested_by)

    async def list_rollback_events(self, operation_id: str) -> list[RollbackEvent]:
        return await self.controller.list_rollback_events(operation_id)

    def _evict_after_rollback(self, event: RollbackEvent) -> None:
        self.bucketer.evict_sticky(event.operation_id)
