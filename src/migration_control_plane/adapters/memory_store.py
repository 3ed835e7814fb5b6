"""In-memory implementation of the control plane storage ports.

InMemoryControlPlaneStore implements IPolicyRepository, ISagaRepository and
IRollbackEventLog in a single process. It keeps tests hermetic without
database infrastructure and is sufficient for single-replica deployments
where losing state on restart is acceptable.

Saga instances are deep-copied on the way in and out so that callers can
never mutate a stored snapshot. Policies and rollback events are frozen
models and are stored as-is. The rollback log is append-only: there is no
update or delete.
"""

from __future__ import annotations

from collections.abc import Collection

from migration_control_plane.core.models import (
    RollbackEvent,
    RoutingPolicy,
    SagaInstance,
    SagaStatus,
)


class InMemoryControlPlaneStore:
    """Dict-backed store for policies, saga instances and rollback events."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._policies: dict[str, RoutingPolicy] = {}
        self._sagas: dict[str, SagaInstance] = {}
        # { operation_id: list[RollbackEvent] } in append order
        self._rollback_events: dict[str, list[RollbackEvent]] = {}

    # ------------------------------------------------------------------
    # IPolicyRepository
    # ------------------------------------------------------------------

    async def save_policy(self, policy: RoutingPolicy, expected_version: int) -> bool:
        """Persist a policy if the stored version equals expected_version.

        Args:
            policy: The new policy value.
            expected_version: Version the write is based on (0 = create).

        Returns:
            True if applied, False on a version conflict.
        """
        current = self._policies.get(policy.operation_id)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            return False
        self._policies[policy.operation_id] = policy
        return True

    async def load_policy(self, operation_id: str) -> RoutingPolicy | None:
        return self._policies.get(operation_id)

    async def list_policies(self) -> list[RoutingPolicy]:
        return [self._policies[key] for key in sorted(self._policies)]

    # ------------------------------------------------------------------
    # ISagaRepository
    # ------------------------------------------------------------------

    async def save_saga_instance(self, instance: SagaInstance) -> None:
        self._sagas[instance.id] = instance.model_copy(deep=True)

    async def load_saga_instance(self, instance_id: str) -> SagaInstance | None:
        instance = self._sagas.get(instance_id)
        return instance.model_copy(deep=True) if instance is not None else None

    async def list_saga_instances(
        self,
        statuses: Collection[SagaStatus] | None = None,
    ) -> list[SagaInstance]:
        """List saga instances ordered by creation time.

        Args:
            statuses: Optional status allow-list.

        Returns:
            Deep copies of the matching instances.
        """
        instances = sorted(self._sagas.values(), key=lambda item: item.created_at)
        if statuses is not None:
            allowed = set(statuses)
            instances = [item for item in instances if item.status in allowed]
        return [item.model_copy(deep=True) for item in instances]

    # ------------------------------------------------------------------
    # IRollbackEventLog (append-only)
    # ------------------------------------------------------------------

    async def append_rollback_event(self, event: RollbackEvent) -> None:
        self._rollback_events.setdefault(event.operation_id, []).append(event)

    async def list_rollback_events(self, operation_id: str) -> list[RollbackEvent]:
        return list(self._rollback_events.get(operation_id, []))
