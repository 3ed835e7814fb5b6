"""Abstract interfaces (Protocol classes) for the migration control plane.

Defines the contracts between the core components and the adapter layer
using Python's typing.Protocol. Core components depend on these protocols,
never on concrete adapter implementations. This enables testing with the
in-memory store or with mocks.

Protocols defined:
- IPolicyRepository
- ISagaRepository
- IRollbackEventLog
- INotifier
"""

from collections.abc import Collection
from typing import Any, Protocol

from migration_control_plane.core.models import (
    AlertSeverity,
    RollbackEvent,
    RoutingPolicy,
    SagaInstance,
    SagaStatus,
)


class IPolicyRepository(Protocol):
    """Durable storage contract for RoutingPolicy."""

    async def save_policy(self, policy: RoutingPolicy, expected_version: int) -> bool:
        """Persist a policy if the stored version still equals expected_version.

        Args:
            policy: The new policy value (its version is expected_version + 1).
            expected_version: Version the write is based on. 0 means the policy
                must not exist yet.

        Returns:
            True if the write was applied, False on a version conflict.
        """
        ...

    async def load_policy(self, operation_id: str) -> RoutingPolicy | None:
        """Load the current policy for an operation.

        Args:
            operation_id: The operation identifier.

        Returns:
            The stored policy, or None if there is none.
        """
        ...

    async def list_policies(self) -> list[RoutingPolicy]:
        """Return every stored policy."""
        ...


class ISagaRepository(Protocol):
    """Durable storage contract for SagaInstance."""

    async def save_saga_instance(self, instance: SagaInstance) -> None:
        """Insert or replace a saga instance snapshot.

        Args:
            instance: The instance to persist. Step outputs and input must be
                serializable by the backing store.
        """
        ...

    async def load_saga_instance(self, instance_id: str) -> SagaInstance | None:
        """Load a saga instance by ID.

        Args:
            instance_id: The instance identifier.

        Returns:
            The stored instance, or None if there is none.
        """
        ...

    async def list_saga_instances(
        self,
        statuses: Collection[SagaStatus] | None = None,
    ) -> list[SagaInstance]:
        """List saga instances, optionally filtered by status.

        Args:
            statuses: Status allow-list. None returns all instances.

        Returns:
            Matching instances ordered by creation time.
        """
        ...


class IRollbackEventLog(Protocol):
    """Storage contract for RollbackEvent. APPEND-ONLY, no update/delete.

    IMPORTANT: This protocol intentionally omits update() and delete() methods.
    The rollback audit trail is never modified once written.
    """

    async def append_rollback_event(self, event: RollbackEvent) -> None:
        """Append an immutable rollback event.

        Args:
            event: The event to record.
        """
        ...

    async def list_rollback_events(self, operation_id: str) -> list[RollbackEvent]:
        """List rollback events for an operation, oldest first.

        Args:
            operation_id: The operation identifier.

        Returns:
            Events in the order they occurred.
        """
        ...


class INotifier(Protocol):
    """Alerting collaborator used for conditions that need a human."""

    async def notify(
        self,
        severity: AlertSeverity,
        message: str,
        context: dict[str, Any],
    ) -> None:
        """Deliver an operational alert.

        Args:
            severity: Alert severity.
            message: Human-readable summary.
            context: Structured details (operation, instance, attempts, ...).
        """
        ...
