"""RoutingPolicyStore: versioned, copy-on-write holder of rollout policies.

The store is the single writer of RoutingPolicy. Reads are lock-free snapshot
reads of immutable policy values: every write builds a new policy object and
a new snapshot dict, then swaps the reference. Writers are serialized by an
asyncio.Lock and use compare-and-swap on the policy version, both locally and
against the durable repository, so concurrent modifications are detected
instead of silently overwritten.
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

import pydantic

from migration_control_plane.core.interfaces import IPolicyRepository
from migration_control_plane.core.models import RoutingPolicy, TargetingRule, utc_now
from migration_control_plane.errors import ConcurrentPolicyUpdate, NotFoundError, ValidationError
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)

PolicyListener = Callable[[RoutingPolicy], None]


class RoutingPolicyStore:
    """Holds the current RoutingPolicy per operation.

    Args:
        repository: Durable policy storage implementing IPolicyRepository.
    """

    def __init__(self, repository: IPolicyRepository) -> None:
        """Initialize an empty store.

        Args:
            repository: Durable policy storage.
        """
        self._repository = repository
        self._policies: dict[str, RoutingPolicy] = {}
        self._write_lock = asyncio.Lock()
        self._listeners: list[PolicyListener] = []

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def get(self, operation_id: str) -> RoutingPolicy | None:
        """Return the current policy snapshot for an operation.

        Args:
            operation_id: The operation identifier.

        Returns:
            The immutable policy, or None if the operation has no policy.
        """
        return self._policies.get(operation_id)

    def list_policies(self) -> list[RoutingPolicy]:
        """Return all current policies ordered by operation ID."""
        snapshot = self._policies
        return [snapshot[key] for key in sorted(snapshot)]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Replace the in-memory snapshot with every persisted policy.

        Returns:
            Number of policies loaded.
        """
        policies = await self._repository.list_policies()
        async with self._write_lock:
            self._policies = {policy.operation_id: policy for policy in policies}
        for policy in policies:
            self._notify(policy)
        logger.info("Routing policies loaded", count=len(policies))
        return len(policies)

    async def refresh(self, operation_id: str) -> RoutingPolicy | None:
        """Reload one policy from durable storage into the snapshot.

        Args:
            operation_id: The operation identifier.

        Returns:
            The reloaded policy, or None if storage has none.
        """
        policy = await self._repository.load_policy(operation_id)
        async with self._write_lock:
            current = self._policies.get(operation_id)
            if policy is None or (current is not None and current.version >= policy.version):
                return current
            self._swap(policy)
        self._notify(policy)
        return policy

    # ------------------------------------------------------------------
    # Writes (compare-and-swap)
    # ------------------------------------------------------------------

    async def set_policy(
        self,
        operation_id: str,
        new_path_percentage: int,
        *,
        expected_version: int,
        targeting_rules: Iterable[TargetingRule | dict[str, Any]] = (),
        sticky_by_key: bool = False,
        updated_by: str,
    ) -> RoutingPolicy:
        """Create or replace a policy, guarded by the expected version.

        Args:
            operation_id: The operation identifier.
            new_path_percentage: Share of traffic routed to New, 0..100.
            expected_version: Version the caller read. 0 creates a new policy.
            targeting_rules: Ordered forced-target overrides.
            sticky_by_key: Whether decisions stick per routing key.
            updated_by: Actor performing the write.

        Returns:
            The newly applied policy.

        Raises:
            ValidationError: If the policy values are invalid.
            ConcurrentPolicyUpdate: If expected_version is stale.
        """
        try:
            rules = tuple(TargetingRule.model_validate(rule) for rule in targeting_rules)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid targeting rule: {exc}", field="targeting_rules") from exc

        return await self._write(
            operation_id=operation_id,
            expected_version=expected_version,
            build=lambda _current: {
                "new_path_percentage": new_path_percentage,
                "targeting_rules": rules,
                "sticky_by_key": sticky_by_key,
            },
            updated_by=updated_by,
        )

    async def update_percentage(
        self,
        operation_id: str,
        new_path_percentage: int,
        *,
        expected_version: int,
        updated_by: str,
    ) -> RoutingPolicy:
        """Change only the New-path percentage of an existing policy.

        Args:
            operation_id: The operation identifier.
            new_path_percentage: New share of traffic routed to New, 0..100.
            expected_version: Version the caller read.
            updated_by: Actor performing the write.

        Returns:
            The newly applied policy.

        Raises:
            NotFoundError: If the operation has no policy.
            ValidationError: If the percentage is outside 0..100.
            ConcurrentPolicyUpdate: If expected_version is stale.
        """

        def build(current: RoutingPolicy | None) -> dict[str, Any]:
            if current is None:
                raise NotFoundError(resource="RoutingPolicy", resource_id=operation_id)
            return {
                "new_path_percentage": new_path_percentage,
                "targeting_rules": current.targeting_rules,
                "sticky_by_key": current.sticky_by_key,
            }

        return await self._write(
            operation_id=operation_id,
            expected_version=expected_version,
            build=build,
            updated_by=updated_by,
        )

    def subscribe(self, listener: PolicyListener) -> None:
        """Register a listener called with every newly applied policy.

        Args:
            listener: Synchronous callable receiving the new policy.
        """
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write(
        self,
        operation_id: str,
        expected_version: int,
        build: Callable[[RoutingPolicy | None], dict[str, Any]],
        updated_by: str,
    ) -> RoutingPolicy:
        async with self._write_lock:
            current = self._policies.get(operation_id)
            current_version = current.version if current is not None else 0
            fields = build(current)

            try:
                policy = RoutingPolicy(
                    operation_id=operation_id,
                    version=expected_version + 1,
                    updated_at=utc_now(),
                    updated_by=updated_by,
                    **fields,
                )
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid routing policy: {exc}", field="policy") from exc

            if expected_version != current_version:
                raise ConcurrentPolicyUpdate(operation_id, expected_version, current_version)

            saved = await self._repository.save_policy(policy, expected_version)
            if not saved:
                # Another writer reached durable storage first; catch up before failing.
                stored = await self._repository.load_policy(operation_id)
                if stored is not None and stored.version > current_version:
                    self._swap(stored)
                logger.warning(
                    "Policy write rejected by storage",
                    operation_id=operation_id,
                    expected_version=expected_version,
                    stored_version=stored.version if stored is not None else None,
                )
                raise ConcurrentPolicyUpdate(
                    operation_id,
                    expected_version,
                    stored.version if stored is not None else None,
                )

            self._swap(policy)

        logger.info(
            "Routing policy updated",
            operation_id=operation_id,
            version=policy.version,
            new_path_percentage=policy.new_path_percentage,
            sticky_by_key=policy.sticky_by_key,
            rule_count=len(policy.targeting_rules),
            updated_by=updated_by,
        )
        self._notify(policy)
        return policy

    def _swap(self, policy: RoutingPolicy) -> None:
        snapshot = dict(self._policies)
        snapshot[policy.operation_id] = policy
        self._policies = snapshot

    def _notify(self, policy: RoutingPolicy) -> None:
        for listener in list(self._listeners):
            try:
                listener(policy)
            except Exception as exc:
                logger.error(
                    "Policy listener failed",
                    operation_id=policy.operation_id,
                    error=str(exc),
                )
