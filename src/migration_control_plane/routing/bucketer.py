"""Bucketer: deterministic request-to-target assignment.

Maps (operation_id, routing_key) to a stable bucket in [0, 100) using the
first 8 bytes of a SHA-256 digest, so the same key lands in the same bucket
for an operation regardless of call order, process or restart. Percentage
rollouts are therefore reproducible and auditable.

Decision order for a known operation:
1. Sticky cache hit (sticky mode only), wins over rules and percentage
2. First matching targeting rule
3. bucket < new_path_percentage -> New, otherwise Legacy

Routing never raises: unknown operations and internal errors route to Legacy.
"""

import hashlib
from typing import Any

from migration_control_plane.core.models import RoutingDecision, RoutingPolicy, Target
from migration_control_plane.observability import get_logger
from migration_control_plane.routing.policy_store import RoutingPolicyStore

logger = get_logger(__name__)

BUCKET_COUNT = 100

# Unit separator keeps ("a", "bc") and ("ab", "c") in different buckets
_KEY_SEPARATOR = "\x1f"


def bucket_for(operation_id: str, routing_key: str) -> int:
    """Return the stable bucket number for a routing key.

    Args:
        operation_id: The operation identifier.
        routing_key: The caller's routing key (customer ID, account ID, ...).

    Returns:
        Integer in [0, BUCKET_COUNT).
    """
    digest = hashlib.sha256(
        f"{operation_id}{_KEY_SEPARATOR}{routing_key}".encode("utf-8")
    ).digest()
    return int.from_bytes(digest[:8], "big") % BUCKET_COUNT


class Bucketer:
    """Routes requests to Legacy or New according to the current policy.

    The sticky cache maps operation -> routing key -> target. Writes to it are
    benign races: two simultaneous first calls for an unseen key may briefly
    disagree, after which setdefault settles on one value.

    Args:
        policy_store: Source of policy snapshots.
    """

    def __init__(self, policy_store: RoutingPolicyStore) -> None:
        self._policy_store = policy_store
        self._sticky: dict[str, dict[str, Target]] = {}
        policy_store.subscribe(self._on_policy_changed)

    def route(
        self,
        operation_id: str,
        routing_key: str,
        context: dict[str, Any] | None = None,
    ) -> RoutingDecision:
        """Decide the target for one request.

        Args:
            operation_id: The operation identifier.
            routing_key: The caller's routing key.
            context: Optional request attributes used by targeting rules.

        Returns:
            RoutingDecision. Never raises.
        """
        try:
            policy = self._policy_store.get(operation_id)
            if policy is None:
                return RoutingDecision(
                    operation_id=operation_id,
                    routing_key=routing_key,
                    target=Target.LEGACY,
                    policy_version=0,
                    source="unknown_operation",
                )
            return self._decide(policy, routing_key, context or {})
        except Exception as exc:
            logger.error(
                "Routing failed, falling back to legacy",
                operation_id=operation_id,
                error=str(exc),
            )
            return RoutingDecision(
                operation_id=operation_id,
                routing_key=str(routing_key),
                target=Target.LEGACY,
                policy_version=0,
                source="error",
            )

    def _decide(
        self,
        policy: RoutingPolicy,
        routing_key: str,
        context: dict[str, Any],
    ) -> RoutingDecision:
        bucket = bucket_for(policy.operation_id, routing_key)

        if policy.sticky_by_key:
            remembered = self._sticky.get(policy.operation_id, {}).get(routing_key)
            if remembered is not None:
                return RoutingDecision(
                    operation_id=policy.operation_id,
                    routing_key=routing_key,
                    target=remembered,
                    policy_version=policy.version,
                    bucket=bucket,
                    source="sticky",
                )

        target: Target | None = None
        source = "rule"
        for rule in policy.targeting_rules:
            if rule.matches(routing_key, context):
                target = rule.target
                break
        if target is None:
            source = "percentage"
            target = Target.NEW if bucket < policy.new_path_percentage else Target.LEGACY

        if policy.sticky_by_key:
            cache = self._sticky.setdefault(policy.operation_id, {})
            target = cache.setdefault(routing_key, target)

        return RoutingDecision(
            operation_id=policy.operation_id,
            routing_key=routing_key,
            target=target,
            policy_version=policy.version,
            bucket=bucket,
            source=source,
        )

    def evict_sticky(self, operation_id: str, routing_key: str | None = None) -> int:
        """Forget sticky decisions for an operation.

        Args:
            operation_id: The operation identifier.
            routing_key: A single key to forget. None forgets every key.

        Returns:
            Number of cache entries removed.
        """
        if routing_key is None:
            removed = len(self._sticky.pop(operation_id, {}))
        else:
            cache = self._sticky.get(operation_id, {})
            removed = 1 if cache.pop(routing_key, None) is not None else 0
        if removed:
            logger.info(
                "Sticky routing decisions evicted",
                operation_id=operation_id,
                routing_key=routing_key,
                removed=removed,
            )
        return removed

    def sticky_count(self, operation_id: str) -> int:
        """Return how many keys have a sticky decision for an operation."""
        return len(self._sticky.get(operation_id, {}))

    def _on_policy_changed(self, policy: RoutingPolicy) -> None:
        if not policy.sticky_by_key and policy.operation_id in self._sticky:
            self.evict_sticky(policy.operation_id)
