"""Traffic routing: versioned rollout policies and deterministic bucketing."""

from migration_control_plane.routing.bucketer import BUCKET_COUNT, Bucketer, bucket_for
from migration_control_plane.routing.policy_store import RoutingPolicyStore

__all__ = [
    "BUCKET_COUNT",
    "Bucketer",
    "RoutingPolicyStore",
    "bucket_for",
]
