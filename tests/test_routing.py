"""Tests for RoutingPolicyStore and Bucketer.

Tests verify:
- Bucketing is deterministic and converges to the configured percentage
- Sticky decisions survive a drop to 0%
- Targeting rules override the percentage
- Compare-and-swap policy writes detect concurrent modification
- Routing never raises and falls back to legacy
"""

from unittest.mock import MagicMock

import pytest

from migration_control_plane.adapters.memory_store import InMemoryControlPlaneStore
from migration_control_plane.core.models import RuleOperator, Target, TargetingRule
from migration_control_plane.errors import ConcurrentPolicyUpdate, NotFoundError, ValidationError
from migration_control_plane.routing.bucketer import BUCKET_COUNT, Bucketer, bucket_for
from migration_control_plane.routing.policy_store import RoutingPolicyStore


class TestBucketFor:
    """Tests for the stable bucket function."""

    def test_same_key_same_bucket(self) -> None:
        """Repeated calls for one key return the same bucket."""
        buckets = {bucket_for("checkout", "customer-42") for _ in range(50)}
        assert len(buckets) == 1

    def test_bucket_within_range(self) -> None:
        """Every bucket is in [0, 100)."""
        for index in range(2_000):
            assert 0 <= bucket_for("checkout", f"key-{index}") < BUCKET_COUNT

    def test_operation_is_part_of_the_hash(self) -> None:
        """The same key is bucketed independently per operation."""
        differing = sum(
            1
            for index in range(200)
            if bucket_for("checkout", f"key-{index}") != bucket_for("refund", f"key-{index}")
        )
        assert differing > 150

    def test_separator_prevents_concatenation_collisions(self) -> None:
        """('a', 'bc') and ('ab', 'c') are hashed differently."""
        pairs = [(f"op{i}", f"x{i}") for i in range(50)]
        shifted = [(f"op{i}x", f"{i}") for i in range(50)]
        assert [bucket_for(*pair) for pair in pairs] != [bucket_for(*pair) for pair in shifted]


class TestBucketer:
    """Tests for routing decisions."""

    @pytest.mark.asyncio()
    async def test_unknown_operation_routes_to_legacy(self, policy_store: RoutingPolicyStore) -> None:
        """An operation without a policy routes to legacy with version 0."""
        bucketer = Bucketer(policy_store)

        decision = bucketer.route("unknown", "customer-1")

        assert decision.target is Target.LEGACY
        assert decision.policy_version == 0
        assert decision.source == "unknown_operation"

    @pytest.mark.asyncio()
    async def test_routing_is_deterministic(self, policy_store: RoutingPolicyStore) -> None:
        """The same key and policy version always get the same target."""
        bucketer = Bucketer(policy_store)
        await policy_store.set_policy("checkout", 50, expected_version=0, updated_by="test")

        first = [bucketer.route("checkout", f"customer-{i}").target for i in range(500)]
        second = [bucketer.route("checkout", f"customer-{i}").target for i in reversed(range(500))]

        assert first == list(reversed(second))

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("percentage", [0, 10, 30, 75, 100])
    async def test_percentage_converges(self, policy_store: RoutingPolicyStore, percentage: int) -> None:
        """Over 10,000 keys the New share is within 2 points of the policy."""
        bucketer = Bucketer(policy_store)
        await policy_store.set_policy("checkout", percentage, expected_version=0, updated_by="test")

        new_count = sum(
            1
            for index in range(10_000)
            if bucketer.route("checkout", f"customer-{index}").target is Target.NEW
        )

        assert abs(new_count / 10_000 - percentage / 100) <= 0.02

    @pytest.mark.asyncio()
    async def test_sticky_keys_survive_drop_to_zero(self, policy_store: RoutingPolicyStore) -> None:
        """Keys decided New under a sticky policy stay New after the percentage drops to 0."""
        bucketer = Bucketer(policy_store)
        policy = await policy_store.set_policy(
            "checkout", 50, expected_version=0, sticky_by_key=True, updated_by="test"
        )
        initial = {f"customer-{i}": bucketer.route("checkout", f"customer-{i}").target for i in range(300)}
        new_keys = [key for key, target in initial.items() if target is Target.NEW]
        assert new_keys

        await policy_store.set_policy(
            "checkout", 0, expected_version=policy.version, sticky_by_key=True, updated_by="test"
        )

        for key in new_keys:
            decision = bucketer.route("checkout", key)
            assert decision.target is Target.NEW
            assert decision.source == "sticky"
        assert bucketer.route("checkout", "never-seen-before").target is Target.LEGACY

    @pytest.mark.asyncio()
    async def test_disabling_stickiness_drops_cache(self, policy_store: RoutingPolicyStore) -> None:
        """Updating a policy to sticky_by_key=False forgets remembered decisions."""
        bucketer = Bucketer(policy_store)
        policy = await policy_store.set_policy(
            "checkout", 100, expected_version=0, sticky_by_key=True, updated_by="test"
        )
        bucketer.route("checkout", "customer-1")
        assert bucketer.sticky_count("checkout") == 1

        await policy_store.set_policy("checkout", 0, expected_version=policy.version, updated_by="test")

        assert bucketer.sticky_count("checkout") == 0
        assert bucketer.route("checkout", "customer-1").target is Target.LEGACY

    @pytest.mark.asyncio()
    async def test_evict_single_key(self, policy_store: RoutingPolicyStore) -> None:
        """evict_sticky with a key removes only that key."""
        bucketer = Bucketer(policy_store)
        await policy_store.set_policy("checkout", 100, expected_version=0, sticky_by_key=True, updated_by="test")
        bucketer.route("checkout", "a")
        bucketer.route("checkout", "b")

        assert bucketer.evict_sticky("checkout", "a") == 1
        assert bucketer.evict_sticky("checkout", "a") == 0
        assert bucketer.sticky_count("checkout") == 1

    @pytest.mark.asyncio()
    async def test_targeting_rule_overrides_percentage(self, policy_store: RoutingPolicyStore) -> None:
        """A matching context rule forces its target even at 0%."""
        bucketer = Bucketer(policy_store)
        await policy_store.set_policy(
            "checkout",
            0,
            expected_version=0,
            targeting_rules=[
                TargetingRule(attribute="region", operator=RuleOperator.IN, values=("eu-west-1",), target=Target.NEW)
            ],
            updated_by="test",
        )

        matched = bucketer.route("checkout", "customer-1", {"region": "eu-west-1"})
        unmatched = bucketer.route("checkout", "customer-1", {"region": "us-east-1"})
        missing = bucketer.route("checkout", "customer-1")

        assert matched.target is Target.NEW
        assert matched.source == "rule"
        assert unmatched.target is Target.LEGACY
        assert missing.source == "percentage"

    @pytest.mark.asyncio()
    async def test_routing_key_prefix_rule(self, policy_store: RoutingPolicyStore) -> None:
        """A routing_key rule tests the key itself; the first matching rule wins."""
        bucketer = Bucketer(policy_store)
        await policy_store.set_policy(
            "checkout",
            100,
            expected_version=0,
            targeting_rules=[
                {"attribute": "routing_key", "operator": "prefix", "values": ["internal-"], "target": "legacy"},
                {"attribute": "routing_key", "operator": "equals", "values": ["internal-qa"], "target": "new"},
            ],
            updated_by="test",
        )

        assert bucketer.route("checkout", "internal-qa").target is Target.LEGACY
        assert bucketer.route("checkout", "customer-9").target is Target.NEW

    @pytest.mark.asyncio()
    async def test_route_never_raises(self) -> None:
        """An internal failure yields a legacy decision with source 'error'."""
        broken_store = MagicMock()
        broken_store.get.side_effect = RuntimeError("snapshot unavailable")
        bucketer = Bucketer(broken_store)

        decision = bucketer.route("checkout", "customer-1")

        assert decision.target is Target.LEGACY
        assert decision.source == "error"


class TestRoutingPolicyStore:
    """Tests for versioned policy writes."""

    @pytest.mark.asyncio()
    async def test_create_and_update_increment_version(self, policy_store: RoutingPolicyStore) -> None:
        """Creating yields version 1 and each update increments it."""
        created = await policy_store.set_policy("checkout", 10, expected_version=0, updated_by="alice")
        updated = await policy_store.update_percentage("checkout", 20, expected_version=1, updated_by="bob")

        assert created.version == 1
        assert updated.version == 2
        assert updated.new_path_percentage == 20
        assert updated.updated_by == "bob"
        assert policy_store.get("checkout") == updated

    @pytest.mark.asyncio()
    async def test_update_percentage_keeps_rules_and_stickiness(self, policy_store: RoutingPolicyStore) -> None:
        """update_percentage changes only the percentage."""
        rule = TargetingRule(attribute="tier", values=("gold",), target=Target.NEW)
        await policy_store.set_policy(
            "checkout", 10, expected_version=0, targeting_rules=[rule], sticky_by_key=True, updated_by="test"
        )

        updated = await policy_store.update_percentage("checkout", 0, expected_version=1, updated_by="test")

        assert updated.targeting_rules == (rule,)
        assert updated.sticky_by_key is True

    @pytest.mark.asyncio()
    async def test_stale_version_raises_conflict(self, policy_store: RoutingPolicyStore) -> None:
        """A write based on an old version is rejected and nothing changes."""
        await policy_store.set_policy("checkout", 10, expected_version=0, updated_by="test")
        await policy_store.set_policy("checkout", 20, expected_version=1, updated_by="test")

        with pytest.raises(ConcurrentPolicyUpdate) as exc_info:
            await policy_store.set_policy("checkout", 90, expected_version=1, updated_by="test")

        assert exc_info.value.actual_version == 2
        assert policy_store.get("checkout").new_path_percentage == 20

    @pytest.mark.asyncio()
    async def test_create_existing_policy_raises_conflict(self, policy_store: RoutingPolicyStore) -> None:
        """expected_version=0 on an existing policy is a conflict."""
        await policy_store.set_policy("checkout", 10, expected_version=0, updated_by="test")

        with pytest.raises(ConcurrentPolicyUpdate):
            await policy_store.set_policy("checkout", 10, expected_version=0, updated_by="test")

    @pytest.mark.asyncio()
    async def test_storage_conflict_refreshes_snapshot(self, store: InMemoryControlPlaneStore) -> None:
        """A conflict detected by storage raises and catches the local snapshot up."""
        replica_a = RoutingPolicyStore(store)
        replica_b = RoutingPolicyStore(store)
        await replica_a.set_policy("checkout", 25, expected_version=0, updated_by="a")

        with pytest.raises(ConcurrentPolicyUpdate):
            await replica_b.set_policy("checkout", 50, expected_version=0, updated_by="b")

        assert replica_b.get("checkout").new_path_percentage == 25
        assert replica_b.get("checkout").version == 1

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("percentage", [-1, 101])
    async def test_percentage_out_of_range_rejected(
        self,
        policy_store: RoutingPolicyStore,
        percentage: int,
    ) -> None:
        """Percentages outside 0..100 are rejected at write time."""
        with pytest.raises(ValidationError):
            await policy_store.set_policy("checkout", percentage, expected_version=0, updated_by="test")
        assert policy_store.get("checkout") is None

    @pytest.mark.asyncio()
    async def test_invalid_rule_rejected(self, policy_store: RoutingPolicyStore) -> None:
        """A malformed targeting rule is a ValidationError."""
        with pytest.raises(ValidationError):
            await policy_store.set_policy(
                "checkout",
                10,
                expected_version=0,
                targeting_rules=[{"attribute": "region", "values": [], "target": "new"}],
                updated_by="test",
            )

    @pytest.mark.asyncio()
    async def test_update_percentage_unknown_operation(self, policy_store: RoutingPolicyStore) -> None:
        """update_percentage requires an existing policy."""
        with pytest.raises(NotFoundError):
            await policy_store.update_percentage("missing", 0, expected_version=0, updated_by="test")

    @pytest.mark.asyncio()
    async def test_load_restores_persisted_policies(self, store: InMemoryControlPlaneStore) -> None:
        """A new store instance sees policies written through another instance."""
        writer = RoutingPolicyStore(store)
        await writer.set_policy("checkout", 40, expected_version=0, updated_by="test")
        await writer.set_policy("refund", 5, expected_version=0, updated_by="test")

        reader = RoutingPolicyStore(store)
        loaded = await reader.load()

        assert loaded == 2
        assert [policy.operation_id for policy in reader.list_policies()] == ["checkout", "refund"]

    @pytest.mark.asyncio()
    async def test_listener_failure_does_not_break_write(self, policy_store: RoutingPolicyStore) -> None:
        """A failing listener is logged; the write still applies."""
        policy_store.subscribe(MagicMock(side_effect=RuntimeError("boom")))

        policy = await policy_store.set_policy("checkout", 10, expected_version=0, updated_by="test")

        assert policy_store.get("checkout") == policy
