"""YAML policy seed for bootstrapping routing policies at startup.

The seed file lists the initial policy of each migrating operation::

    policies:
      - operation_id: checkout
        new_path_percentage: 10
        sticky_by_key: true
        targeting_rules:
          - attribute: region
            operator: in
            values: [eu-west-1]
            target: new

Seeding only creates policies that do not exist yet. An operation that
already has a policy (possibly changed by operators or rolled back since)
is never overwritten by the seed.
"""

from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from migration_control_plane.core.models import TargetingRule
from migration_control_plane.errors import ConcurrentPolicyUpdate, ValidationError
from migration_control_plane.observability import get_logger
from migration_control_plane.routing.policy_store import RoutingPolicyStore

logger = get_logger(__name__)

SEED_AUTHOR = "policy-seed"


class PolicySeed(BaseModel):
    """Initial policy for one operation as declared in the seed file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    operation_id: str = Field(min_length=1, max_length=255)
    new_path_percentage: int = Field(default=0, ge=0, le=100)
    targeting_rules: tuple[TargetingRule, ...] = ()
    sticky_by_key: bool = False


def load_policy_seed(path: Path) -> list[PolicySeed]:
    """Parse a policy seed file.

    Args:
        path: Path to the YAML seed file.

    Returns:
        The declared seeds, in file order. A missing file yields an empty list.

    Raises:
        ValidationError: If the file is not valid YAML or a seed is malformed.
    """
    if not path.exists():
        logger.warning("Policy seed file not found, no policies seeded", path=str(path))
        return []

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Policy seed {path} is not valid YAML: {exc}", field="policy_seed") from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("policies", []), list):
        raise ValidationError(
            f"Policy seed {path} must be a mapping with a 'policies' list",
            field="policy_seed",
        )

    seeds: list[PolicySeed] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw.get("policies", [])):
        try:
            seed = PolicySeed.model_validate(entry)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Policy seed entry {index} in {path} is invalid: {exc}",
                field="policy_seed",
            ) from exc
        if seed.operation_id in seen:
            raise ValidationError(
                f"Policy seed {path} declares '{seed.operation_id}' more than once",
                field="policy_seed",
            )
        seen.add(seed.operation_id)
        seeds.append(seed)

    logger.debug("Policy seed parsed", path=str(path), count=len(seeds))
    return seeds


async def apply_policy_seed(store: RoutingPolicyStore, seeds: list[PolicySeed]) -> int:
    """Create seeded policies that do not exist in the store yet.

    Args:
        store: The routing policy store, already loaded from storage.
        seeds: Seeds returned by load_policy_seed().

    Returns:
        Number of policies created.
    """
    created = 0
    for seed in seeds:
        if store.get(seed.operation_id) is not None:
            logger.debug("Seeded policy already exists", operation_id=seed.operation_id)
            continue
        try:
            await store.set_policy(
                seed.operation_id,
                seed.new_path_percentage,
                expected_version=0,
                targeting_rules=seed.targeting_rules,
                sticky_by_key=seed.sticky_by_key,
                updated_by=SEED_AUTHOR,
            )
        except ConcurrentPolicyUpdate:
            # Another replica seeded it first
            logger.info("Seeded policy created concurrently", operation_id=seed.operation_id)
            continue
        created += 1

    logger.info("Policy seed applied", declared=len(seeds), created=created)
    return created
