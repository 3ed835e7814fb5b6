"""Pydantic request and response schemas for the control plane admin API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- RoutingPolicy   - policy administration and forced rollback
- RoutingDecision - routing preview for a key
- HealthSample    - metrics ingestion and health verdicts
- SagaInstance    - saga status inspection
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from migration_control_plane.core.models import (
    HealthState,
    RollbackTrigger,
    RuleOperator,
    SagaStatus,
    Target,
)


class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# RoutingPolicy schemas
# ---------------------------------------------------------------------------


class TargetingRuleSchema(_FromDomain):
    """A forced-target override evaluated before the percentage rollout."""

    attribute: str = Field(
        min_length=1,
        description="Context attribute to test, or 'routing_key' for the key itself",
    )
    operator: RuleOperator = Field(default=RuleOperator.IN, description="equals | in | not_in | prefix")
    values: list[str] = Field(min_length=1, description="Operand values")
    target: Target = Field(description="Target forced when the rule matches: legacy | new")


class PolicyUpsertRequest(BaseModel):
    """Request body for creating or replacing a routing policy."""

    new_path_percentage: int = Field(description="Share of traffic routed to the new path, 0..100")
    expected_version: int = Field(
        ge=0,
        description="Version the caller read. 0 creates a policy that must not exist yet.",
    )
    targeting_rules: list[TargetingRuleSchema] = Field(
        default_factory=list,
        description="Ordered forced-target overrides; the first match wins",
    )
    sticky_by_key: bool = Field(default=False, description="Remember the first decision per routing key")
    updated_by: str = Field(default="operator", min_length=1, description="Actor performing the change")


class PolicyResponse(_FromDomain):
    """Response schema for a routing policy."""

    operation_id: str = Field(description="Migrated business operation")
    new_path_percentage: int = Field(description="Share of traffic routed to the new path")
    targeting_rules: list[TargetingRuleSchema] = Field(description="Ordered targeting rules")
    sticky_by_key: bool = Field(description="Whether decisions stick per routing key")
    version: int = Field(description="Monotonic version used for compare-and-swap writes")
    updated_at: datetime = Field(description="When this version was written (UTC)")
    updated_by: str = Field(description="Who wrote this version")


class ForceRollbackRequest(BaseModel):
    """Request body for an operator-initiated rollback."""

    reason: str = Field(min_length=1, description="Why traffic is being moved back to legacy")
    requested_by: str = Field(default="operator", min_length=1, description="Operator identity")


class RollbackEventResponse(_FromDomain):
    """Response schema for one rollback audit record."""

    id: str = Field(description="Event identifier")
    operation_id: str = Field(description="Operation that was rolled back")
    previous_percentage: int = Field(description="New-path percentage before the rollback")
    new_percentage: int = Field(description="New-path percentage after the rollback")
    policy_version: int = Field(description="Policy version written by the rollback")
    triggered_by: RollbackTrigger = Field(description="automatic | manual")
    reason: str = Field(description="Verdict reasons or operator-supplied reason")
    occurred_at: datetime = Field(description="When the rollback was applied (UTC)")


class ForceRollbackResponse(BaseModel):
    """Result of a forced rollback."""

    applied: bool = Field(description="False when the operation was already at 0%")
    event: RollbackEventResponse | None = Field(default=None, description="The recorded event, if applied")


class StickyEvictionResponse(BaseModel):
    """Result of evicting sticky routing decisions."""

    operation_id: str
    removed: int = Field(description="Number of sticky entries removed")


# ---------------------------------------------------------------------------
# Routing schemas
# ---------------------------------------------------------------------------


class RouteRequest(BaseModel):
    """Request body for a routing decision."""

    routing_key: str = Field(description="Caller's routing key (customer ID, account ID, ...)")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Request attributes used by targeting rules",
    )


class RoutingDecisionResponse(_FromDomain):
    """Response schema for a routing decision."""

    operation_id: str
    routing_key: str
    target: Target = Field(description="legacy | new")
    policy_version: int = Field(description="Policy version the decision was based on (0 if none)")
    bucket: int | None = Field(description="Bucket number 0..99")
    source: str = Field(description="sticky | rule | percentage | unknown_operation | error")
    decided_at: datetime


# ---------------------------------------------------------------------------
# Health schemas
# ---------------------------------------------------------------------------


class HealthSampleRequest(BaseModel):
    """Request body for reporting one metrics sample."""

    operation_id: str = Field(min_length=1)
    target: Target = Field(description="legacy | new")
    window_start: datetime = Field(description="Start of the window the sample covers")
    request_count: int = Field(ge=0)
    error_count: int = Field(ge=0, description="Must not exceed request_count")
    p99_latency_ms: float = Field(ge=0.0)


class SampleAcceptedResponse(BaseModel):
    """Whether a sample was retained."""

    accepted: bool = Field(description="False when the sample was older than the rolling window")


class WindowAggregateResponse(_FromDomain):
    """Rolling-window aggregate for one target."""

    sample_count: int
    request_count: int
    error_count: int
    error_rate: float
    p99_latency_ms: float


class HealthVerdictResponse(_FromDomain):
    """Response schema for a health verdict."""

    operation_id: str
    target: Target
    state: HealthState = Field(description="healthy | degraded | unsafe")
    reasons: list[str]
    evaluated_at: datetime
    observed: WindowAggregateResponse = Field(description="Aggregate of the evaluated target")
    baseline: WindowAggregateResponse = Field(description="Aggregate of the other target")


# ---------------------------------------------------------------------------
# Saga schemas
# ---------------------------------------------------------------------------


class CompletedStepResponse(_FromDomain):
    """A saga step recorded as succeeded."""

    name: str
    index: int
    output: Any = None
    completed_at: datetime


class SagaStatusResponse(_FromDomain):
    """Response schema for a saga instance."""

    id: str
    definition_name: str
    status: SagaStatus
    completed_steps: list[CompletedStepResponse]
    compensated_steps: list[str]
    failed_step: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
