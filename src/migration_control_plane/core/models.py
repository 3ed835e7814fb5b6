"""Pydantic domain models for the migration control plane.

Models:
- RoutingPolicy / TargetingRule / RoutingDecision - traffic routing
- SagaInstance / CompletedStep / SagaResult       - saga execution state
- HealthSample / WindowAggregate / HealthVerdict  - health evaluation
- RollbackEvent                                   - append-only rollback audit trail

Immutable values (policies, decisions, samples, verdicts, events) are frozen.
SagaInstance is not frozen, but MigrationRegistry only ever writes fresh
copies of it, so a persisted snapshot is never mutated in place.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class Target(str, Enum):
    """The two implementations a request can be routed to."""

    LEGACY = "legacy"
    NEW = "new"

    @property
    def other(self) -> Target:
        """Return the opposite target (the comparison baseline)."""
        return Target.NEW if self is Target.LEGACY else Target.LEGACY


class RuleOperator(str, Enum):
    """Predicate operators supported by targeting rules."""

    EQUALS = "equals"
    IN = "in"
    NOT_IN = "not_in"
    PREFIX = "prefix"


ROUTING_KEY_ATTRIBUTE = "routing_key"
SAGA_INSTANCE_ID_MAX_LENGTH = 64


class TargetingRule(BaseModel):
    """Forced-target override evaluated before the percentage rollout.

    Attributes:
        attribute: Context attribute to test. The special attribute
            ``routing_key`` tests the routing key itself.
        operator: Predicate operator.
        values: Operand values. ``equals`` uses the first value only.
        target: Target forced when the rule matches.
    """

    model_config = ConfigDict(frozen=True)

    attribute: str = Field(min_length=1, description="Context attribute or 'routing_key'")
    operator: RuleOperator = Field(default=RuleOperator.IN, description="Predicate operator")
    values: tuple[str, ...] = Field(min_length=1, description="Operand values")
    target: Target = Field(description="Target forced when the rule matches")

    def matches(self, routing_key: str, context: dict[str, Any]) -> bool:
        """Return True when the rule applies to this key and context.

        Args:
            routing_key: The caller's routing key.
            context: Caller-supplied request attributes.

        Returns:
            Whether the predicate holds. A missing attribute never matches.
        """
        if self.attribute == ROUTING_KEY_ATTRIBUTE:
            candidate: Any = routing_key
        else:
            candidate = context.get(self.attribute)
        if candidate is None:
            return False
        value = str(candidate)

        if self.operator is RuleOperator.EQUALS:
            return value == self.values[0]
        if self.operator is RuleOperator.IN:
            return value in self.values
        if self.operator is RuleOperator.NOT_IN:
            return value not in self.values
        return any(value.startswith(prefix) for prefix in self.values)


class RoutingPolicy(BaseModel):
    """Rollout policy for one operation.

    Attributes:
        operation_id: The business operation being migrated.
        new_path_percentage: Share of buckets routed to New, 0..100.
        targeting_rules: Ordered forced-target overrides.
        sticky_by_key: Remember the first decision per routing key.
        version: Monotonic version used for compare-and-swap writes.
        updated_at: When this version was written (UTC).
        updated_by: Who wrote this version.
    """

    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(min_length=1, max_length=255)
    new_path_percentage: int = Field(ge=0, le=100)
    targeting_rules: tuple[TargetingRule, ...] = Field(default=())
    sticky_by_key: bool = False
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)
    updated_by: str = Field(default="system", min_length=1)


class RoutingDecision(BaseModel):
    """Result of routing one request. Derived, never persisted."""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    routing_key: str
    target: Target
    policy_version: int
    bucket: int | None = Field(default=None, description="Bucket number 0..99, None when not computed")
    source: str = Field(description="sticky | rule | percentage | unknown_operation | error")
    decided_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Sagas
# ---------------------------------------------------------------------------


class SagaStatus(str, Enum):
    """Saga instance lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SAGA_STATUSES


TERMINAL_SAGA_STATUSES = frozenset(
    {SagaStatus.COMPLETED, SagaStatus.COMPENSATED, SagaStatus.COMPENSATION_FAILED}
)


class CompletedStep(BaseModel):
    """Snapshot of a step that was durably recorded as succeeded."""

    model_config = ConfigDict(frozen=True)

    name: str
    index: int = Field(ge=0)
    output: Any = None
    completed_at: datetime = Field(default_factory=utc_now)


class SagaInstance(BaseModel):
    """Durable record of one saga execution.

    Attributes:
        id: Instance identifier (caller-supplied or generated).
        definition_name: Name of the SagaDefinition being executed.
        status: Current lifecycle state.
        input: Input passed to the first step.
        completed_steps: Steps recorded as succeeded, in execution order.
        compensated_steps: Names of completed steps whose compensation is done
            (or which had no compensation), in the order they were unwound.
        failed_step: Name of the step whose failure triggered compensation.
        error: Description of the triggering failure or compensation failure.
        created_at: Creation timestamp (UTC).
        updated_at: Last transition timestamp (UTC).
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=SAGA_INSTANCE_ID_MAX_LENGTH)
    definition_name: str
    status: SagaStatus = SagaStatus.RUNNING
    input: Any = None
    completed_steps: list[CompletedStep] = Field(default_factory=list)
    compensated_steps: list[str] = Field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SagaResult(BaseModel):
    """Terminal outcome returned to ExecuteSaga/Recover callers."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    status: SagaStatus
    completed_steps: tuple[CompletedStep, ...] = ()
    output: Any = None
    error: str | None = None

    @classmethod
    def from_instance(cls, instance: SagaInstance) -> SagaResult:
        """Build a result from a saga instance snapshot.

        Args:
            instance: The saga instance.

        Returns:
            SagaResult. ``output`` is the last step's output when completed.
        """
        output = None
        if instance.status is SagaStatus.COMPLETED and instance.completed_steps:
            output = instance.completed_steps[-1].output
        return cls(
            instance_id=instance.id,
            status=instance.status,
            completed_steps=tuple(instance.completed_steps),
            output=output,
            error=instance.error,
        )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthState(str, Enum):
    """Health verdict states."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNSAFE = "unsafe"


class HealthSample(BaseModel):
    """One metrics report for a (operation, target) over a time window."""

    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(min_length=1)
    target: Target
    window_start: datetime
    request_count: int = Field(ge=0)
    error_count: int = Field(ge=0)
    p99_latency_ms: float = Field(ge=0.0)

    @field_validator("window_start")
    @classmethod
    def _window_start_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are taken to be UTC, never server-local time
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _errors_within_requests(self) -> HealthSample:
        if self.error_count > self.request_count:
            raise ValueError("error_count cannot exceed request_count")
        return self


class WindowAggregate(BaseModel):
    """Rolling-window aggregate for one (operation, target)."""

    model_config = ConfigDict(frozen=True)

    sample_count: int = 0
    request_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    p99_latency_ms: float = 0.0


class HealthVerdict(BaseModel):
    """Verdict for one target of an operation, compared against the other target."""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    target: Target
    state: HealthState
    reasons: tuple[str, ...] = ()
    evaluated_at: datetime = Field(default_factory=utc_now)
    observed: WindowAggregate = Field(default_factory=WindowAggregate)
    baseline: WindowAggregate = Field(default_factory=WindowAggregate)


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class RollbackTrigger(str, Enum):
    """Who initiated a rollback."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RollbackEvent(BaseModel):
    """Append-only audit record of a rollback policy mutation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation_id: str
    previous_percentage: int = Field(ge=0, le=100)
    new_percentage: int = Field(ge=0, le=100)
    policy_version: int = Field(ge=0, description="Policy version written by the rollback")
    triggered_by: RollbackTrigger
    reason: str
    occurred_at: datetime = Field(default_factory=utc_now)


class AlertSeverity(str, Enum):
    """Severity levels passed to the alerting collaborator."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
