"""API router for migration-control-plane.

All admin endpoints are registered here and included in main.py under the
/api/v1 prefix. Routes are thin: all logic lives in ControlPlaneFacade.

Endpoints:
- GET     /policies                              - List routing policies
- GET     /policies/{operation_id}               - Get a routing policy
- PUT     /policies/{operation_id}               - Create/replace a policy (CAS)
- POST    /policies/{operation_id}/rollback      - Force rollback to legacy
- GET     /policies/{operation_id}/rollback-events - Rollback audit trail
- DELETE  /policies/{operation_id}/sticky        - Evict sticky decisions
- POST    /routing/{operation_id}/decide         - Routing decision for a key
- POST    /samples                               - Report a health sample
- GET     /health/{operation_id}                 - Current health verdict
- GET     /sagas/{instance_id}                   - Saga instance status
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from migration_control_plane.api.schemas import (
    ForceRollbackRequest,
    ForceRollbackResponse,
    HealthSampleRequest,
    HealthVerdictResponse,
    PolicyResponse,
    PolicyUpsertRequest,
    RollbackEventResponse,
    RouteRequest,
    RoutingDecisionResponse,
    SagaStatusResponse,
    SampleAcceptedResponse,
    StickyEvictionResponse,
)
from migration_control_plane.core.models import Target
from migration_control_plane.facade import ControlPlaneFacade
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["control-plane"])


def get_control_plane(request: Request) -> ControlPlaneFacade:
    """Return the facade created by the application lifespan.

    Args:
        request: The incoming request.

    Returns:
        The shared ControlPlaneFacade.
    """
    return request.app.state.control_plane


ControlPlane = Annotated[ControlPlaneFacade, Depends(get_control_plane)]


# ---------------------------------------------------------------------------
# Policy endpoints
# ---------------------------------------------------------------------------


@router.get("/policies", response_model=list[PolicyResponse])
async def list_policies(control_plane: ControlPlane) -> list[PolicyResponse]:
    """List the current routing policy of every operation."""
    return [PolicyResponse.model_validate(policy) for policy in control_plane.list_policies()]


@router.get("/policies/{operation_id}", response_model=PolicyResponse)
async def get_policy(operation_id: str, control_plane: ControlPlane) -> PolicyResponse:
    """Get the current routing policy of an operation.

    Args:
        operation_id: The operation identifier.
        control_plane: Injected facade.

    Returns:
        The policy. 404 if the operation has none.
    """
    return PolicyResponse.model_validate(control_plane.get_policy(operation_id))


@router.put("/policies/{operation_id}", response_model=PolicyResponse)
async def set_policy(
    operation_id: str,
    request: PolicyUpsertRequest,
    control_plane: ControlPlane,
) -> PolicyResponse:
    """Create or replace a routing policy.

    The write is a compare-and-swap on ``expected_version``: a stale version
    is rejected with 409 and the caller must re-read and retry.

    Args:
        operation_id: The operation identifier.
        request: Policy body with the expected version.
        control_plane: Injected facade.

    Returns:
        The newly applied policy.
    """
    logger.info(
        "PUT /policies",
        operation_id=operation_id,
        new_path_percentage=request.new_path_percentage,
        expected_version=request.expected_version,
        updated_by=request.updated_by,
    )
    policy = await control_plane.set_policy(
        operation_id,
        request.new_path_percentage,
        expected_version=request.expected_version,
        targeting_rules=[rule.model_dump() for rule in request.targeting_rules],
        sticky_by_key=request.sticky_by_key,
        updated_by=request.updated_by,
    )
    return PolicyResponse.model_validate(policy)


@router.post("/policies/{operation_id}/rollback", response_model=ForceRollbackResponse)
async def force_rollback(
    operation_id: str,
    request: ForceRollbackRequest,
    control_plane: ControlPlane,
) -> ForceRollbackResponse:
    """Route all traffic of an operation back to legacy immediately.

    Bypasses health evaluation. Safe to repeat: an operation already at 0%
    returns ``applied: false``.

    Args:
        operation_id: The operation identifier.
        request: Reason and operator identity.
        control_plane: Injected facade.

    Returns:
        Whether a rollback was applied, with its audit event.
    """
    logger.warning(
        "POST /policies/rollback",
        operation_id=operation_id,
        requested_by=request.requested_by,
        reason=request.reason,
    )
    event = await control_plane.force_rollback(operation_id, request.reason, request.requested_by)
    if event is None:
        return ForceRollbackResponse(applied=False)
    return ForceRollbackResponse(applied=True, event=RollbackEventResponse.model_validate(event))


@router.get("/policies/{operation_id}/rollback-events", response_model=list[RollbackEventResponse])
async def list_rollback_events(operation_id: str, control_plane: ControlPlane) -> list[RollbackEventResponse]:
    """List the rollback audit trail of an operation, oldest first."""
    events = await control_plane.list_rollback_events(operation_id)
    return [RollbackEventResponse.model_validate(event) for event in events]


@router.delete("/policies/{operation_id}/sticky", response_model=StickyEvictionResponse)
async def evict_sticky(
    operation_id: str,
    control_plane: ControlPlane,
    routing_key: str | None = Query(default=None, description="Evict only this key"),
) -> StickyEvictionResponse:
    """Forget sticky routing decisions of an operation.

    Args:
        operation_id: The operation identifier.
        control_plane: Injected facade.
        routing_key: Optional single key to forget.

    Returns:
        Number of entries removed.
    """
    removed = control_plane.evict_sticky(operation_id, routing_key)
    return StickyEvictionResponse(operation_id=operation_id, removed=removed)


# ---------------------------------------------------------------------------
# Routing endpoints
# ---------------------------------------------------------------------------


@router.post("/routing/{operation_id}/decide", response_model=RoutingDecisionResponse)
async def decide_route(
    operation_id: str,
    request: RouteRequest,
    control_plane: ControlPlane,
) -> RoutingDecisionResponse:
    """Return the routing decision for a key. Unknown operations route to legacy."""
    decision = control_plane.route(operation_id, request.routing_key, request.context)
    return RoutingDecisionResponse.model_validate(decision)


# ---------------------------------------------------------------------------
# Health endpoints
# ---------------------------------------------------------------------------


@router.post("/samples", response_model=SampleAcceptedResponse, status_code=202)
async def report_sample(request: HealthSampleRequest, control_plane: ControlPlane) -> SampleAcceptedResponse:
    """Report one metrics sample for an operation and target."""
    accepted = control_plane.report_sample(
        operation_id=request.operation_id,
        target=request.target,
        window_start=request.window_start,
        request_count=request.request_count,
        error_count=request.error_count,
        p99_latency_ms=request.p99_latency_ms,
    )
    return SampleAcceptedResponse(accepted=accepted)


@router.get("/health/{operation_id}", response_model=HealthVerdictResponse)
async def get_health(
    operation_id: str,
    control_plane: ControlPlane,
    target: Target = Query(default=Target.NEW, description="Target to judge against the other one"),
) -> HealthVerdictResponse:
    """Evaluate the health of one target of an operation.

    The verdict is computed from the current rolling window. It is not
    published, so this endpoint never triggers a rollback by itself.

    Args:
        operation_id: The operation identifier.
        control_plane: Injected facade.
        target: Target to evaluate.

    Returns:
        The health verdict.
    """
    return HealthVerdictResponse.model_validate(control_plane.check_health(operation_id, target))


# ---------------------------------------------------------------------------
# Saga endpoints
# ---------------------------------------------------------------------------


@router.get("/sagas/{instance_id}", response_model=SagaStatusResponse)
async def get_saga_status(instance_id: str, control_plane: ControlPlane) -> SagaStatusResponse:
    """Get the recorded state of a saga instance. 404 if unknown."""
    return SagaStatusResponse.model_validate(await control_plane.get_saga_status(instance_id))
