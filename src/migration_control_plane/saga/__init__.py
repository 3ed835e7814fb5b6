"""Saga execution: definitions, the coordinator and the durable instance registry."""

from migration_control_plane.saga.coordinator import SagaCoordinator, StepOutcome
from migration_control_plane.saga.definition import SagaDefinition, SagaStep
from migration_control_plane.saga.registry import MigrationRegistry

__all__ = [
    "MigrationRegistry",
    "SagaCoordinator",
    "SagaDefinition",
    "SagaStep",
    "StepOutcome",
]
