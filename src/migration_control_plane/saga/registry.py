"""MigrationRegistry: durable record of saga instances.

Every transition builds a fresh copy of the instance, persists it through
the saga repository and only then returns it, so the stored state lags the
real world by at most the one in-flight participant call. This is what makes
crash recovery possible: a re-driven saga resumes from ``completed_steps``.
"""

from typing import Any

import pydantic

from migration_control_plane.core.interfaces import ISagaRepository
from migration_control_plane.core.models import (
    CompletedStep,
    SagaInstance,
    SagaStatus,
    utc_now,
)
from migration_control_plane.errors import NotFoundError, ValidationError
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)

IN_FLIGHT_STATUSES = (SagaStatus.RUNNING, SagaStatus.COMPENSATING)


class MigrationRegistry:
    """Owns persistence of SagaInstance records.

    Args:
        repository: Durable saga storage implementing ISagaRepository.
    """

    def __init__(self, repository: ISagaRepository) -> None:
        self._repository = repository

    async def create(
        self,
        definition_name: str,
        saga_input: Any,
        instance_id: str | None = None,
    ) -> SagaInstance:
        """Create and persist a new running instance.

        Args:
            definition_name: Name of the saga definition.
            saga_input: Input for the first step.
            instance_id: Optional caller-supplied identifier.

        Returns:
            The persisted instance.

        Raises:
            ValidationError: If the instance fields are invalid.
        """
        fields: dict[str, Any] = {"definition_name": definition_name, "input": saga_input}
        if instance_id is not None:
            fields["id"] = instance_id
        try:
            instance = SagaInstance(**fields)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid saga instance: {exc}", field="instance_id") from exc
        await self._repository.save_saga_instance(instance)
        logger.info(
            "Saga instance created",
            instance_id=instance.id,
            definition=definition_name,
        )
        return instance

    async def find(self, instance_id: str) -> SagaInstance | None:
        """Load an instance, returning None if it does not exist."""
        return await self._repository.load_saga_instance(instance_id)

    async def get(self, instance_id: str) -> SagaInstance:
        """Load an instance.

        Raises:
            NotFoundError: If no instance has this ID.
        """
        instance = await self._repository.load_saga_instance(instance_id)
        if instance is None:
            raise NotFoundError(resource="SagaInstance", resource_id=instance_id)
        return instance

    async def list_in_flight(self) -> list[SagaInstance]:
        """Return instances that are neither completed nor in a terminal failure state."""
        return await self._repository.list_saga_instances(IN_FLIGHT_STATUSES)

    async def record_step_completed(
        self,
        instance: SagaInstance,
        step_name: str,
        index: int,
        output: Any,
    ) -> SagaInstance:
        """Append a succeeded step with its output snapshot."""
        step = CompletedStep(name=step_name, index=index, output=output)
        return await self._save(
            instance,
            completed_steps=[*instance.completed_steps, step],
        )

    async def record_step_failed(
        self,
        instance: SagaInstance,
        step_name: str,
        error: str,
    ) -> SagaInstance:
        """Record the failed step and move the instance to compensating."""
        return await self._save(
            instance,
            status=SagaStatus.COMPENSATING,
            failed_step=step_name,
            error=error,
        )

    async def record_compensated(self, instance: SagaInstance, step_name: str) -> SagaInstance:
        """Record that a completed step has been unwound (or had nothing to undo)."""
        return await self._save(
            instance,
            compensated_steps=[*instance.compensated_steps, step_name],
        )

    async def mark_completed(self, instance: SagaInstance) -> SagaInstance:
        return await self._save(instance, status=SagaStatus.COMPLETED)

    async def mark_compensated(self, instance: SagaInstance) -> SagaInstance:
        return await self._save(instance, status=SagaStatus.COMPENSATED)

    async def mark_compensation_failed(
        self,
        instance: SagaInstance,
        error: str,
    ) -> SagaInstance:
        """Move the instance to the terminal compensation_failed state."""
        return await self._save(
            instance,
            status=SagaStatus.COMPENSATION_FAILED,
            error=error,
        )

    async def _save(self, instance: SagaInstance, **changes: Any) -> SagaInstance:
        updated = instance.model_copy(update={**changes, "updated_at": utc_now()})
        await self._repository.save_saga_instance(updated)
        if "status" in changes and changes["status"] != instance.status:
            logger.info(
                "Saga status changed",
                instance_id=instance.id,
                previous_status=instance.status.value,
                status=updated.status.value,
            )
        return updated
