"""SagaCoordinator: sequential step execution with reverse-order compensation.

Forward phase: steps run strictly in order. Steps already recorded in
``completed_steps`` (from a crashed run) are skipped and their cached output
is fed to the next step. Each success is durably recorded before the next
step starts.

Failure: a participant exception or timeout becomes a failed StepOutcome; the
instance moves to ``compensating`` and the completed steps are unwound in
strict reverse order. Each compensation is retried with exponential backoff
up to ``compensation_max_attempts``. If it still fails, the instance ends in
``compensation_failed`` (terminal, human escalation) and no earlier
compensation is attempted.

Mutual exclusion: one caller at a time per instance ID. A concurrent
execute/recover on the same ID raises SagaAlreadyRunning.
"""

import asyncio
import contextlib
import inspect
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from migration_control_plane.core.interfaces import INotifier
from migration_control_plane.core.models import (
    SAGA_INSTANCE_ID_MAX_LENGTH,
    AlertSeverity,
    CompletedStep,
    SagaInstance,
    SagaResult,
    SagaStatus,
)
from migration_control_plane.errors import (
    CompensationFailed,
    NotFoundError,
    SagaAlreadyRunning,
    StepFailed,
    ValidationError,
)
from migration_control_plane.observability import get_logger
from migration_control_plane.saga.definition import SagaDefinition, SagaStep, StepAction
from migration_control_plane.saga.registry import MigrationRegistry

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class StepOutcome:
    """Explicit result of one participant call.

    Attributes:
        succeeded: Whether the call returned normally within its timeout.
        value: The returned value when succeeded.
        error: Failure description when not succeeded.
    """

    succeeded: bool
    value: Any = None
    error: str | None = None


class SagaCoordinator:
    """Executes saga definitions against opaque participants.

    Args:
        registry: Durable saga instance registry.
        notifier: Alerting collaborator for compensation failures.
        compensation_max_attempts: Attempts per compensation before giving up.
        compensation_backoff_seconds: Delay before the second attempt; doubles
            for each further attempt.
        compensation_backoff_max_seconds: Upper bound for a single delay.
        default_step_timeout_seconds: Timeout for steps without their own. None
            disables the timeout.
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        notifier: INotifier,
        compensation_max_attempts: int = 3,
        compensation_backoff_seconds: float = 0.5,
        compensation_backoff_max_seconds: float = 30.0,
        default_step_timeout_seconds: float | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if compensation_max_attempts < 1:
            raise ValueError("compensation_max_attempts must be at least 1")
        self._registry = registry
        self._notifier = notifier
        self._compensation_max_attempts = compensation_max_attempts
        self._backoff_seconds = compensation_backoff_seconds
        self._backoff_max_seconds = compensation_backoff_max_seconds
        self._default_timeout = default_step_timeout_seconds
        self._sleep = sleep
        self._definitions: dict[str, SagaDefinition] = {}
        self._active: set[str] = set()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def register(self, definition: SagaDefinition) -> None:
        """Register (or replace) a saga definition by name."""
        self._definitions[definition.name] = definition
        logger.info(
            "Saga definition registered",
            definition=definition.name,
            steps=[step.name for step in definition.steps],
        )

    def get_definition(self, name: str) -> SagaDefinition:
        """Return a registered definition.

        Raises:
            NotFoundError: If no definition has this name.
        """
        definition = self._definitions.get(name)
        if definition is None:
            raise NotFoundError(resource="SagaDefinition", resource_id=name)
        return definition

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        definition: SagaDefinition | str,
        saga_input: Any = None,
        instance_id: str | None = None,
    ) -> SagaResult:
        """Execute a saga, or re-drive an existing instance with the same ID.

        Args:
            definition: A SagaDefinition or the name of a registered one.
            saga_input: Input for the first step (ignored when re-driving).
            instance_id: Optional instance ID. An existing non-terminal
                instance with this ID is resumed from its recorded progress.

        Returns:
            SagaResult with a terminal status.

        Raises:
            NotFoundError: If a definition name is not registered.
            ValidationError: If instance_id is empty, longer than 64 characters
                or belongs to another definition.
            SagaAlreadyRunning: If the instance is being driven concurrently.
        """
        if isinstance(definition, str):
            definition = self.get_definition(definition)
        elif definition.name not in self._definitions:
            self.register(definition)

        if instance_id is not None and not 0 < len(instance_id) <= SAGA_INSTANCE_ID_MAX_LENGTH:
            raise ValidationError(
                f"Saga instance ID must be 1 to {SAGA_INSTANCE_ID_MAX_LENGTH} characters, got {len(instance_id)}",
                field="instance_id",
            )
        lock_id = instance_id or str(uuid.uuid4())

        async with self._exclusive(lock_id):
            existing = await self._registry.find(lock_id)
            if existing is None:
                existing = await self._registry.create(definition.name, saga_input, lock_id)
            elif existing.definition_name != definition.name:
                raise ValidationError(
                    f"Saga instance '{lock_id}' belongs to definition "
                    f"'{existing.definition_name}', not '{definition.name}'",
                    field="instance_id",
                )
            return await self._drive(definition, existing)

    async def recover(self, instance_id: str) -> SagaResult:
        """Resume an instance from its recorded progress.

        Terminal instances are returned as-is. Running instances continue
        with the first unrecorded step; compensating instances continue
        unwinding.

        Args:
            instance_id: The instance ID.

        Returns:
            SagaResult with a terminal status.

        Raises:
            NotFoundError: If the instance or its definition is unknown.
            SagaAlreadyRunning: If the instance is being driven concurrently.
        """
        async with self._exclusive(instance_id):
            instance = await self._registry.get(instance_id)
            if instance.status.is_terminal:
                return SagaResult.from_instance(instance)
            definition = self.get_definition(instance.definition_name)
            logger.info(
                "Recovering saga instance",
                instance_id=instance_id,
                status=instance.status.value,
                completed_steps=len(instance.completed_steps),
            )
            return await self._drive(definition, instance)

    async def reconcile(self) -> list[SagaResult]:
        """Re-drive every in-flight instance found in the registry.

        Instances whose definition is not registered, or that are already
        being driven, are skipped and logged.

        Returns:
            Results of the instances that were re-driven.
        """
        results: list[SagaResult] = []
        for instance in await self._registry.list_in_flight():
            try:
                results.append(await self.recover(instance.id))
            except (NotFoundError, SagaAlreadyRunning) as exc:
                logger.warning(
                    "Skipping saga instance during reconciliation",
                    instance_id=instance.id,
                    definition=instance.definition_name,
                    error=exc.message,
                )
        logger.info("Saga reconciliation finished", recovered=len(results))
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _exclusive(self, instance_id: str) -> AsyncIterator[None]:
        # Check-and-add has no await in between, so it is atomic on the event loop.
        if instance_id in self._active:
            raise SagaAlreadyRunning(instance_id)
        self._active.add(instance_id)
        try:
            yield
        finally:
            self._active.discard(instance_id)

    async def _drive(self, definition: SagaDefinition, instance: SagaInstance) -> SagaResult:
        if instance.status is SagaStatus.RUNNING:
            instance = await self._run_forward(definition, instance)
        if instance.status is SagaStatus.COMPENSATING:
            instance = await self._run_compensations(definition, instance)
        return SagaResult.from_instance(instance)

    async def _run_forward(
        self,
        definition: SagaDefinition,
        instance: SagaInstance,
    ) -> SagaInstance:
        payload = instance.input
        for index, step in enumerate(definition.steps):
            if index < len(instance.completed_steps):
                recorded = instance.completed_steps[index]
                if recorded.name != step.name:
                    raise ValidationError(
                        f"Saga instance '{instance.id}' recorded step '{recorded.name}' "
                        f"at position {index}, definition has '{step.name}'",
                        field="definition",
                    )
                logger.debug(
                    "Skipping already completed step",
                    instance_id=instance.id,
                    step=step.name,
                )
                payload = recorded.output
                continue

            outcome = await self._call(step, step.invoke, payload)
            if not outcome.succeeded:
                failure = StepFailed(step.name, outcome.error or "unknown error")
                logger.warning(
                    "Saga step failed, compensating",
                    instance_id=instance.id,
                    step=step.name,
                    error=failure.reason,
                )
                return await self._registry.record_step_failed(
                    instance, step.name, failure.message
                )

            instance = await self._registry.record_step_completed(
                instance, step.name, index, outcome.value
            )
            payload = outcome.value

        logger.info("Saga completed", instance_id=instance.id, definition=definition.name)
        return await self._registry.mark_completed(instance)

    async def _run_compensations(
        self,
        definition: SagaDefinition,
        instance: SagaInstance,
    ) -> SagaInstance:
        already_unwound = set(instance.compensated_steps)
        for record in reversed(instance.completed_steps):
            if record.name in already_unwound:
                continue
            step = definition.step(record.name)
            if step.compensate is not None:
                outcome = await self._compensate_with_retry(
                    instance, step, step.compensate, record
                )
                if not outcome.succeeded:
                    failure = CompensationFailed(
                        instance.id,
                        step.name,
                        self._compensation_max_attempts,
                        outcome.error or "unknown error",
                    )
                    instance = await self._registry.mark_compensation_failed(
                        instance, failure.message
                    )
                    await self._escalate(failure, definition)
                    return instance
            instance = await self._registry.record_compensated(instance, record.name)

        logger.info(
            "Saga compensated",
            instance_id=instance.id,
            definition=definition.name,
            unwound=instance.compensated_steps,
        )
        return await self._registry.mark_compensated(instance)

    async def _compensate_with_retry(
        self,
        instance: SagaInstance,
        step: SagaStep,
        compensate: StepAction,
        record: CompletedStep,
    ) -> StepOutcome:
        outcome = StepOutcome(succeeded=False, error="not attempted")
        for attempt in range(1, self._compensation_max_attempts + 1):
            outcome = await self._call(step, compensate, record.output)
            if outcome.succeeded:
                if attempt > 1:
                    logger.info(
                        "Compensation succeeded after retry",
                        instance_id=instance.id,
                        step=step.name,
                        attempt=attempt,
                    )
                return outcome
            if attempt < self._compensation_max_attempts:
                delay = min(
                    self._backoff_seconds * (2 ** (attempt - 1)),
                    self._backoff_max_seconds,
                )
                logger.warning(
                    "Compensation failed, retrying",
                    instance_id=instance.id,
                    step=step.name,
                    attempt=attempt,
                    retry_in_seconds=delay,
                    error=outcome.error,
                )
                await self._sleep(delay)
        return outcome

    async def _call(self, step: SagaStep, action: StepAction, argument: Any) -> StepOutcome:
        timeout = step.timeout_seconds if step.timeout_seconds is not None else self._default_timeout
        try:
            if timeout is None:
                value = await _invoke(action, argument)
            else:
                value = await asyncio.wait_for(_invoke(action, argument, in_thread=True), timeout)
        except TimeoutError as exc:
            if timeout is None:
                return StepOutcome(succeeded=False, error=f"TimeoutError: {exc}")
            return StepOutcome(succeeded=False, error=f"timed out after {timeout}s")
        except StepFailed as exc:
            return StepOutcome(succeeded=False, error=exc.reason)
        except Exception as exc:
            return StepOutcome(succeeded=False, error=f"{type(exc).__name__}: {exc}")
        return StepOutcome(succeeded=True, value=value)

    async def _escalate(self, failure: CompensationFailed, definition: SagaDefinition) -> None:
        logger.error(
            "Saga compensation failed, manual intervention required",
            instance_id=failure.instance_id,
            definition=definition.name,
            step=failure.step_name,
            attempts=failure.attempts,
            error=failure.reason,
        )
        try:
            await self._notifier.notify(
                AlertSeverity.CRITICAL,
                failure.message,
                {
                    "instance_id": failure.instance_id,
                    "definition": definition.name,
                    "step": failure.step_name,
                    "attempts": failure.attempts,
                },
            )
        except Exception as exc:
            logger.error(
                "Failed to deliver compensation failure alert",
                instance_id=failure.instance_id,
                error=str(exc),
            )


async def _invoke(action: StepAction, argument: Any, *, in_thread: bool = False) -> Any:
    # Blocking participants must leave the loop free for wait_for to fire
    if in_thread and not inspect.iscoroutinefunction(action):
        result = await asyncio.to_thread(action, argument)
    else:
        result = action(argument)
    if inspect.isawaitable(result):
        result = await result
    return result
