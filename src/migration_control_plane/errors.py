"""Error taxonomy for the migration control plane.

Recoverable errors (the caller may retry or poll):
- ConcurrentPolicyUpdate - a CAS policy write lost against a newer version
- SagaAlreadyRunning     - the saga instance is being driven by another caller

Internal errors (never surfaced raw through the routing or saga call paths):
- StepFailed             - a participant step failed or timed out
- CompensationFailed     - a compensation exhausted its bounded retries
- RollbackApplyFailed    - an automatic rollback could not be applied

Insufficient health samples are deliberately NOT an error: the HealthEvaluator
reports them as a Degraded verdict.
"""

from typing import Any


class ControlPlaneError(Exception):
    """Base class for all control plane errors.

    Attributes:
        message: Human-readable error description.
        context: Structured key/value context for logging.
    """

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize ControlPlaneError.

        Args:
            message: Error description.
            **context: Additional structured context.
        """
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(ControlPlaneError):
    """Raised when a requested resource does not exist."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource} '{resource_id}' not found",
            resource=resource,
            resource_id=resource_id,
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(ControlPlaneError):
    """Raised when a write is rejected because its input is invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, field=field)
        self.field = field


class ConcurrentPolicyUpdate(ControlPlaneError):
    """Raised when a policy write carries a stale expected version.

    Attributes:
        operation_id: The operation whose policy was being written.
        expected_version: The version the caller based its write on.
        actual_version: The version currently held, when known.
    """

    def __init__(
        self,
        operation_id: str,
        expected_version: int,
        actual_version: int | None = None,
    ) -> None:
        super().__init__(
            f"Policy for '{operation_id}' was modified concurrently "
            f"(expected version {expected_version}, current {actual_version})",
            operation_id=operation_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.operation_id = operation_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class SagaAlreadyRunning(ControlPlaneError):
    """Raised when execute/recover is called on an instance already in progress."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"Saga instance '{instance_id}' is already being executed",
            instance_id=instance_id,
        )
        self.instance_id = instance_id


class StepFailed(ControlPlaneError):
    """A saga step (or compensation) failed.

    Participants may raise this explicitly; the coordinator also uses it to
    describe timeouts and unexpected participant exceptions.
    """

    def __init__(self, step_name: str, reason: str) -> None:
        super().__init__(
            f"Step '{step_name}' failed: {reason}",
            step_name=step_name,
            reason=reason,
        )
        self.step_name = step_name
        self.reason = reason


class CompensationFailed(ControlPlaneError):
    """A compensation exhausted its retries. Requires human escalation."""

    def __init__(self, instance_id: str, step_name: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Compensation for step '{step_name}' of saga '{instance_id}' "
            f"failed after {attempts} attempts: {reason}",
            instance_id=instance_id,
            step_name=step_name,
            attempts=attempts,
            reason=reason,
        )
        self.instance_id = instance_id
        self.step_name = step_name
        self.attempts = attempts
        self.reason = reason


class RollbackApplyFailed(ControlPlaneError):
    """An automatic rollback could not be applied within its retry budget."""

    def __init__(self, operation_id: str, attempts: int) -> None:
        super().__init__(
            f"Rollback for '{operation_id}' could not be applied after {attempts} attempts",
            operation_id=operation_id,
            attempts=attempts,
        )
        self.operation_id = operation_id
        self.attempts = attempts


class NotificationError(ControlPlaneError):
    """Raised by notifier adapters when an alert cannot be delivered."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.status_code = status_code
