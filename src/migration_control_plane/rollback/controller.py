"""RollbackController: closes the loop from health verdicts to routing policy.

Per-operation phase machine::

    stable --(percentage > 0)--> watching --(unsafe)--> rolling_back
    rolling_back --(applied, percentage == 0)--> stable
    rolling_back --(applied, percentage > 0)--> watching

Automatic rollback lowers the New-path percentage by ``rollback_step_size``
(default 100, an immediate full rollback). Duplicate or stale Unsafe verdicts,
verdicts arriving while a rollback is in progress, and operations already at
0% are no-ops, so a storm of verdicts never produces redundant CAS writes.

CAS conflicts are retried with exponential backoff. The automatic path gives
up after ``rollback_max_attempts`` and raises an operational alert; the
manual ForceRollback path keeps retrying against the latest version until
its write applies.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum

from migration_control_plane.core.interfaces import INotifier, IRollbackEventLog
from migration_control_plane.core.models import (
    AlertSeverity,
    HealthState,
    HealthVerdict,
    RollbackEvent,
    RollbackTrigger,
    RoutingPolicy,
    Target,
)
from migration_control_plane.errors import (
    ConcurrentPolicyUpdate,
    NotFoundError,
    RollbackApplyFailed,
)
from migration_control_plane.observability import get_logger
from migration_control_plane.routing.policy_store import RoutingPolicyStore

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
RollbackListener = Callable[[RollbackEvent], None]

_AUTOMATIC_ACTOR = "rollback-controller"


class MigrationPhase(str, Enum):
    """Rollback controller phase for one operation."""

    STABLE = "stable"
    WATCHING = "watching"
    ROLLING_BACK = "rolling_back"


class RollbackController:
    """Turns Unsafe verdicts into CAS policy reductions and audit events.

    Args:
        policy_store: The routing policy store (the only policy writer).
        event_log: Append-only rollback event log.
        notifier: Alerting collaborator for exhausted retries.
        rollback_step_size: Percentage points removed per automatic rollback.
        max_apply_attempts: CAS attempts for an automatic rollback.
        backoff_seconds: Delay after the first conflict; doubles afterwards.
        backoff_max_seconds: Upper bound for a single delay.
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        policy_store: RoutingPolicyStore,
        event_log: IRollbackEventLog,
        notifier: INotifier,
        rollback_step_size: int = 100,
        max_apply_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if not 1 <= rollback_step_size <= 100:
            raise ValueError("rollback_step_size must be between 1 and 100")
        if max_apply_attempts < 1:
            raise ValueError("max_apply_attempts must be at least 1")
        self._policy_store = policy_store
        self._event_log = event_log
        self._notifier = notifier
        self._step_size = rollback_step_size
        self._max_apply_attempts = max_apply_attempts
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._phases: dict[str, MigrationPhase] = {}
        self._last_verdict_at: dict[str, datetime] = {}
        self._listeners: list[RollbackListener] = []
        policy_store.subscribe(self._on_policy_changed)

    def phase(self, operation_id: str) -> MigrationPhase:
        """Return the current phase of an operation (stable if unknown)."""
        return self._phases.get(operation_id, MigrationPhase.STABLE)

    def subscribe(self, listener: RollbackListener) -> None:
        """Register a synchronous listener called after every applied rollback."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Automatic path
    # ------------------------------------------------------------------

    async def on_verdict(self, verdict: HealthVerdict) -> RollbackEvent | None:
        """Handle a published health verdict.

        Args:
            verdict: The verdict. Only Unsafe verdicts for the New target act.

        Returns:
            The recorded RollbackEvent, or None if nothing was applied.
        """
        if verdict.target is not Target.NEW or verdict.state is not HealthState.UNSAFE:
            return None

        operation_id = verdict.operation_id
        if self.phase(operation_id) is MigrationPhase.ROLLING_BACK:
            logger.info("Rollback already in progress, ignoring verdict", operation_id=operation_id)
            return None

        last_handled = self._last_verdict_at.get(operation_id)
        if last_handled is not None and verdict.evaluated_at <= last_handled:
            logger.info(
                "Duplicate unsafe verdict ignored",
                operation_id=operation_id,
                evaluated_at=verdict.evaluated_at.isoformat(),
            )
            return None
        self._last_verdict_at[operation_id] = verdict.evaluated_at

        policy = self._policy_store.get(operation_id)
        if policy is None or policy.new_path_percentage == 0:
            logger.info(
                "Unsafe verdict with nothing to roll back",
                operation_id=operation_id,
                has_policy=policy is not None,
            )
            return None

        reason = "; ".join(verdict.reasons) or "health verdict unsafe"
        self._phases[operation_id] = MigrationPhase.ROLLING_BACK
        logger.warning(
            "Unsafe verdict, rolling back",
            operation_id=operation_id,
            current_percentage=policy.new_path_percentage,
            reasons=list(verdict.reasons),
        )
        try:
            return await self._apply(
                operation_id,
                trigger=RollbackTrigger.AUTOMATIC,
                reason=reason,
                actor=_AUTOMATIC_ACTOR,
                max_attempts=self._max_apply_attempts,
            )
        except RollbackApplyFailed as exc:
            await self._alert(
                exc.message,
                {"operation_id": operation_id, "attempts": exc.attempts, "reason": reason},
            )
            return None
        except Exception as exc:
            logger.error("Automatic rollback failed", operation_id=operation_id, error=str(exc))
            await self._alert(
                f"Automatic rollback for '{operation_id}' failed: {exc}",
                {"operation_id": operation_id, "reason": reason},
            )
            return None
        finally:
            self._settle_phase(operation_id)

    # ------------------------------------------------------------------
    # Manual path
    # ------------------------------------------------------------------

    async def force_rollback(
        self,
        operation_id: str,
        reason: str,
        requested_by: str = "operator",
    ) -> RollbackEvent | None:
        """Immediately route all traffic for an operation back to Legacy.

        Bypasses health evaluation. Retries CAS conflicts against the latest
        policy version until the write applies.

        Args:
            operation_id: The operation identifier.
            reason: Operator-supplied reason, recorded in the event.
            requested_by: Operator identity, recorded as the policy author.

        Returns:
            The recorded RollbackEvent, or None if the operation was already at 0%.

        Raises:
            NotFoundError: If the operation has no policy.
        """
        if self._policy_store.get(operation_id) is None:
            raise NotFoundError(resource="RoutingPolicy", resource_id=operation_id)

        self._phases[operation_id] = MigrationPhase.ROLLING_BACK
        try:
            return await self._apply(
                operation_id,
                trigger=RollbackTrigger.MANUAL,
                reason=reason,
                actor=requested_by,
                max_attempts=None,
            )
        finally:
            self._settle_phase(operation_id)

    async def list_rollback_events(self, operation_id: str) -> list[RollbackEvent]:
        """Return the rollback audit trail of an operation, oldest first."""
        return await self._event_log.list_rollback_events(operation_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply(
        self,
        operation_id: str,
        trigger: RollbackTrigger,
        reason: str,
        actor: str,
        max_attempts: int | None,
    ) -> RollbackEvent | None:
        attempt = 0
        while True:
            attempt += 1
            policy = self._policy_store.get(operation_id)
            if policy is None:
                raise NotFoundError(resource="RoutingPolicy", resource_id=operation_id)

            previous = policy.new_path_percentage
            if trigger is RollbackTrigger.MANUAL:
                target_percentage = 0
            else:
                target_percentage = max(0, previous - self._step_size)
            if target_percentage == previous:
                logger.info(
                    "Rollback not needed, percentage unchanged",
                    operation_id=operation_id,
                    percentage=previous,
                )
                return None

            try:
                updated = await self._policy_store.update_percentage(
                    operation_id,
                    target_percentage,
                    expected_version=policy.version,
                    updated_by=actor,
                )
            except ConcurrentPolicyUpdate as exc:
                if max_attempts is not None and attempt >= max_attempts:
                    raise RollbackApplyFailed(operation_id, attempt) from exc
                delay = min(self._backoff_seconds * (2 ** (attempt - 1)), self._backoff_max_seconds)
                logger.warning(
                    "Rollback policy write conflicted, retrying",
                    operation_id=operation_id,
                    attempt=attempt,
                    retry_in_seconds=delay,
                    trigger=trigger.value,
                )
                await self._sleep(delay)
                continue

            event = RollbackEvent(
                operation_id=operation_id,
                previous_percentage=previous,
                new_percentage=updated.new_path_percentage,
                policy_version=updated.version,
                triggered_by=trigger,
                reason=reason,
            )
            await self._event_log.append_rollback_event(event)
            logger.warning(
                "Rollback applied",
                operation_id=operation_id,
                previous_percentage=previous,
                new_percentage=updated.new_path_percentage,
                policy_version=updated.version,
                triggered_by=trigger.value,
                attempts=attempt,
            )
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as exc:
                    logger.error(
                        "Rollback listener failed",
                        operation_id=operation_id,
                        error=str(exc),
                    )
            return event

    def _settle_phase(self, operation_id: str) -> None:
        policy = self._policy_store.get(operation_id)
        if policy is not None and policy.new_path_percentage > 0:
            self._phases[operation_id] = MigrationPhase.WATCHING
        else:
            self._phases[operation_id] = MigrationPhase.STABLE

    def _on_policy_changed(self, policy: RoutingPolicy) -> None:
        if self.phase(policy.operation_id) is MigrationPhase.ROLLING_BACK:
            return
        self._phases[policy.operation_id] = (
            MigrationPhase.WATCHING if policy.new_path_percentage > 0 else MigrationPhase.STABLE
        )

    async def _alert(self, message: str, context: dict[str, object]) -> None:
        logger.error("Raising rollback alert", message=message, **context)
        try:
            await self._notifier.notify(AlertSeverity.CRITICAL, message, dict(context))
        except Exception as exc:
            logger.error("Failed to deliver rollback alert", error=str(exc))
