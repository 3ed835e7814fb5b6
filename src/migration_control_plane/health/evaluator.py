"""HealthEvaluator: rolling-window comparison of the New path against Legacy.

Samples are aggregated into buckets aligned to ``window_seconds``. The window
is anchored to the evaluator's clock: only the ``window_count`` buckets ending
with the current one are retained, so evidence ages out when traffic stops
and memory stays bounded however long a migration runs. Buckets are pruned
both on ingestion and on evaluation. Samples older than the window, or
starting more than ``max_clock_skew_seconds`` in the future, are rejected.

Verdict rules for a target (compared against the other target):
- either side has fewer than ``min_sample_count`` samples -> Degraded
  (insufficient evidence, cautious but not alarming)
- error-rate delta above ``error_rate_delta``             -> Unsafe
- p99 latency delta above ``latency_delta_ms``             -> Unsafe
- any positive delta below those thresholds                -> Degraded
- otherwise                                                -> Healthy
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from migration_control_plane.core.models import (
    HealthSample,
    HealthState,
    HealthVerdict,
    Target,
    WindowAggregate,
    utc_now,
)
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)

VerdictListener = Callable[[HealthVerdict], Awaitable[object]]
Clock = Callable[[], datetime]


class HealthThresholds(BaseModel):
    """Thresholds and window geometry for health evaluation."""

    model_config = ConfigDict(frozen=True)

    error_rate_delta: float = Field(default=0.02, ge=0.0, le=1.0)
    latency_delta_ms: float = Field(default=500.0, ge=0.0)
    min_sample_count: int = Field(default=30, ge=1)
    window_count: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=60, ge=1)
    max_clock_skew_seconds: int = Field(default=60, ge=0)


@dataclass
class _Bucket:
    """Mutable aggregate of the samples that fell into one window."""

    sample_count: int = 0
    request_count: int = 0
    error_count: int = 0
    latency_weighted_sum: float = 0.0
    latency_weight: float = 0.0

    def add(self, sample: HealthSample) -> None:
        weight = float(max(sample.request_count, 1))
        self.sample_count += 1
        self.request_count += sample.request_count
        self.error_count += sample.error_count
        self.latency_weighted_sum += sample.p99_latency_ms * weight
        self.latency_weight += weight


class HealthEvaluator:
    """Owns health samples and verdicts for every migrating operation.

    Args:
        thresholds: Evaluation thresholds. Defaults apply when None.
        clock: Returns the current UTC time; anchors the rolling window.
    """

    def __init__(
        self,
        thresholds: HealthThresholds | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._thresholds = thresholds or HealthThresholds()
        self._clock = clock
        # { operation_id: { target: { bucket_start_epoch: _Bucket } } }
        self._windows: dict[str, dict[Target, dict[int, _Bucket]]] = {}
        self._latest: dict[tuple[str, Target], HealthVerdict] = {}
        self._listeners: list[VerdictListener] = []

    @property
    def thresholds(self) -> HealthThresholds:
        return self._thresholds

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def report_sample(self, sample: HealthSample) -> bool:
        """Add a sample to its rolling window.

        Args:
            sample: The immutable metrics sample.

        Returns:
            True if the sample was retained. False if it was older than the
            rolling window or too far in the future, and was discarded.
        """
        bucket_start = self._bucket_start(sample.window_start)
        now = self._clock()
        operation_id = sample.operation_id

        if sample.window_start.timestamp() > now.timestamp() + self._thresholds.max_clock_skew_seconds:
            logger.warning(
                "Discarding future-dated health sample",
                operation_id=operation_id,
                target=sample.target.value,
                window_start=sample.window_start.isoformat(),
            )
            return False
        if bucket_start <= self._cutoff(now):
            logger.debug(
                "Discarding late health sample",
                operation_id=operation_id,
                target=sample.target.value,
                window_start=sample.window_start.isoformat(),
            )
            return False

        series = self._windows.setdefault(operation_id, {}).setdefault(sample.target, {})
        series.setdefault(bucket_start, _Bucket()).add(sample)
        self._prune(operation_id, now)
        return True

    def operations(self) -> list[str]:
        """Return operation IDs that currently have retained samples."""
        now = self._clock()
        for operation_id in list(self._windows):
            self._prune(operation_id, now)
        return sorted(self._windows)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def aggregate(self, operation_id: str, target: Target) -> WindowAggregate:
        """Aggregate the retained window for one (operation, target).

        Args:
            operation_id: The operation identifier.
            target: Legacy or New.

        Returns:
            WindowAggregate with error rate and request-weighted p99 latency.
        """
        self._prune(operation_id, self._clock())
        buckets = self._windows.get(operation_id, {}).get(target, {}).values()
        total = _Bucket()
        for bucket in buckets:
            total.sample_count += bucket.sample_count
            total.request_count += bucket.request_count
            total.error_count += bucket.error_count
            total.latency_weighted_sum += bucket.latency_weighted_sum
            total.latency_weight += bucket.latency_weight

        error_rate = total.error_count / total.request_count if total.request_count else 0.0
        p99 = total.latency_weighted_sum / total.latency_weight if total.latency_weight else 0.0
        return WindowAggregate(
            sample_count=total.sample_count,
            request_count=total.request_count,
            error_count=total.error_count,
            error_rate=error_rate,
            p99_latency_ms=p99,
        )

    def evaluate(self, operation_id: str, target: Target = Target.NEW) -> HealthVerdict:
        """Derive the verdict for one target of an operation.

        Args:
            operation_id: The operation identifier.
            target: The target to judge. It is compared against the other target.

        Returns:
            The verdict, which also becomes the latest verdict for (operation, target).
        """
        thresholds = self._thresholds
        observed = self.aggregate(operation_id, target)
        baseline = self.aggregate(operation_id, target.other)
        reasons: list[str] = []

        if (
            observed.sample_count < thresholds.min_sample_count
            or baseline.sample_count < thresholds.min_sample_count
        ):
            state = HealthState.DEGRADED
            reasons.append(
                f"insufficient samples: {target.value}={observed.sample_count}, "
                f"{target.other.value}={baseline.sample_count} "
                f"(minimum {thresholds.min_sample_count})"
            )
        else:
            error_delta = observed.error_rate - baseline.error_rate
            latency_delta = observed.p99_latency_ms - baseline.p99_latency_ms
            unsafe = False

            if error_delta > thresholds.error_rate_delta:
                unsafe = True
                reasons.append(
                    f"error rate {observed.error_rate:.4f} exceeds baseline "
                    f"{baseline.error_rate:.4f} by more than {thresholds.error_rate_delta}"
                )
            if latency_delta > thresholds.latency_delta_ms:
                unsafe = True
                reasons.append(
                    f"p99 latency {observed.p99_latency_ms:.1f}ms exceeds baseline "
                    f"{baseline.p99_latency_ms:.1f}ms by more than {thresholds.latency_delta_ms}ms"
                )

            if unsafe:
                state = HealthState.UNSAFE
            elif error_delta > 0 or latency_delta > 0:
                state = HealthState.DEGRADED
                if error_delta > 0:
                    reasons.append(f"error rate above baseline by {error_delta:.4f}")
                if latency_delta > 0:
                    reasons.append(f"p99 latency above baseline by {latency_delta:.1f}ms")
            else:
                state = HealthState.HEALTHY

        verdict = HealthVerdict(
            operation_id=operation_id,
            target=target,
            state=state,
            reasons=tuple(reasons),
            evaluated_at=self._clock(),
            observed=observed,
            baseline=baseline,
        )
        self._latest[(operation_id, target)] = verdict
        return verdict

    def latest_verdict(self, operation_id: str, target: Target = Target.NEW) -> HealthVerdict | None:
        """Return the most recent verdict for (operation, target), if any."""
        return self._latest.get((operation_id, target))

    # ------------------------------------------------------------------
    # Publishing and the periodic loop
    # ------------------------------------------------------------------

    def subscribe(self, listener: VerdictListener) -> None:
        """Register an async listener that receives every published verdict."""
        self._listeners.append(listener)

    async def evaluate_and_publish(
        self,
        operation_ids: Iterable[str] | None = None,
    ) -> list[HealthVerdict]:
        """Evaluate the New target of each operation and publish the verdicts.

        Args:
            operation_ids: Operations to evaluate. None evaluates every
                operation with retained samples.

        Returns:
            The published verdicts.
        """
        ids = list(operation_ids) if operation_ids is not None else self.operations()
        verdicts = [self.evaluate(operation_id, Target.NEW) for operation_id in ids]
        for verdict in verdicts:
            for listener in list(self._listeners):
                try:
                    await listener(verdict)
                except Exception as exc:
                    logger.error(
                        "Verdict listener failed",
                        operation_id=verdict.operation_id,
                        state=verdict.state.value,
                        error=str(exc),
                    )
        return verdicts

    async def run(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Evaluate and publish periodically until stop_event is set.

        Args:
            interval_seconds: Delay between evaluation rounds.
            stop_event: Event that ends the loop.
        """
        logger.info("Health evaluation loop started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                verdicts = await self.evaluate_and_publish()
                unsafe = [v.operation_id for v in verdicts if v.state is HealthState.UNSAFE]
                if unsafe:
                    logger.warning("Unsafe operations detected", operations=unsafe)
            except Exception as exc:
                logger.error("Health evaluation round failed", error=str(exc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
        logger.info("Health evaluation loop stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _span_seconds(self) -> int:
        return self._thresholds.window_count * self._thresholds.window_seconds

    def _bucket_start(self, window_start: datetime) -> int:
        epoch = int(window_start.timestamp())
        return epoch - (epoch % self._thresholds.window_seconds)

    def _cutoff(self, now: datetime) -> int:
        """Bucket starts at or below this epoch are outside the window."""
        return self._bucket_start(now) - self._span_seconds()

    def _prune(self, operation_id: str, now: datetime) -> None:
        cutoff = self._cutoff(now)
        windows = self._windows.get(operation_id)
        if windows is None:
            return
        for target, series in list(windows.items()):
            for bucket_start in [start for start in series if start <= cutoff]:
                del series[bucket_start]
            if not series:
                del windows[target]
        if not windows:
            del self._windows[operation_id]
