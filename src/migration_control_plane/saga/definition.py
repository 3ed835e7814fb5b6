"""Saga definitions: ordered steps with optional compensations.

A SagaStep's ``invoke`` receives the previous step's output (the saga input
for the first step) and returns this step's output. ``compensate`` receives
the step's own recorded output. Both may be plain functions or coroutine
functions. Participants must make ``invoke`` and ``compensate`` idempotent:
the coordinator delivers them at least once.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

StepAction = Callable[[Any], Any | Awaitable[Any]]


@dataclass(frozen=True)
class SagaStep:
    """One step of a saga.

    Attributes:
        name: Unique name within the definition (recorded in completed_steps).
        invoke: Forward action, ``(input) -> output``.
        compensate: Undo action, ``(output) -> None``. None if the step has
            nothing to undo.
        timeout_seconds: Per-call timeout for invoke and compensate. None uses
            the coordinator default. Plain functions run in a worker thread
            when a timeout applies; on timeout the thread is abandoned, not
            cancelled.
    """

    name: str
    invoke: StepAction
    compensate: StepAction | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("SagaStep name must not be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"SagaStep '{self.name}' timeout must be positive")


@dataclass(frozen=True)
class SagaDefinition:
    """Named, ordered list of saga steps.

    Attributes:
        name: Definition name, referenced by saga instances.
        steps: Steps in execution order.
    """

    name: str
    steps: tuple[SagaStep, ...]
    _index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("SagaDefinition name must not be empty")
        steps = tuple(self.steps)
        if not steps:
            raise ValueError(f"SagaDefinition '{self.name}' needs at least one step")
        index: dict[str, int] = {}
        for position, step in enumerate(steps):
            if step.name in index:
                raise ValueError(
                    f"SagaDefinition '{self.name}' has duplicate step name '{step.name}'"
                )
            index[step.name] = position
        object.__setattr__(self, "steps", steps)
        object.__setattr__(self, "_index", index)

    def step(self, name: str) -> SagaStep:
        """Return the step with the given name.

        Raises:
            KeyError: If the definition has no such step.
        """
        return self.steps[self._index[name]]
