from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from marketplace.logging_config import get_logger

logger = get_logger('services.saga')


@dataclass(frozen=True)
class SagaStep:
    """One forward action and its undo. ``compensate`` receives the action's result."""

    name: str
    action: Callable[[], Any]
    compensate: Callable[[Any], None] | None = None


def run_saga(steps: Sequence[SagaStep]) -> list[Any]:
    """Run steps in order. On failure undo completed steps in reverse, then re-raise."""
    completed: list[tuple[SagaStep, Any]] = []
    for step in steps:
        try:
            result = step.action()
        except Exception:
            logger.warning('Saga step %s failed, compensating %d step(s)', step.name, len(completed))
            _compensate(completed)
            raise
        completed.append((step, result))
    return [result for _, result in completed]


def _compensate(completed: list[tuple[SagaStep, Any]]) -> None:
    for step, result in reversed(completed):
        if step.compensate is None:
            continue
        try:
            step.compensate(result)
        except Exception:
            # Keep undoing the rest; the original failure is what propagates.
            logger.exception('Compensation for saga step %s failed', step.name)
