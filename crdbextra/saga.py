"""Ordered multi-step operations with compensating actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

LOG = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]
Compensation = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class SagaStep:
    """One forward action and the action that undoes it."""

    name: str
    action: Action
    compensation: Compensation | None = None


class Saga:
    """Runs steps in order; on failure, undoes completed steps in reverse.

    Cluster-side statements are not transactional across steps. The saga only
    makes the recovery policy explicit: the step that failed is not compensated
    (it did not complete), every step before it is. Compensation failures are
    logged and attached as notes to the original exception, which is what
    propagates.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._steps: list[SagaStep] = []

    def step(self, name: str, action: Action, compensation: Compensation | None = None) -> Saga:
        self._steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    async def run(self) -> list[Any]:
        """Execute every step and return their results in order."""

        completed: list[SagaStep] = []
        results: list[Any] = []
        for step in self._steps:
            LOG.debug("%s: running step %s", self.name, step.name)
            try:
                results.append(await step.action())
            except Exception as exc:
                LOG.warning("%s: step %s failed: %s", self.name, step.name, exc)
                await self._compensate(completed, exc)
                raise
            completed.append(step)
        return results

    async def _compensate(self, completed: list[SagaStep], failure: Exception) -> None:
        for step in reversed(completed):
            if step.compensation is None:
                continue
            LOG.info("%s: compensating step %s", self.name, step.name)
            try:
                await step.compensation()
            except Exception as exc:
                LOG.error("%s: compensation for step %s failed: %s", self.name, step.name, exc)
                failure.add_note(f"compensation for step '{step.name}' failed: {exc}")


__all__ = ["Saga", "SagaStep"]
