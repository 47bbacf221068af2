"""Ordered (action, compensation) steps, unwound in reverse on the first failure.

Used where a logical operation spans several collections and MongoDB gives us
no transaction across them: ledger reservation, assignment row, entitlement.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import sentry_sdk

from advisor_credits.core.logging import get_logger

log = get_logger(__name__)

Action = Callable[[], Awaitable[Any]]
Compensation = Callable[[Any], Awaitable[None]]


@dataclass
class _Step:
    name: str
    action: Action
    compensation: Compensation | None = None


@dataclass
class Saga:
    name: str
    context: dict[str, Any] = field(default_factory=dict)
    _steps: list[_Step] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)
    compensation_failures: list[str] = field(default_factory=list)

    def step(self, name: str, action: Action, compensation: Compensation | None = None) -> "Saga":
        self._steps.append(_Step(name, action, compensation))
        return self

    async def run(self) -> dict[str, Any]:
        """Run every step in order; on failure undo completed steps newest-first and re-raise."""
        done: list[_Step] = []
        for step in self._steps:
            try:
                self.results[step.name] = await step.action()
            except Exception as e:
                log.warning("saga_step_failed", saga=self.name, step=step.name, error=str(e), **self.context)
                await self._unwind(done)
                raise
            done.append(step)
        return self.results

    async def _unwind(self, done: list[_Step]) -> None:
        for step in reversed(done):
            if step.compensation is None:
                continue
            try:
                await step.compensation(self.results.get(step.name))
                log.info("saga_step_compensated", saga=self.name, step=step.name, **self.context)
            except Exception as e:
                # Keep unwinding; the remaining undos are independent of this one.
                self.compensation_failures.append(step.name)
                log.error("saga_compensation_failed", saga=self.name, step=step.name, error=str(e), **self.context)
                sentry_sdk.capture_exception(e)
