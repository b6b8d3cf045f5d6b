"""Ordered prerequisite steps with structured outcomes.

A :class:`Step` pairs a ``check`` (is the prerequisite already satisfied?)
with an ``apply`` action and an optional ``post_apply`` hook. :func:`run_steps`
executes them in order, attempts each action once, re-checks afterwards and
stops at the first failure. Outcomes are returned as records; nothing is
raised for control flow.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from .logging import StructuredLogger
from .runner import CommandResult

Action = Callable[[], CommandResult]


class StepStatus(str, Enum):
    """Outcome of a single step."""

    SATISFIED = "satisfied"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class Step:
    """A prerequisite with its check and remedial action."""

    name: str
    check: Callable[[], bool]
    apply: Action
    post_apply: Action | None = None


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Recorded result of running a :class:`Step`."""

    name: str
    status: StepStatus
    detail: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the step failed."""
        return self.status is not StepStatus.FAILED


def run_step(step: Step, logger: StructuredLogger) -> StepOutcome:
    """Run one step: check, apply once, post-apply, re-check."""
    if step.check():
        logger.debug(f"{step.name}: already satisfied")
        return StepOutcome(step.name, StepStatus.SATISFIED)

    logger.info(f"{step.name}: applying")
    result = step.apply()
    if not result.ok:
        return StepOutcome(step.name, StepStatus.FAILED, result.describe())

    if step.post_apply is not None:
        post = step.post_apply()
        if not post.ok:
            # The prerequisite may still be usable; the re-check below decides.
            logger.warning(f"{step.name}: post-apply action failed: {post.describe()}")

    if not step.check():
        return StepOutcome(
            step.name,
            StepStatus.FAILED,
            "prerequisite still unsatisfied after one attempt",
        )
    return StepOutcome(step.name, StepStatus.APPLIED, result.describe())


def run_steps(steps: Sequence[Step], logger: StructuredLogger) -> list[StepOutcome]:
    """Run *steps* in order; steps after a failure are reported as skipped."""
    outcomes: list[StepOutcome] = []
    failed = False
    for step in steps:
        if failed:
            outcomes.append(StepOutcome(step.name, StepStatus.SKIPPED, "earlier step failed"))
            continue
        outcome = run_step(step, logger)
        outcomes.append(outcome)
        failed = not outcome.ok
    return outcomes


__all__ = ["Step", "StepOutcome", "StepStatus", "run_step", "run_steps"]
