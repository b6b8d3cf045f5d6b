"""Tests for the ordered step runner."""
from __future__ import annotations

from sitectl.logging import StructuredLogger
from sitectl.steps import Step, StepStatus, run_step, run_steps

from conftest import fail, ok


def test_satisfied_step_does_not_apply(logger: StructuredLogger) -> None:
    """A passing check skips the action."""
    applied: list[str] = []

    def apply() -> object:
        applied.append("x")
        return ok("true")

    outcome = run_step(Step("nginx.install", check=lambda: True, apply=apply), logger)  # type: ignore[arg-type]

    assert outcome.status is StepStatus.SATISFIED
    assert outcome.ok
    assert applied == []


def test_step_applies_once_and_rechecks(logger: StructuredLogger) -> None:
    """The action runs once, then the check decides the outcome."""
    state = {"installed": False, "applied": 0, "post": 0}

    def apply() -> object:
        state["applied"] += 1
        state["installed"] = True
        return ok("apt-get", "install", "-y", "nginx")

    def post_apply() -> object:
        state["post"] += 1
        return ok("systemctl", "enable", "nginx")

    step = Step(
        "nginx.install",
        check=lambda: bool(state["installed"]),
        apply=apply,  # type: ignore[arg-type]
        post_apply=post_apply,  # type: ignore[arg-type]
    )

    outcome = run_step(step, logger)

    assert outcome.status is StepStatus.APPLIED
    assert state["applied"] == 1
    assert state["post"] == 1


def test_failed_action_is_reported(logger: StructuredLogger) -> None:
    """A failing action yields FAILED with the command description."""
    step = Step(
        "nginx.install",
        check=lambda: False,
        apply=lambda: fail("apt-get", "install", "-y", "nginx", rc=100, stderr="E: Unable to locate"),
    )

    outcome = run_step(step, logger)

    assert outcome.status is StepStatus.FAILED
    assert not outcome.ok
    assert outcome.detail is not None
    assert "rc=100" in outcome.detail


def test_unsatisfied_after_apply_fails(logger: StructuredLogger) -> None:
    """An action that succeeds without satisfying the check is a failure."""
    step = Step("nginx.start", check=lambda: False, apply=lambda: ok("systemctl", "start", "nginx"))

    outcome = run_step(step, logger)

    assert outcome.status is StepStatus.FAILED
    assert outcome.detail == "prerequisite still unsatisfied after one attempt"


def test_post_apply_failure_is_not_fatal(logger: StructuredLogger) -> None:
    """A failing post-apply hook only logs when the check passes."""
    installed = {"value": False}

    def apply() -> object:
        installed["value"] = True
        return ok("apt-get", "install", "-y", "nginx")

    step = Step(
        "nginx.install",
        check=lambda: installed["value"],
        apply=apply,  # type: ignore[arg-type]
        post_apply=lambda: fail("systemctl", "enable", "nginx"),
    )

    assert run_step(step, logger).status is StepStatus.APPLIED


def test_run_steps_skips_after_failure(logger: StructuredLogger) -> None:
    """Steps after a failure are reported as skipped, not run."""
    ran: list[str] = []

    def apply_second() -> object:
        ran.append("second")
        return ok("true")

    outcomes = run_steps(
        [
            Step("first", check=lambda: False, apply=lambda: fail("false")),
            Step("second", check=lambda: False, apply=apply_second),  # type: ignore[arg-type]
        ],
        logger,
    )

    assert [o.status for o in outcomes] == [StepStatus.FAILED, StepStatus.SKIPPED]
    assert ran == []
