"""
Stop criteria for the agent loop.

The model signals the end of a task with a marker in its final text:
``<ralph>COMPLETE</ralph>`` when done, ``<ralph>BLOCKED: reason</ralph>`` when it
cannot proceed. A blocked marker wins when both appear in the same turn.
Completion can additionally be gated on checks (tests, lint, tsc) run by a
host-provided CheckRunner.
"""

import re
from dataclasses import dataclass
from typing import Protocol

import structlog

from .state import StopReason

logger = structlog.get_logger()

DEFAULT_SUCCESS_REGEX = r"<ralph>COMPLETE</ralph>"
DEFAULT_BLOCKED_REGEX = r"<ralph>BLOCKED:(.*?)</ralph>"

CHECK_TESTS = "tests"
CHECK_LINT = "lint"
CHECK_TSC = "tsc"


@dataclass(frozen=True)
class StopCriteria:
    """Declarative stop policy, evaluated once per iteration."""

    require_passing_tests: bool = False
    require_lint: bool = False
    require_tsc: bool = False
    require_no_errors: bool = False
    success_regex: str | None = DEFAULT_SUCCESS_REGEX
    blocked_regex: str | None = DEFAULT_BLOCKED_REGEX

    @property
    def required_checks(self) -> list[str]:
        checks = []
        if self.require_passing_tests:
            checks.append(CHECK_TESTS)
        if self.require_lint:
            checks.append(CHECK_LINT)
        if self.require_tsc:
            checks.append(CHECK_TSC)
        return checks


@dataclass(frozen=True)
class StopDecision:
    reason: StopReason | None
    message: str | None = None
    completion_matched: bool = False


@dataclass(frozen=True)
class CheckOutcome:
    passed: bool
    output: str = ""


class CheckRunner(Protocol):
    """Runs a named verification check (``tests``, ``lint``, ``tsc``)."""

    async def run(self, check: str) -> CheckOutcome: ...


def _compile(pattern: str | None) -> re.Pattern[str] | None:
    if not pattern:
        return None
    return re.compile(pattern, re.DOTALL)


def match_stop_markers(criteria: StopCriteria, text: str) -> StopDecision:
    """Match the turn text against the blocked and success patterns.

    Blocked is checked first. The stop message is the first capture group when
    the blocked pattern has one, otherwise the text after the match.
    """
    blocked = _compile(criteria.blocked_regex)
    if blocked is not None:
        match = blocked.search(text)
        if match:
            if match.groups() and match.group(1) is not None:
                message = match.group(1).strip()
            else:
                message = text[match.end():].strip()
            return StopDecision(StopReason.BLOCKED, message or None)

    success = _compile(criteria.success_regex)
    if success is not None and success.search(text):
        return StopDecision(StopReason.COMPLETE, None, completion_matched=True)

    return StopDecision(None)


async def evaluate_stop_criteria(
    criteria: StopCriteria,
    text: str,
    iteration_errors: list[str],
    check_runner: CheckRunner | None = None,
) -> tuple[StopDecision, list[str]]:
    """Decide whether the loop stops after this turn.

    Returns the decision plus feedback lines for the next iteration when a
    claimed completion was refused.
    """
    decision = match_stop_markers(criteria, text)
    if decision.reason is not StopReason.COMPLETE:
        return decision, []

    feedback: list[str] = []
    if criteria.require_no_errors and iteration_errors:
        feedback.append(
            "Completion was claimed but this iteration reported errors:\n"
            + "\n".join(f"- {e}" for e in iteration_errors)
        )

    for check in criteria.required_checks:
        if check_runner is None:
            logger.warning("Required check skipped, no check runner configured", check=check)
            continue
        outcome = await check_runner.run(check)
        logger.info("Stop check finished", check=check, passed=outcome.passed)
        if not outcome.passed:
            feedback.append(f"Check '{check}' failed:\n{outcome.output.strip()}")

    if feedback:
        return StopDecision(None, completion_matched=True), feedback
    return decision, []
