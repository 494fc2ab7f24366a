"""Deterministic execution failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from bounty_settlement.execution.harness import (
    EXIT_CONTRACT_ERROR,
    EXIT_MEMORY_EXCEEDED,
    EXIT_WORKER_ERROR,
)
from bounty_settlement.models import FailureClass

EXECUTION_FAILURE_CLASSIFIER_VERSION = 2

# Negative codes are signals reported by Popen; 128+N is the shell convention.
_KILLED_EXIT_CODES: tuple[int, ...] = (-9, 137)
_CPU_LIMIT_EXIT_CODES: tuple[int, ...] = (-24, 152)

_MEMORY_PATTERNS: tuple[str, ...] = (
    "memoryerror",
    "cannot allocate memory",
    "out of memory",
    "std::bad_alloc",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "resource temporarily unavailable",
    "temporarily unavailable",
    "too many open files",
    "no space left on device",
    "connection reset",
    "broken pipe",
)


@dataclass(slots=True)
class ExecutionFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self, *, exit_code: int | None) -> dict[str, object]:
        return {
            "classifier_version": EXECUTION_FAILURE_CLASSIFIER_VERSION,
            "exit_code": exit_code,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_execution_failure(
    *,
    exit_code: int,
    timed_out: bool,
    stderr: str = "",
    error: str | None = None,
    failure_hint: FailureClass | None = None,
) -> ExecutionFailureClassification:
    """Classify a failed sandbox run into a deterministic retry class."""

    if timed_out:
        return ExecutionFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="wall_clock_timeout",
            matched_rule="timed_out",
        )

    if failure_hint is not None:
        return ExecutionFailureClassification(
            failure_class=failure_hint,
            reason_code=f"backend_{failure_hint.value}",
            matched_rule="backend_hint",
        )

    # The harness caught an exception raised by worker code; its text is not evidence.
    if exit_code == EXIT_WORKER_ERROR:
        return ExecutionFailureClassification(
            failure_class=FailureClass.WORKER_ERROR,
            reason_code="worker_raised",
            matched_rule="worker_error_exit_code",
        )

    haystack = f"{stderr}\n{error or ''}".lower()

    if exit_code in _CPU_LIMIT_EXIT_CODES:
        return ExecutionFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="cpu_limit_exceeded",
            matched_rule="cpu_limit_exit_code",
        )

    pattern = _first_match(haystack, _MEMORY_PATTERNS)
    if exit_code == EXIT_MEMORY_EXCEEDED or pattern is not None:
        return ExecutionFailureClassification(
            failure_class=FailureClass.RESOURCE_EXCEEDED,
            reason_code="memory_limit_exceeded",
            matched_rule="memory_exit_code" if pattern is None else "memory_pattern",
            matched_pattern=pattern,
        )

    if exit_code in _KILLED_EXIT_CODES:
        return ExecutionFailureClassification(
            failure_class=FailureClass.RESOURCE_EXCEEDED,
            reason_code="killed_by_signal",
            matched_rule="killed_exit_code",
        )

    if exit_code == EXIT_CONTRACT_ERROR:
        return ExecutionFailureClassification(
            failure_class=FailureClass.INPUT_CONTRACT_ERROR,
            reason_code="input_contract_error",
            matched_rule="contract_exit_code",
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ExecutionFailureClassification(
            failure_class=FailureClass.INFRA_TRANSIENT,
            reason_code="infra_transient",
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )

    return ExecutionFailureClassification(
        failure_class=FailureClass.WORKER_ERROR,
        reason_code="worker_error",
        matched_rule="fallback_worker_error",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
