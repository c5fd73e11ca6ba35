"""Deterministic execution-unit outcome classification for scheduler retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from agent_dispatch.orchestrator.models import FailureClass

EXIT_PERMANENT = 3

_RESOURCE_BREACH_PATTERNS: tuple[str, ...] = (
    "memoryerror",
    "cannot allocate memory",
    "out of memory",
    "file too large",
    "no space left on device",
    "cpu time limit exceeded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
    "too many requests",
    "rate limit",
)

_PERMANENT_CLASSES = frozenset(
    {
        FailureClass.ITERATION_LIMIT,
        FailureClass.MALFORMED_PAYLOAD,
    },
)


@dataclass(slots=True)
class UnitFailureClassification:
    """Normalized classification of one failed unit run."""

    failure_class: FailureClass
    retryable: bool
    matched_rule: str
    matched_pattern: str | None = None


def classify_unit_failure(
    *,
    exit_code: int | None,
    timed_out: bool,
    result_failure_class: str | None,
    result_retryable: bool | None,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> UnitFailureClassification:
    """Classify a unit run that did not succeed.

    A structured result written by the unit wins over exit-code heuristics;
    the deadline always wins over everything.
    """

    if timed_out:
        return UnitFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            retryable=False,
            matched_rule="deadline_exceeded",
        )

    declared = _parse_failure_class(result_failure_class)
    if declared is not None:
        retryable = (
            declared not in _PERMANENT_CLASSES
            if result_retryable is None
            else bool(result_retryable) and declared not in _PERMANENT_CLASSES
        )
        return UnitFailureClassification(
            failure_class=declared,
            retryable=retryable,
            matched_rule="unit_result",
        )

    if exit_code == EXIT_PERMANENT:
        return UnitFailureClassification(
            failure_class=FailureClass.UNIT_ERROR,
            retryable=False,
            matched_rule="permanent_exit_code",
        )

    haystack = stderr.lower()
    pattern = _first_match(haystack, _RESOURCE_BREACH_PATTERNS)
    if pattern is not None:
        return UnitFailureClassification(
            failure_class=FailureClass.UNIT_ERROR,
            retryable=True,
            matched_rule="resource_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or (exit_code is not None and exit_code in transient_exit_codes):
        return UnitFailureClassification(
            failure_class=FailureClass.UNIT_TRANSIENT,
            retryable=True,
            matched_rule=(
                "transient_exit_code"
                if pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return UnitFailureClassification(
        failure_class=FailureClass.UNIT_ERROR,
        retryable=True,
        matched_rule="fallback_retryable",
    )


def _parse_failure_class(value: str | None) -> FailureClass | None:
    if not value:
        return None
    try:
        return FailureClass(value)
    except ValueError:
        return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
