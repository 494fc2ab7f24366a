"""Deterministic evaluators for structured success metrics."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence
from typing import Any

from bounty_settlement.models import CriterionCheck, MetricKind, SuccessMetric

PASS_SCORE = 100.0
FAIL_SCORE = 0.0
AMBIGUOUS_SCORE = 50.0

_MISSING = object()


def evaluate_metrics(metrics: Sequence[SuccessMetric], output: Any) -> list[CriterionCheck]:
    return [evaluate_metric(metric, output) for metric in metrics]


def evaluate_metric(metric: SuccessMetric, output: Any) -> CriterionCheck:
    """Evaluate one metric; `passed=None` when the metric itself cannot be applied."""

    evaluator = _EVALUATORS[metric.kind]
    passed, reasoning = evaluator(metric, output)
    return CriterionCheck(
        criterion=metric.name,
        passed=passed,
        score=_score_for(passed),
        reasoning=reasoning,
        required=metric.required,
    )


def weighted_score(metrics: Sequence[SuccessMetric], checks: Sequence[CriterionCheck]) -> float:
    """Weighted mean of check scores, 0..100."""

    total_weight = 0.0
    total = 0.0
    for metric, check in zip(metrics, checks, strict=True):
        weight = max(0.0, metric.weight)
        total_weight += weight
        total += weight * check.score
    if total_weight == 0:
        return FAIL_SCORE
    return round(total / total_weight, 2)


def output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, sort_keys=True)


def _score_for(passed: bool | None) -> float:
    if passed is None:
        return AMBIGUOUS_SCORE
    return PASS_SCORE if passed else FAIL_SCORE


def _contains(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
    if not metric.target:
        return None, "No substring configured."
    found = metric.target in output_text(output)
    return found, f"Output {'contains' if found else 'does not contain'} {metric.target!r}."


def _regex(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
    try:
        pattern = re.compile(metric.target)
    except re.error as error:
        return None, f"Invalid pattern: {error}"
    matched = pattern.search(output_text(output)) is not None
    return matched, f"Pattern {'matched' if matched else 'did not match'}."


def _equals(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
    value = _select(output, metric.path)
    if value is _MISSING:
        return False, f"Field {metric.path!r} is missing."
    if isinstance(value, str):
        equal = value.strip() == metric.target.strip()
    else:
        try:
            expected = json.loads(metric.target)
        except ValueError:
            expected = metric.target
        equal = value == expected or output_text(value) == metric.target
    return equal, "Output matches expected value." if equal else "Output differs from expected."


def _min_length(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
    try:
        minimum = int(metric.target)
    except ValueError:
        return None, f"Minimum length is not an integer: {metric.target!r}"
    length = len(output_text(_select_or_none(output, metric.path)))
    return length >= minimum, f"Length {length} vs minimum {minimum}."


def _json_field(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
    if not metric.path:
        return None, "No field path configured."
    value = _select(output, metric.path)
    if value is _MISSING:
        return False, f"Field {metric.path!r} is missing."
    if not metric.target:
        return True, f"Field {metric.path!r} is present."
    equal = output_text(value) == metric.target
    return equal, f"Field {metric.path!r} is {value!r}."


def _numeric(
    compare: Callable[[float, float], bool],
    label: str,
) -> Callable[[SuccessMetric, Any], tuple[bool | None, str]]:
    def _evaluate(metric: SuccessMetric, output: Any) -> tuple[bool | None, str]:
        try:
            bound = float(metric.target)
        except ValueError:
            return None, f"Bound is not numeric: {metric.target!r}"
        value = _select(output, metric.path)
        if value is _MISSING:
            return False, f"Field {metric.path!r} is missing."
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False, f"Value {value!r} is not numeric."
        except OverflowError:
            return False, f"Value at {metric.path!r} is out of float range."
        passed = compare(number, bound)
        return passed, f"{number:g} {label} {bound:g}: {'ok' if passed else 'violated'}."

    return _evaluate


def _select(output: Any, path: str | None) -> Any:
    """Resolve a dotted path (`a.b.0`) inside JSON output."""

    document = output
    if isinstance(document, str) and path:
        try:
            document = json.loads(document)
        except ValueError:
            return _MISSING
    if not path:
        return document
    for part in path.split("."):
        if isinstance(document, dict) and part in document:
            document = document[part]
        elif isinstance(document, list) and part.isdigit() and int(part) < len(document):
            document = document[int(part)]
        else:
            return _MISSING
    return document


def _select_or_none(output: Any, path: str | None) -> Any:
    value = _select(output, path)
    return None if value is _MISSING else value


_EVALUATORS: dict[MetricKind, Callable[[SuccessMetric, Any], tuple[bool | None, str]]] = {
    MetricKind.CONTAINS: _contains,
    MetricKind.REGEX: _regex,
    MetricKind.EQUALS: _equals,
    MetricKind.MIN_LENGTH: _min_length,
    MetricKind.JSON_FIELD: _json_field,
    MetricKind.NUMERIC_MIN: _numeric(lambda value, bound: value >= bound, ">="),
    MetricKind.NUMERIC_MAX: _numeric(lambda value, bound: value <= bound, "<="),
}
