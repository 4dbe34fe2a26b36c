"""Partial-credit similarity for failing tests.

A failing assertion whose actual value is close to the expected one earns a
score in ``[0, 1]``.  Aggregated over a run, these scores rank failing
attempts against each other before any attempt passes outright.
"""

from __future__ import annotations

import ast
import json
import math
from typing import Any, List, Optional

from ..errors import NoTestsDetectedError
from ..state.schema import TestFailure, TestOutcome

_MISSING = object()
_BOOLEAN_WORDS = {"true": 1.0, "false": 0.0}


def parse_number(value: str) -> Optional[float]:
    """Parse ``value`` as a finite number; quotes are stripped, booleans map to 1/0."""

    cleaned = value.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1].strip()
    if not cleaned:
        return None
    lowered = cleaned.lower()
    if lowered in _BOOLEAN_WORDS:
        return _BOOLEAN_WORDS[lowered]
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def numeric_similarity(expected: float, actual: float) -> float:
    if expected == actual:
        return 1.0
    scale = max(abs(expected), abs(actual), 1.0)
    return max(0.0, 1.0 - abs(expected - actual) / scale)


def levenshtein_distance(left: str, right: str) -> int:
    """Classic edit distance with two rolling rows."""

    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i] + [0] * len(right)
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current[j] = min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost)
        previous = current
    return previous[-1]


def string_similarity(expected: str, actual: str) -> float:
    if expected == actual:
        return 1.0
    if not expected or not actual:
        return 0.0
    distance = levenshtein_distance(expected, actual)
    return max(0.0, 1.0 - distance / max(len(expected), len(actual)))


def _load_structure(text: str) -> Any:
    """Parse JSON, then Python literals as printed by assertion reprs."""

    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
        return _MISSING


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def structural_similarity(expected: Any, actual: Any) -> float:
    """Recursively compare parsed values.

    Arrays compare position by position over the longer length; objects over
    the union of keys.  Missing positions and keys contribute zero.
    """

    kind = _kind(expected)
    if kind != _kind(actual):
        return 0.0
    if kind == "array":
        if not expected and not actual:
            return 1.0
        length = max(len(expected), len(actual))
        total = sum(
            structural_similarity(expected[index], actual[index])
            for index in range(min(len(expected), len(actual)))
        )
        return total / length
    if kind == "object":
        keys = set(expected) | set(actual)
        if not keys:
            return 1.0
        total = sum(
            structural_similarity(expected[key], actual[key])
            for key in keys
            if key in expected and key in actual
        )
        return total / len(keys)
    if kind == "number":
        return numeric_similarity(float(expected), float(actual))
    if kind == "string":
        return string_similarity(expected, actual)
    return 1.0 if expected == actual else 0.0


class SoftScorer:
    """Compute per-failure and aggregate partial credit."""

    def failure_score(self, failure: TestFailure) -> float:
        if not failure.expected or not failure.actual:
            return 0.0
        expected = failure.expected.strip()
        actual = failure.actual.strip()
        if not expected or not actual:
            return 0.0
        if expected == actual:
            return 1.0

        expected_number = parse_number(expected)
        actual_number = parse_number(actual)
        if expected_number is not None and actual_number is not None:
            return numeric_similarity(expected_number, actual_number)

        expected_value = _load_structure(expected)
        actual_value = _load_structure(actual)
        if expected_value is not _MISSING and actual_value is not _MISSING:
            return _bounded(structural_similarity(expected_value, actual_value))

        return string_similarity(expected, actual)

    def annotate(self, outcome: TestOutcome) -> TestOutcome:
        """Return a copy of ``outcome`` with per-failure and aggregate soft scores."""

        if outcome.total == 0:
            raise NoTestsDetectedError(
                "No tests were detected; a soft score is undefined",
                details={"framework": outcome.framework},
            )
        failures: List[TestFailure] = []
        partial = 0.0
        for failure in outcome.failures:
            value = _bounded(self.failure_score(failure))
            partial += value
            failures.append(failure.model_copy(update={"soft_score": value}))
        aggregate = _bounded((outcome.passed + partial) / outcome.total)
        return outcome.model_copy(update={"failures": failures, "soft_score": aggregate})


def _bounded(value: float) -> float:
    return max(0.0, min(1.0, value))


__all__ = [
    "SoftScorer",
    "levenshtein_distance",
    "numeric_similarity",
    "parse_number",
    "string_similarity",
    "structural_similarity",
]
