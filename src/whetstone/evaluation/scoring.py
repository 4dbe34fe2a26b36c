"""Hard score: test pass rate minus a bounded complexity penalty."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from ..errors import NoTestsDetectedError
from ..state.schema import Deduction, DiffStats, ScoreBreakdown, TestOutcome

DEFAULT_TEST_PASS_WEIGHT = 1.0
DEFAULT_COMPLEXITY_WEIGHT = 0.1


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round like ``Math.round`` rather than Python's banker's rounding."""

    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


@dataclass(slots=True)
class ScoreResult:
    score: int
    pass_rate: float
    breakdown: ScoreBreakdown


class ScoringEngine:
    """Turn a test outcome and diff statistics into a 0-100 score."""

    def __init__(
        self,
        *,
        test_pass_weight: float = DEFAULT_TEST_PASS_WEIGHT,
        complexity_weight: float = DEFAULT_COMPLEXITY_WEIGHT,
    ) -> None:
        self.test_pass_weight = test_pass_weight
        self.complexity_weight = complexity_weight

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ScoringEngine":
        section = config.get("scoring") or {}
        return cls(
            test_pass_weight=float(section.get("test_pass_weight", DEFAULT_TEST_PASS_WEIGHT)),
            complexity_weight=float(section.get("complexity_weight", DEFAULT_COMPLEXITY_WEIGHT)),
        )

    def pass_rate(self, outcome: TestOutcome) -> float:
        """Percentage of passing tests, 0 when nothing ran."""

        if outcome.total == 0:
            return 0.0
        return outcome.passed / outcome.total * 100

    def complexity_penalty(self, diff: Optional[DiffStats]) -> int:
        if diff is None:
            return 0
        return int(round_half_up(diff.complexity_score * self.complexity_weight))

    def score(self, outcome: TestOutcome, diff: Optional[DiffStats] = None) -> ScoreResult:
        """Score ``outcome``; a run without tests is an error, never a zero."""

        if outcome.total == 0:
            raise NoTestsDetectedError(
                "No tests were detected; refusing to score an empty run",
                details={"framework": outcome.framework},
            )

        pass_rate = self.pass_rate(outcome)
        test_pass_score = pass_rate * self.test_pass_weight
        deductions: List[Deduction] = []
        penalty = self.complexity_penalty(diff)
        if penalty and diff is not None:
            deductions.append(
                Deduction(
                    points=penalty,
                    reason=(
                        f"{diff.complexity.value} complexity: {diff.total_changes} changed line(s) "
                        f"across {len(diff.files_changed)} file(s)"
                    ),
                )
            )

        raw = test_pass_score - sum(item.points for item in deductions)
        score = int(clamp(round_half_up(raw), 0, 100))
        return ScoreResult(
            score=score,
            pass_rate=round_half_up(pass_rate, 2),
            breakdown=ScoreBreakdown(
                pass_rate=round_half_up(pass_rate, 2),
                test_pass_score=round_half_up(test_pass_score, 2),
                deductions=deductions,
            ),
        )


__all__ = [
    "DEFAULT_COMPLEXITY_WEIGHT",
    "DEFAULT_TEST_PASS_WEIGHT",
    "ScoreResult",
    "ScoringEngine",
    "clamp",
    "round_half_up",
]
