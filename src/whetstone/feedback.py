"""Directive rendering and prior-solution memory.

After each validation the orchestrator writes a markdown directive describing
where the session stands: score, failing tests, history, a plateau warning
when the score stagnates, and a selection of earlier solutions.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .state.schema import AttemptRecord, QualityReport, Session, SessionSettings, TestOutcome
from .state.store import write_atomic

LOGGER = logging.getLogger(__name__)

MIN_COMPLETED_FOR_MERGE = 2
MAX_QUALITY_SIGNALS = 10


@dataclass(slots=True)
class MergeEligibility:
    can_merge: bool
    completed: int
    required: int = MIN_COMPLETED_FOR_MERGE
    perfect: bool = False


def merge_eligibility(session: Session, latest: Optional[AttemptRecord]) -> MergeEligibility:
    """At least two completed records, or a perfect latest record with tests."""

    completed = len(session.completed_records())
    perfect = latest is not None and latest.is_passing
    return MergeEligibility(
        can_merge=completed >= MIN_COMPLETED_FOR_MERGE or perfect,
        completed=completed,
        perfect=perfect,
    )


@dataclass(slots=True)
class PlateauInfo:
    detected: bool
    count: int
    primary_reason: Optional[str] = None
    primary_points: int = 0


def detect_plateau(records: Sequence[AttemptRecord]) -> PlateauInfo:
    """Count how many trailing scored records share the latest score."""

    scored = [record for record in records if record.is_scored]
    if len(scored) < 2:
        return PlateauInfo(detected=False, count=0)
    latest_score = scored[-1].score
    count = 1
    for record in reversed(scored[:-1]):
        if record.score != latest_score:
            break
        count += 1
    breakdown = scored[-1].score_breakdown
    deduction = breakdown.deductions[0] if breakdown and breakdown.deductions else None
    return PlateauInfo(
        detected=count >= 2,
        count=count,
        primary_reason=deduction.reason if deduction else None,
        primary_points=deduction.points if deduction else 0,
    )


def select_prior_solutions(
    records: Sequence[AttemptRecord],
    settings: SessionSettings,
    rng: random.Random,
) -> List[AttemptRecord]:
    """Choose earlier solutions to show as memory.

    Each record with a solution is kept with ``selection_probability``; the
    ``max_solutions`` best survive and are ordered worst to best when
    ``improving_order`` is set, best first otherwise.  ``shuffle_examples``
    replaces that order with a seeded shuffle.
    """

    if settings.max_solutions <= 0:
        return []
    pool = [
        record
        for record in records
        if record.solution is not None
        and (settings.selection_probability >= 1.0 or rng.random() < settings.selection_probability)
    ]
    pool.sort(key=lambda record: (-(record.score or 0), record.iteration))
    chosen = pool[: settings.max_solutions]
    if settings.shuffle_examples:
        rng.shuffle(chosen)
    elif settings.improving_order:
        chosen.reverse()
    return chosen


@dataclass(slots=True)
class DirectiveContext:
    """Everything the renderer needs about the current state of a session."""

    session: Session
    latest: Optional[AttemptRecord]
    next_actions: List[str] = field(default_factory=list)
    working_directory: Optional[Path] = None
    prior_solutions: List[AttemptRecord] = field(default_factory=list)
    eligibility: Optional[MergeEligibility] = None


class Renderer(Protocol):
    def write(self, context: DirectiveContext) -> Optional[Path]:
        ...


def _test_section(outcome: TestOutcome) -> List[str]:
    lines = [
        "## Test Results",
        "",
        f"**Framework**: {outcome.framework}",
        f"**Status**: {outcome.summary()}",
        f"**Duration**: {outcome.duration_ms:.0f}ms",
    ]
    if outcome.soft_score is not None:
        lines.append(f"**Partial credit**: {outcome.soft_score:.2f}")
    lines.append("")
    if not outcome.failures:
        return lines
    lines.extend(["### Failed Tests", ""])
    for failure in outcome.failures:
        lines.append(f"#### {failure.name}")
        if failure.file:
            location = f"{failure.file}:{failure.line}" if failure.line else failure.file
            lines.append(f"- **File**: {location}")
        if failure.message:
            lines.append(f"- **Message**: {failure.message}")
        if failure.expected is not None:
            lines.append(f"- **Expected**: {failure.expected}")
        if failure.actual is not None:
            lines.append(f"- **Actual**: {failure.actual}")
        if failure.soft_score is not None:
            lines.append(f"- **Similarity**: {failure.soft_score:.2f}")
        lines.append("")
    return lines


def _quality_section(report: QualityReport) -> List[str]:
    lines = ["## Code Quality", "", f"**Quality score**: {report.score}/100", ""]
    if not report.signals:
        lines.extend(["No quality issues in the lines added by this iteration.", ""])
        return lines
    for signal in report.signals[:MAX_QUALITY_SIGNALS]:
        where = f"{signal.file}:{signal.line}" if signal.line is not None else signal.file
        entry = f"- **{signal.kind.value}** ({signal.severity.value}) {where}: {signal.message}"
        if signal.suggestion:
            entry += f". {signal.suggestion}"
        lines.append(entry)
    hidden = len(report.signals) - MAX_QUALITY_SIGNALS
    if hidden > 0:
        lines.append(f"- ... and {hidden} more")
    lines.append("")
    return lines


def _plateau_section(plateau: PlateauInfo, score: Optional[int]) -> List[str]:
    lines = [
        "## Score Plateau Detected",
        "",
        f"Score has been **{score}%** for **{plateau.count} consecutive iterations**.",
        "",
        "Try a different approach:",
        "",
    ]
    if plateau.primary_reason:
        lines.append(f"- **Primary issue**: {plateau.primary_reason} (-{plateau.primary_points} pts)")
        if "complexity" in plateau.primary_reason:
            lines.append("- **Action**: Reduce the size of the change; smaller diffs lower the complexity penalty")
        else:
            lines.append("- **Action**: Address this deduction to improve the score")
    lines.append("")
    return lines


class DirectiveWriter:
    """Render a :class:`DirectiveContext` as markdown and write it to disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def render(self, context: DirectiveContext) -> str:
        session = context.session
        latest = context.latest
        eligibility = context.eligibility or merge_eligibility(session, latest)

        lines: List[str] = ["# Whetstone Directive", ""]
        lines.append(f"**Status**: {session.status.value.upper()}")
        lines.append(f"**Session ID**: {session.id}")
        if latest is not None:
            label = f"{latest.iteration}/{session.max_iterations}"
            if latest.attempt_id is not None:
                label += f" (attempt {latest.attempt_id})"
            lines.append(f"**Iteration**: {label}")
        if context.working_directory is not None:
            lines.append(f"**Working Directory**: `{context.working_directory}`")
        lines.append("")

        if latest is not None and latest.score is not None:
            lines.extend([f"**Score**: {latest.score}%", ""])

        if session.is_active:
            if eligibility.can_merge:
                lines.extend(["## Merge", "", "This session is eligible for merge.", ""])
            else:
                lines.extend(
                    [
                        "## Keep Iterating",
                        "",
                        "Merge requires a fully passing run or at least "
                        f"{eligibility.required} completed iterations "
                        f"(currently {eligibility.completed}).",
                        "",
                    ]
                )

        plateau = detect_plateau(session.records_for(latest.attempt_id) if latest else session.attempts)
        if plateau.detected and latest is not None:
            lines.extend(_plateau_section(plateau, latest.score))

        lines.extend(["## Task", "", session.task_description, ""])

        if latest is not None and latest.test_outcome is not None:
            lines.extend(_test_section(latest.test_outcome))
        if latest is not None and latest.quality is not None:
            lines.extend(_quality_section(latest.quality))
        if latest is not None and latest.error:
            lines.extend(["## Error", "", latest.error, ""])

        history = [record for record in session.attempts if record.is_scored]
        if history:
            lines.extend(["## Iteration History", ""])
            for record in history:
                who = f"attempt {record.attempt_id}, " if record.attempt_id is not None else ""
                summary = record.test_outcome.summary() if record.test_outcome else "no test data"
                lines.append(f"- **Iteration {record.iteration}** ({who}score {record.score}%): {summary}")
            lines.append("")

        if context.prior_solutions:
            lines.extend(["## Previous Solutions", ""])
            for record in context.prior_solutions:
                assert record.solution is not None
                lines.append(f"### Iteration {record.iteration} (score {record.solution.score}%)")
                if record.solution.feedback:
                    lines.extend(["", record.solution.feedback])
                lines.extend(["", "```diff", record.solution.code.rstrip("\n"), "```", ""])

        if context.next_actions:
            lines.extend(["## Required Actions", ""])
            for index, action in enumerate(context.next_actions, start=1):
                lines.append(f"{index}. {action}")
            lines.append("")

        return "\n".join(lines)

    def write(self, context: DirectiveContext) -> Path:
        write_atomic(self.path, self.render(context))
        LOGGER.debug("Directive written to %s", self.path)
        return self.path


__all__ = [
    "DirectiveContext",
    "DirectiveWriter",
    "MergeEligibility",
    "PlateauInfo",
    "Renderer",
    "detect_plateau",
    "merge_eligibility",
    "select_prior_solutions",
]
