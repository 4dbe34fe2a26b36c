"""Winner selection among completed attempt records.

Four strategies are available:

``highest_score``
    Maximum hard score; ties keep the first record seen.
``minimal_diff``
    Smallest ``insertions + deletions`` among passing records, falling back to
    every scored record when nothing passes.
``balanced``
    ``0.7 * score - min(diff / 500, 1) * 30``; maximum wins.
``consensus``
    Records with byte-identical solutions form a group whose size is its vote
    count.  Passing groups rank by votes, failing groups by their best soft
    score then votes.  The ordering lists one representative per group
    (passing first) before the remaining members.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..errors import ErrorCode, SelectionError
from ..state.schema import AttemptRecord

LOGGER = logging.getLogger(__name__)

BALANCED_SCORE_WEIGHT = 0.7
BALANCED_DIFF_CAP = 500
BALANCED_DIFF_PENALTY = 30


class VoteStrategy(str, Enum):
    HIGHEST_SCORE = "highest_score"
    MINIMAL_DIFF = "minimal_diff"
    BALANCED = "balanced"
    CONSENSUS = "consensus"

    @classmethod
    def parse(cls, value: "str | VoteStrategy") -> "VoteStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError as error:
            raise SelectionError(
                f"Unknown voting strategy: {value}",
                code=ErrorCode.UNKNOWN_STRATEGY,
                details={"strategy": str(value), "available": [item.value for item in cls]},
            ) from error


@dataclass(slots=True)
class RankingEntry:
    """One record in the ranking view, flagged when it represents its group."""

    record: AttemptRecord
    group: int
    votes: int
    passing: bool
    is_representative: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "iteration": self.record.iteration,
            "attempt_id": self.record.attempt_id,
            "score": self.record.score,
            "group": self.group,
            "votes": self.votes,
            "passing": self.passing,
            "is_representative": self.is_representative,
        }


@dataclass(slots=True)
class VoteResult:
    strategy: VoteStrategy
    winner: AttemptRecord
    ordering: List[AttemptRecord]
    ranking: List[RankingEntry] = field(default_factory=list)
    fallback_used: bool = False
    candidates: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "winner": {
                "iteration": self.winner.iteration,
                "attempt_id": self.winner.attempt_id,
                "score": self.winner.score,
                "branch": self.winner.branch,
            },
            "ordering": [
                {"iteration": record.iteration, "attempt_id": record.attempt_id, "score": record.score}
                for record in self.ordering
            ],
            "ranking": [entry.to_dict() for entry in self.ranking],
            "fallback_used": self.fallback_used,
            "candidates": self.candidates,
        }


def _score(record: AttemptRecord) -> int:
    return record.score if record.score is not None else 0


def balanced_score(record: AttemptRecord) -> float:
    diff_penalty = min(record.diff_size / BALANCED_DIFF_CAP, 1.0) * BALANCED_DIFF_PENALTY
    return BALANCED_SCORE_WEIGHT * _score(record) - diff_penalty


def _first_max(records: Sequence[AttemptRecord], key: Callable[[AttemptRecord], float]) -> AttemptRecord:
    best = records[0]
    best_value = key(best)
    for record in records[1:]:
        value = key(record)
        if value > best_value:
            best, best_value = record, value
    return best


def _first_min(records: Sequence[AttemptRecord], key: Callable[[AttemptRecord], float]) -> AttemptRecord:
    return _first_max(records, lambda record: -key(record))


def _representative(members: Sequence[AttemptRecord]) -> AttemptRecord:
    """Best hard score, ties to the earliest iteration."""
    return min(members, key=lambda record: (-_score(record), record.iteration, record.attempt_id or 0))


@dataclass(slots=True)
class _Group:
    index: int
    members: List[AttemptRecord]

    @property
    def votes(self) -> int:
        return len(self.members)

    @property
    def passing(self) -> bool:
        return any(member.is_passing for member in self.members)

    @property
    def best_soft(self) -> float:
        return max(member.soft_score for member in self.members)

    @property
    def best_score(self) -> int:
        return max(_score(member) for member in self.members)


def group_by_solution(records: Iterable[AttemptRecord]) -> List[_Group]:
    """Group records by identical solution text; records without one stand alone."""

    groups: List[_Group] = []
    by_code: Dict[str, _Group] = {}
    for record in records:
        code = record.solution.code if record.solution is not None else None
        if code is not None and code in by_code:
            by_code[code].members.append(record)
            continue
        group = _Group(index=len(groups), members=[record])
        groups.append(group)
        if code is not None:
            by_code[code] = group
    return groups


class VotingEngine:
    """Select a winner among scored records with a named strategy."""

    def vote(self, records: Sequence[AttemptRecord], strategy: "str | VoteStrategy" = VoteStrategy.HIGHEST_SCORE) -> VoteResult:
        chosen = VoteStrategy.parse(strategy)
        if not records:
            raise SelectionError("No attempts to vote on", code=ErrorCode.NO_ATTEMPTS)
        scored = [record for record in records if record.is_scored]
        if not scored:
            raise SelectionError(
                "No completed attempts with scores",
                code=ErrorCode.NO_SCORED_ATTEMPTS,
                details={"records": len(records)},
            )

        if chosen == VoteStrategy.CONSENSUS:
            return self._consensus(scored)

        fallback_used = False
        if chosen == VoteStrategy.HIGHEST_SCORE:
            winner = _first_max(scored, _score)
            ordering = sorted(scored, key=lambda record: -_score(record))
        elif chosen == VoteStrategy.MINIMAL_DIFF:
            pool = [record for record in scored if record.is_passing]
            if not pool:
                LOGGER.info("minimal_diff: no passing attempts, falling back to all %d scored attempts", len(scored))
                pool = list(scored)
                fallback_used = True
            winner = _first_min(pool, lambda record: record.diff_size)
            ordering = sorted(pool, key=lambda record: record.diff_size)
        else:
            winner = _first_max(scored, balanced_score)
            ordering = sorted(scored, key=lambda record: -balanced_score(record))

        ordering.remove(winner)
        ordering.insert(0, winner)
        return VoteResult(
            strategy=chosen,
            winner=winner,
            ordering=ordering,
            fallback_used=fallback_used,
            candidates=len(scored),
        )

    def _consensus(self, records: Sequence[AttemptRecord]) -> VoteResult:
        groups = group_by_solution(records)
        passing = sorted(
            (group for group in groups if group.passing),
            key=lambda group: (-group.votes, -group.best_score, group.index),
        )
        failing = sorted(
            (group for group in groups if not group.passing),
            key=lambda group: (-group.best_soft, -group.votes, group.index),
        )

        representatives: Dict[int, AttemptRecord] = {
            group.index: _representative(group.members) for group in groups
        }
        ordering: List[AttemptRecord] = []
        ordering.extend(representatives[group.index] for group in passing)
        ordering.extend(representatives[group.index] for group in failing)
        for bucket in (passing, failing):
            for group in bucket:
                rest = [member for member in group.members if member is not representatives[group.index]]
                rest.sort(key=lambda record: (-_score(record), record.iteration, record.attempt_id or 0))
                ordering.extend(rest)

        ranking: List[RankingEntry] = []
        group_of = {id(member): group for group in groups for member in group.members}
        for record in ordering:
            group = group_of[id(record)]
            ranking.append(
                RankingEntry(
                    record=record,
                    group=group.index,
                    votes=group.votes,
                    passing=group.passing,
                    is_representative=record is representatives[group.index],
                )
            )

        winner = ordering[0]
        LOGGER.debug("consensus: %d group(s), winner iteration %d", len(groups), winner.iteration)
        return VoteResult(
            strategy=VoteStrategy.CONSENSUS,
            winner=winner,
            ordering=ordering,
            ranking=ranking,
            candidates=len(records),
        )


def best_per_attempt(records: Iterable[AttemptRecord]) -> List[AttemptRecord]:
    """Return the highest-scoring scored record of every attempt id."""

    best: Dict[Optional[int], AttemptRecord] = {}
    for record in records:
        if not record.is_scored:
            continue
        current = best.get(record.attempt_id)
        if current is None or _score(record) > _score(current):
            best[record.attempt_id] = record
    return [best[key] for key in sorted(best, key=lambda item: item or 0)]


__all__ = [
    "RankingEntry",
    "VoteResult",
    "VoteStrategy",
    "VotingEngine",
    "balanced_score",
    "best_per_attempt",
    "group_by_solution",
]
