"""Scoring, diff analysis, quality signals, partial credit and winner selection."""

from .diff import DiffAnalyzer
from .quality import QualityAnalyzer
from .scoring import ScoreResult, ScoringEngine
from .soft import SoftScorer
from .voting import VoteResult, VoteStrategy, VotingEngine, best_per_attempt

__all__ = [
    "DiffAnalyzer",
    "QualityAnalyzer",
    "ScoreResult",
    "ScoringEngine",
    "SoftScorer",
    "VoteResult",
    "VoteStrategy",
    "VotingEngine",
    "best_per_attempt",
]
