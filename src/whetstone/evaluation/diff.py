"""Change statistics for a workspace, derived from ``git diff --numstat``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..state.schema import Complexity, DiffStats
from ..tools.vcs import GitError, GitRepository
from .scoring import round_half_up

LOGGER = logging.getLogger(__name__)

WORKING_TREE = "working-tree"

# Parent commit, uncommitted against HEAD, staged, working tree.
DEFAULT_STRATEGIES: tuple[str, ...] = ("HEAD~1", "HEAD", "--staged", WORKING_TREE)

IGNORED_FILE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^bun\.lockb?$"),
    re.compile(r"^package-lock\.json$"),
    re.compile(r"^yarn\.lock$"),
    re.compile(r"^pnpm-lock\.yaml$"),
    re.compile(r"^uv\.lock$"),
    re.compile(r"^poetry\.lock$"),
    re.compile(r"^Pipfile\.lock$"),
    re.compile(r"^\.env"),
    re.compile(r"^\.whetstone/"),
    re.compile(r"(^|/)__pycache__/"),
)

LOW_COMPLEXITY_MAX = 50
MEDIUM_COMPLEXITY_MAX = 150


@dataclass(slots=True)
class FileChange:
    path: str
    insertions: int
    deletions: int


def is_ignored(path: str) -> bool:
    return any(pattern.search(path) for pattern in IGNORED_FILE_PATTERNS)


def parse_numstat(output: str) -> List[FileChange]:
    """Parse ``git diff --numstat`` output, dropping ignorable paths.

    Binary files report ``-`` for both counts and contribute zero lines.
    """

    changes: List[FileChange] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, removed, path = parts[0], parts[1], parts[2]
        if " => " in path:
            path = _renamed_target(path)
        if is_ignored(path):
            continue
        changes.append(
            FileChange(
                path=path,
                insertions=int(added) if added.isdigit() else 0,
                deletions=int(removed) if removed.isdigit() else 0,
            )
        )
    return changes


def _renamed_target(path: str) -> str:
    # ``src/{old => new}/mod.py`` or ``old.py => new.py``
    if "{" in path and "}" in path:
        prefix, _, rest = path.partition("{")
        inner, _, suffix = rest.partition("}")
        target = inner.split(" => ", 1)[1]
        return (prefix + target + suffix).replace("//", "/")
    return path.split(" => ", 1)[1]


def classify_complexity(total_changes: int, file_count: int) -> Complexity:
    spread_penalty = max(0, file_count - 5) * 10
    weighted = total_changes + spread_penalty
    if weighted <= LOW_COMPLEXITY_MAX:
        return Complexity.LOW
    if weighted <= MEDIUM_COMPLEXITY_MAX:
        return Complexity.MEDIUM
    return Complexity.HIGH


def complexity_score(total_changes: int, file_count: int) -> int:
    """Return the 0-100 complexity score used for score deductions."""

    change_score = min(total_changes, 500) * 0.15
    spread_penalty = min(file_count * 5, 50)
    return min(100, int(round_half_up(change_score + spread_penalty)))


def stats_from_changes(changes: Sequence[FileChange], strategy: Optional[str] = None) -> DiffStats:
    insertions = sum(change.insertions for change in changes)
    deletions = sum(change.deletions for change in changes)
    files = [change.path for change in changes]
    total = insertions + deletions
    return DiffStats(
        files_changed=files,
        insertions=insertions,
        deletions=deletions,
        complexity=classify_complexity(total, len(files)),
        complexity_score=complexity_score(total, len(files)),
        strategy=strategy,
    )


class DiffAnalyzer:
    """Run the diff strategy chain inside a workspace."""

    def __init__(self, strategies: Sequence[str] = DEFAULT_STRATEGIES) -> None:
        self.strategies = tuple(strategies)

    def _strategies(self, base: Optional[str]) -> tuple[str, ...]:
        return (base,) if base else self.strategies

    def _diff(self, repo: GitRepository, strategy: str, *extra: str) -> str:
        args = [*extra, strategy] if strategy and strategy != WORKING_TREE else list(extra)
        result = repo.diff(*args, check=False)
        if result.returncode != 0:
            raise GitError(result.stderr.strip() or f"git diff {strategy} failed")
        return result.stdout

    def analyze(self, cwd: Path | str, base: Optional[str] = None) -> DiffStats:
        """Return statistics from the first strategy with non-empty output.

        Strategies that error are skipped; if every strategy errors the last
        :class:`GitError` is raised.  Empty output everywhere yields empty stats.
        """

        repo = GitRepository(cwd)
        last_error: Optional[GitError] = None
        succeeded = False
        for strategy in self._strategies(base):
            try:
                output = self._diff(repo, strategy, "--numstat")
            except GitError as error:
                LOGGER.debug("Diff strategy %r failed in %s: %s", strategy, cwd, error)
                last_error = error
                continue
            succeeded = True
            changes = parse_numstat(output)
            if changes:
                LOGGER.debug("Diff strategy %r matched %d file(s)", strategy, len(changes))
                return stats_from_changes(changes, strategy)
        if not succeeded and last_error is not None:
            raise last_error
        return DiffStats()

    def raw_diff(self, cwd: Path | str, base: Optional[str] = None) -> str:
        """Return the unified diff of the first strategy with non-empty output."""

        repo = GitRepository(cwd)
        for strategy in self._strategies(base):
            try:
                output = self._diff(repo, strategy)
            except GitError as error:
                LOGGER.debug("Raw diff strategy %r failed in %s: %s", strategy, cwd, error)
                continue
            if output.strip():
                return output
        return ""


__all__ = [
    "DEFAULT_STRATEGIES",
    "DiffAnalyzer",
    "FileChange",
    "IGNORED_FILE_PATTERNS",
    "WORKING_TREE",
    "classify_complexity",
    "complexity_score",
    "is_ignored",
    "parse_numstat",
    "stats_from_changes",
]
