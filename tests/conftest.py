from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from whetstone.state.schema import TestFailure, TestOutcome  # noqa: E402
from whetstone.tools.vcs import GitRepository  # noqa: E402


@dataclass(slots=True)
class FakeClock:
    """Deterministic clock whose ``sleep`` advances time instead of blocking."""

    now: float = 1_000.0
    sleeps: List[float] = field(default_factory=list)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_outcome(
    passed: int,
    total: int,
    *,
    failures: Sequence[TestFailure] | None = None,
    framework: str = "pytest",
) -> TestOutcome:
    failed = total - passed
    if failures is None:
        failures = [
            TestFailure(name=f"tests/test_calc.py::test_case_{index}", message="assert 1 == 2", expected="2", actual="1")
            for index in range(failed)
        ]
    return TestOutcome(
        framework=framework,
        passed=passed,
        failed=failed,
        total=total,
        duration_ms=12.0,
        failures=list(failures),
    )


class ScriptedRunner:
    """Test runner double that replays a fixed sequence of outcomes."""

    name = "scripted"

    def __init__(
        self,
        outcomes: Sequence[TestOutcome],
        *,
        on_run: Optional[Callable[[Path], None]] = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.calls: List[Path] = []
        self.on_run = on_run

    def detect(self, cwd: Path) -> bool:
        return True

    def run(self, cwd: Path, *, timeout: float = 300.0) -> TestOutcome:
        self.calls.append(Path(cwd))
        if self.on_run is not None:
            self.on_run(Path(cwd))
        if not self.outcomes:
            raise AssertionError("ScriptedRunner ran out of outcomes")
        return self.outcomes.pop(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepository:
    """Create a small git repository with a package and a test module."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "src").mkdir()
    (repo_root / "src" / "calc.py").write_text(
        textwrap.dedent(
            """
            def add(left, right):
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (repo_root / "tests").mkdir()
    (repo_root / "tests" / "test_calc.py").write_text(
        textwrap.dedent(
            """
            from calc import add


            def test_add():
                assert add(2, 3) == 5
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return GitRepository.initialise(repo_root)
