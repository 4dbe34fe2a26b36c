from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import pytest

from conftest import ScriptedRunner, make_outcome
from whetstone.config import default_config, merge_config, resolve_path
from whetstone.errors import ErrorCode, WorkspaceError
from whetstone.orchestrator import Orchestrator
from whetstone.results import Failure, Success
from whetstone.state.schema import SessionStatus, TestOutcome
from whetstone.tools.vcs import GitRepository
from whetstone.tools.workspaces import WorkspaceManager


def _edit(workdir: Path) -> None:
    target = workdir / "src" / "calc.py"
    with target.open("a", encoding="utf-8") as handle:
        handle.write(f"# touched in {workdir.name}\n")


def _config(**overrides: Any) -> Dict[str, Any]:
    base = merge_config(default_config(), {"scoring": {"complexity_weight": 0.0}})
    return merge_config(base, overrides)


def _orchestrator(
    git_repo: GitRepository,
    outcomes: Sequence[TestOutcome],
    *,
    workspaces: Optional[WorkspaceManager] = None,
    **config: Any,
) -> Orchestrator:
    return Orchestrator(
        repo=git_repo,
        config=_config(**config),
        runner=ScriptedRunner(outcomes, on_run=_edit),
        workspaces=workspaces,
    )


def _ok(result) -> Dict[str, Any]:
    assert isinstance(result, Success), result.to_dict()
    return result.data


def _failed(result, code: ErrorCode) -> Failure:
    assert isinstance(result, Failure), result.to_dict()
    assert result.code == code, result.to_dict()
    return result


def test_session_reaches_completed_and_merges(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(3, 5), make_outcome(5, 5)])

    started = _ok(orchestrator.start("Make add() robust", max_iterations=3))
    session_id = started["session_id"]
    assert started["status"] == "iterating"
    assert started["base_branch"] == "main"
    first_name = f"whetstone/{session_id}/iteration-1"
    assert Path(started["workspaces"][first_name]).is_dir()
    assert (git_repo.root / ".whetstone" / ".gitignore").read_text(encoding="utf-8") == "*\n"

    first = _ok(orchestrator.validate(session_id))
    assert (first["iteration"], first["score"], first["status"]) == (1, 60, "iterating")
    assert first["remaining_iterations"] == 2
    assert first["can_merge"] is False
    assert first["workspace"].endswith(f"{session_id}/iteration-2")

    second = _ok(orchestrator.validate(session_id))
    assert (second["iteration"], second["score"], second["status"]) == (2, 100, "completed")
    assert second["can_merge"] is True

    directive = (git_repo.root / ".whetstone" / "directive.md").read_text(encoding="utf-8")
    assert "**Status**: COMPLETED" in directive
    assert "## Previous Solutions" in directive

    status = _ok(orchestrator.status(session_id))
    assert [item["score"] for item in status["iterations"]] == [60, 100]
    assert status["best_iteration"] == 2

    merged = _ok(orchestrator.merge(session_id))
    assert merged["merged_iteration"] == 2
    assert merged["commit"] == git_repo.head()
    assert merged["reclaim_failures"] == {}
    calc = (git_repo.root / "src" / "calc.py").read_text(encoding="utf-8")
    assert "# touched in iteration-1" in calc
    assert "# touched in iteration-2" in calc
    assert not git_repo.branch_exists(f"whetstone/{session_id}/iteration-2")

    session = orchestrator.store.load(session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.merged_iteration == 2
    assert orchestrator.workspaces.list_owned(session_id) == []

    _failed(orchestrator.merge(session_id), ErrorCode.SESSION_TERMINAL)


def test_iterations_build_on_previous_branch(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(1, 2), make_outcome(1, 2)])
    session_id = _ok(orchestrator.start("Chain", max_iterations=3))["session_id"]
    _ok(orchestrator.validate(session_id))
    payload = _ok(orchestrator.validate(session_id))

    session = orchestrator.store.load(session_id)
    first, second = session.attempts
    assert second.base_branch == first.branch
    assert git_repo.is_ancestor(first.commit_sha, second.commit_sha)
    # Snapshots are cumulative against the base line.
    assert "iteration-1" in second.solution.code
    assert "iteration-2" in second.solution.code
    # Scoring only sees the lines the iteration itself committed.
    assert second.diff.files_changed == ["src/calc.py"]
    assert (second.diff.strategy, second.diff.insertions) == ("HEAD~1", 1)
    assert payload["diff_strategy"] == "HEAD~1"
    assert payload["quality_score"] is None


def test_passing_iteration_carries_quality_report(git_repo: GitRepository) -> None:
    def leave_debug_line(workdir: Path) -> None:
        with (workdir / "src" / "calc.py").open("a", encoding="utf-8") as handle:
            handle.write("print(add(1, 2))  # TODO drop\n")

    orchestrator = Orchestrator(
        repo=git_repo,
        config=_config(),
        runner=ScriptedRunner([make_outcome(1, 2), make_outcome(2, 2)], on_run=leave_debug_line),
    )
    session_id = _ok(orchestrator.start("Quality", max_iterations=3))["session_id"]

    failing = _ok(orchestrator.validate(session_id))
    assert failing["quality_score"] is None
    passing = _ok(orchestrator.validate(session_id))
    assert passing["quality_score"] == 97

    first, second = orchestrator.store.load(session_id).attempts
    assert first.quality is None
    assert [(signal.kind.value, signal.file, signal.line) for signal in second.quality.signals] == [
        ("todo_comment", "src/calc.py", 4),
        ("debug_print", "src/calc.py", 4),
    ]
    directive = (git_repo.root / ".whetstone" / "directive.md").read_text(encoding="utf-8")
    assert "## Code Quality" in directive
    assert "**Quality score**: 97/100" in directive


def test_cap_exhaustion_fails_session(git_repo: GitRepository) -> None:
    runner_outcomes = [make_outcome(1, 5), make_outcome(2, 5)]
    orchestrator = _orchestrator(git_repo, runner_outcomes)
    session_id = _ok(orchestrator.start("Hard task", max_iterations=2))["session_id"]

    _ok(orchestrator.validate(session_id))
    last = _ok(orchestrator.validate(session_id))
    assert last["remaining_iterations"] == 0
    assert last["status"] == "iterating"

    failure = _failed(orchestrator.validate(session_id), ErrorCode.MAX_ITERATIONS_REACHED)
    assert failure.next_steps
    assert orchestrator.store.load(session_id).status == SessionStatus.FAILED
    assert len(orchestrator.runner.calls) == 2


def test_validate_without_tests_records_nothing(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(0, 0)])
    session_id = _ok(orchestrator.start("No tests"))["session_id"]

    _failed(orchestrator.validate(session_id), ErrorCode.NO_TESTS_DETECTED)
    session = orchestrator.store.load(session_id)
    assert session.attempts == []
    assert session.current_iteration == 0


def test_validate_detects_session_from_working_directory(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(2, 2)])
    started = _ok(orchestrator.start("Detect me"))
    workspace = Path(next(iter(started["workspaces"].values())))

    result = _ok(orchestrator.validate(cwd=workspace / "src"))
    assert result["session_id"] == started["session_id"]

    _failed(orchestrator.validate(cwd=git_repo.root), ErrorCode.SESSION_NOT_FOUND)
    _failed(orchestrator.validate("missing-session"), ErrorCode.SESSION_NOT_FOUND)


def test_single_mode_rejects_attempt_id(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    session_id = _ok(orchestrator.start("Single"))["session_id"]
    _failed(orchestrator.validate(session_id, attempt_id=1), ErrorCode.ATTEMPT_NOT_FOUND)


def test_duplicate_start_is_rejected(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    first = _ok(orchestrator.start("Same task"))

    failure = _failed(orchestrator.start("Same task"), ErrorCode.SESSION_EXISTS)
    assert failure.error.details["session_id"] == first["session_id"]
    assert any("--force" in step for step in failure.next_steps)

    assert _ok(orchestrator.start("Same task", force=True))["session_id"] != first["session_id"]


@pytest.mark.parametrize(
    "kwargs",
    [{"max_iterations": 0}, {"attempts": 0}, {"merge_threshold": 101}],
)
def test_start_validates_arguments(git_repo: GitRepository, kwargs) -> None:
    orchestrator = _orchestrator(git_repo, [])
    _failed(orchestrator.start("Bad args", **kwargs), ErrorCode.INVARIANT_VIOLATION)
    assert orchestrator.store.list_ids() == []


def test_start_from_unknown_base_marks_session_failed(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    _failed(orchestrator.start("Bad base", base_branch="no-such-branch"), ErrorCode.WORKSPACE_CREATE_FAILED)
    sessions = orchestrator.store.list_sessions()
    assert [session.status for session in sessions] == [SessionStatus.FAILED]


def test_merge_requires_two_iterations_or_a_perfect_run(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(3, 5)])
    session_id = _ok(orchestrator.start("Eligibility", max_iterations=3))["session_id"]
    _ok(orchestrator.validate(session_id))

    failure = _failed(orchestrator.merge(session_id), ErrorCode.INSUFFICIENT_ATTEMPTS)
    assert failure.error.details == {"completed": 1, "required": 2}
    assert orchestrator.store.load(session_id).merged_commit is None


def test_merge_threshold_is_enforced(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(3, 5), make_outcome(4, 5)])
    session_id = _ok(orchestrator.start("Threshold", max_iterations=3, merge_threshold=90))["session_id"]
    _ok(orchestrator.validate(session_id))
    _ok(orchestrator.validate(session_id))

    failure = _failed(orchestrator.merge(session_id), ErrorCode.SCORE_BELOW_THRESHOLD)
    assert failure.error.details["score"] == 80
    assert failure.error.details["threshold"] == 90


def test_merge_requires_base_branch_checked_out(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(5, 5)])
    session_id = _ok(orchestrator.start("Checkout"))["session_id"]
    _ok(orchestrator.validate(session_id))

    git_repo.git("checkout", "-b", "elsewhere")
    _failed(orchestrator.merge(session_id), ErrorCode.MERGE_FAILED)

    git_repo.git("checkout", "main")
    assert _ok(orchestrator.merge(session_id))["merged_iteration"] == 1


def test_vote_selects_merge_target(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(4, 5), make_outcome(3, 5)])
    session_id = _ok(orchestrator.start("Vote", max_iterations=3))["session_id"]
    _ok(orchestrator.validate(session_id))
    _ok(orchestrator.validate(session_id))

    voted = _ok(orchestrator.vote(session_id, "highest_score"))
    assert voted["selected_iteration"] == 1
    assert voted["status"] == "evaluating"
    _failed(orchestrator.vote(session_id, "loudest"), ErrorCode.UNKNOWN_STRATEGY)

    merged = _ok(orchestrator.merge(session_id))
    assert merged["merged_iteration"] == 1
    calc = (git_repo.root / "src" / "calc.py").read_text(encoding="utf-8")
    assert "# touched in iteration-1" in calc
    assert "# touched in iteration-2" not in calc
    # The workspace prepared for iteration 3 is reclaimed as well.
    assert orchestrator.workspaces.list_owned(session_id) == []


def test_vote_without_iterations(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    session_id = _ok(orchestrator.start("Empty vote"))["session_id"]
    _failed(orchestrator.vote(session_id), ErrorCode.NO_ATTEMPTS)


def test_merge_explicit_iteration_not_found(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(5, 5)])
    session_id = _ok(orchestrator.start("Explicit"))["session_id"]
    _ok(orchestrator.validate(session_id))
    _failed(orchestrator.merge(session_id, iteration=4), ErrorCode.ITERATION_NOT_FOUND)


def test_multi_attempt_flow(git_repo: GitRepository) -> None:
    outcomes = [make_outcome(5, 5), make_outcome(2, 5), make_outcome(3, 5)]
    orchestrator = _orchestrator(git_repo, outcomes)

    started = _ok(orchestrator.start("Explore", max_iterations=2, attempts=2))
    session_id = started["session_id"]
    assert started["mode"] == "multi-attempt"
    assert sorted(started["workspaces"]) == [
        f"whetstone/{session_id}/attempt-1/iteration-1",
        f"whetstone/{session_id}/attempt-2/iteration-1",
    ]

    _failed(orchestrator.validate(session_id), ErrorCode.ATTEMPT_REQUIRED)
    _failed(orchestrator.validate(session_id, attempt_id=3), ErrorCode.ATTEMPT_NOT_FOUND)

    attempt_one = Path(started["workspaces"][f"whetstone/{session_id}/attempt-1/iteration-1"])
    passed = _ok(orchestrator.validate(cwd=attempt_one))
    assert (passed["attempt_id"], passed["score"], passed["status"]) == (1, 100, "iterating")

    _failed(orchestrator.validate(session_id, attempt_id=1), ErrorCode.SESSION_TERMINAL)

    retry = _ok(orchestrator.validate(session_id, attempt_id=2))
    assert retry["workspace"].endswith("attempt-2/iteration-2")
    final = _ok(orchestrator.validate(session_id, attempt_id=2))
    assert (final["iteration"], final["score"], final["status"]) == (2, 60, "completed")

    session = orchestrator.store.load(session_id)
    assert session.attempt_states[1].finished and session.attempt_states[2].finished
    assert (session.best_attempt, session.best_iteration) == (1, 1)

    voted = _ok(orchestrator.vote(session_id, "consensus"))
    assert voted["winner"]["attempt_id"] == 1
    assert voted["candidates"] == 2

    _failed(orchestrator.merge(session_id, iteration=1), ErrorCode.ATTEMPT_REQUIRED)
    merged = _ok(orchestrator.merge(session_id))
    assert (merged["attempt_id"], merged["merged_iteration"]) == (1, 1)
    assert orchestrator.workspaces.list_owned(session_id) == []


def test_attempt_passing_on_its_last_iteration_is_terminal(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [make_outcome(1, 2), make_outcome(2, 2)])
    session_id = _ok(orchestrator.start("Late pass", max_iterations=2, attempts=2))["session_id"]

    _ok(orchestrator.validate(session_id, attempt_id=1))
    last = _ok(orchestrator.validate(session_id, attempt_id=1))
    assert (last["iteration"], last["score"], last["status"]) == (2, 100, "iterating")

    failure = _failed(orchestrator.validate(session_id, attempt_id=1), ErrorCode.SESSION_TERMINAL)
    assert failure.error.details["attempt_id"] == 1
    assert orchestrator.store.load(session_id).status == SessionStatus.ITERATING
    assert len(orchestrator.runner.calls) == 2


class _StickyWorkspaces(WorkspaceManager):
    """Workspace manager whose reclaim always fails for one workspace."""

    def __init__(self, *args: Any, stuck: str = "", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.stuck = stuck

    def reclaim(self, name: str, *, delete_branch: bool = True) -> None:
        if name.endswith(self.stuck):
            raise WorkspaceError(f"cannot remove {name}")
        super().reclaim(name, delete_branch=delete_branch)


def test_cancel_reaches_cancelled_even_when_reclaim_fails(git_repo: GitRepository) -> None:
    config = _config()
    workspaces = _StickyWorkspaces(
        git_repo,
        resolve_path(config, "worktrees_dir", git_repo.root),
        stuck="attempt-2/iteration-1",
    )
    orchestrator = _orchestrator(git_repo, [], workspaces=workspaces)
    session_id = _ok(orchestrator.start("Cancel me", attempts=2))["session_id"]

    cancelled = _ok(orchestrator.cancel(session_id))

    assert cancelled["status"] == "cancelled"
    assert list(cancelled["reclaim_failures"]) == [f"whetstone/{session_id}/attempt-2/iteration-1"]
    assert orchestrator.store.load(session_id).status == SessionStatus.CANCELLED
    assert not git_repo.branch_exists(f"whetstone/{session_id}/attempt-1/iteration-1")

    _failed(orchestrator.cancel(session_id), ErrorCode.SESSION_TERMINAL)
    _failed(orchestrator.validate(session_id, attempt_id=1), ErrorCode.SESSION_TERMINAL)


def test_cancel_reclaims_branches_known_only_from_records(git_repo: GitRepository) -> None:
    config = _config()
    workspaces = _StickyWorkspaces(
        git_repo,
        resolve_path(config, "worktrees_dir", git_repo.root),
        stuck="iteration-2",
    )
    orchestrator = _orchestrator(git_repo, [make_outcome(1, 3), make_outcome(2, 3)], workspaces=workspaces)
    session_id = _ok(orchestrator.start("Cancel late", max_iterations=3))["session_id"]
    _ok(orchestrator.validate(session_id))
    _ok(orchestrator.validate(session_id))
    first, second = orchestrator.store.load(session_id).attempts

    # The directory is gone; only the record still names the branch.
    shutil.rmtree(first.workspace_path)
    assert first.branch not in [workspaces.name_of(path) for path in workspaces.list_owned(session_id)]

    cancelled = _ok(orchestrator.cancel(session_id))

    assert list(cancelled["reclaim_failures"]) == [second.branch]
    assert not git_repo.branch_exists(first.branch)
    assert not git_repo.branch_exists(f"whetstone/{session_id}/iteration-3")
    assert git_repo.branch_exists(second.branch)


def test_clean_deletes_terminal_sessions_and_orphans(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    active_id = _ok(orchestrator.start("Still running"))["session_id"]
    done_id = _ok(orchestrator.start("Done"))["session_id"]
    _ok(orchestrator.cancel(done_id))

    _failed(orchestrator.clean(active_id), ErrorCode.SESSION_ACTIVE)

    ghost = orchestrator.workspaces.name_for("ghost-session", 1)
    orchestrator.workspaces.ensure(ghost, "main")

    cleaned = _ok(orchestrator.clean(all_terminal=True))
    assert cleaned["deleted"] == [done_id]
    assert cleaned["orphans_reclaimed"] == [ghost]
    assert orchestrator.store.list_ids() == [active_id]
    assert orchestrator.workspaces.list_sessions() == [active_id]
    assert not git_repo.branch_exists(ghost)


def test_status_lists_sessions(git_repo: GitRepository) -> None:
    orchestrator = _orchestrator(git_repo, [])
    first = _ok(orchestrator.start("One"))["session_id"]
    second = _ok(orchestrator.start("Two"))["session_id"]

    listing = _ok(orchestrator.status())
    assert [item["session_id"] for item in listing["sessions"]] == [first, second]
    assert all(item["status"] == "iterating" for item in listing["sessions"])
