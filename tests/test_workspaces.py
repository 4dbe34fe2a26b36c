from __future__ import annotations

from pathlib import Path

import pytest

from whetstone.errors import ErrorCode, WorkspaceError
from whetstone.tools.vcs import GitRepository
from whetstone.tools.workspaces import WorkspaceIdentity, WorkspaceManager, parse_workspace_name, workspace_name


def _manager(git_repo: GitRepository, tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(git_repo, tmp_path / "worktrees")


def test_workspace_names_follow_grammar() -> None:
    assert workspace_name("abc", 2) == "whetstone/abc/iteration-2"
    assert workspace_name("abc", 1, 3) == "whetstone/abc/attempt-3/iteration-1"
    with pytest.raises(ValueError):
        workspace_name("abc", 0)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("whetstone/abc/iteration-2", WorkspaceIdentity("abc", 2)),
        ("whetstone/abc/attempt-3/iteration-1", WorkspaceIdentity("abc", 1, 3)),
        ("/repo/.whetstone/worktrees/whetstone/abc/iteration-4/src/pkg", WorkspaceIdentity("abc", 4)),
        ("/tmp/whetstone/outer/x/.wt/whetstone/inner/attempt-1/iteration-2", WorkspaceIdentity("inner", 2, 1)),
        ("whetstone/abc", None),
        ("whetstone/abc/attempt-1", None),
        ("whetstone/abc/iteration-x", None),
        ("feature/iteration-1", None),
        (None, None),
    ],
)
def test_parse_workspace_name(value, expected) -> None:
    assert parse_workspace_name(value) == expected


def test_parse_round_trips_generated_names() -> None:
    for attempt_id in (None, 1, 12):
        for iteration in (1, 9, 10):
            name = workspace_name("0f3c-session", iteration, attempt_id)
            assert parse_workspace_name(name) == WorkspaceIdentity("0f3c-session", iteration, attempt_id)


def test_materialize_creates_branch_and_worktree(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    name = manager.name_for("s1", 1)

    path = manager.materialize(name, "main")

    assert path == manager.path_for(name)
    assert (path / "src" / "calc.py").is_file()
    assert git_repo.branch_exists(name)
    assert GitRepository(path).current_branch() == name
    assert manager.detect_owner(path / "src") == WorkspaceIdentity("s1", 1)


def test_ensure_reuses_existing_workspace(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    name = manager.name_for("s1", 1)
    first = manager.ensure(name, "main")
    (first / "scratch.txt").write_text("keep me", encoding="utf-8")

    second = manager.ensure(name, "main")

    assert second == first
    assert (second / "scratch.txt").read_text(encoding="utf-8") == "keep me"


def test_iterations_chain_from_previous_branch(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    first_name = manager.name_for("s1", 1)
    first = manager.ensure(first_name, "main")
    (first / "src" / "calc.py").write_text("def add(a, b):\n    return a + b + 0\n", encoding="utf-8")
    GitRepository(first).commit_all("iteration 1")

    second_name = manager.name_for("s1", 2)
    second = manager.ensure(second_name, first_name)

    assert "a + b + 0" in (second / "src" / "calc.py").read_text(encoding="utf-8")
    assert git_repo.is_ancestor(first_name, second_name)
    assert git_repo.is_ancestor("main", second_name)


def test_materialize_from_unknown_base_fails(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    with pytest.raises(WorkspaceError) as excinfo:
        manager.materialize(manager.name_for("s1", 1), "no-such-branch")
    assert excinfo.value.code == ErrorCode.WORKSPACE_CREATE_FAILED


def test_reclaim_removes_worktree_and_branch(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    name = manager.name_for("s1", 1)
    path = manager.ensure(name, "main")

    manager.reclaim(name)

    assert not path.exists()
    assert not git_repo.branch_exists(name)
    assert manager.resolve(name) is None


def test_reclaim_falls_back_to_filesystem_removal(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    name = manager.name_for("s1", 1)
    path = manager.ensure(name, "main")
    # Break the worktree link so ``git worktree remove`` refuses the directory.
    (path / ".git").unlink()

    manager.reclaim(name)

    assert not path.exists()
    assert not git_repo.branch_exists(name)
    registered = [entry.path for entry in git_repo.worktree_list()]
    assert path.resolve() not in registered


def test_list_owned_handles_both_layouts(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    manager.ensure(manager.name_for("single", 1), "main")
    manager.ensure(manager.name_for("single", 2), "main")
    manager.ensure(manager.name_for("multi", 1, 2), "main")
    manager.ensure(manager.name_for("multi", 1, 1), "main")
    manager.ensure(manager.name_for("multi", 2, 1), "main")

    single = [manager.name_of(path) for path in manager.list_owned("single")]
    multi = [manager.name_of(path) for path in manager.list_owned("multi")]

    assert single == ["whetstone/single/iteration-1", "whetstone/single/iteration-2"]
    assert multi == [
        "whetstone/multi/attempt-1/iteration-1",
        "whetstone/multi/attempt-1/iteration-2",
        "whetstone/multi/attempt-2/iteration-1",
    ]
    assert manager.list_sessions() == ["multi", "single"]
    assert manager.list_owned("unknown") == []


def test_reclaim_orphans_spares_live_sessions(git_repo: GitRepository, tmp_path: Path) -> None:
    manager = _manager(git_repo, tmp_path)
    manager.ensure(manager.name_for("live", 1), "main")
    manager.ensure(manager.name_for("dead", 1, 1), "main")
    manager.ensure(manager.name_for("dead", 1, 2), "main")

    reclaimed = manager.reclaim_orphans(["live"])

    assert sorted(reclaimed) == [
        "whetstone/dead/attempt-1/iteration-1",
        "whetstone/dead/attempt-2/iteration-1",
    ]
    assert manager.list_sessions() == ["live"]
    assert not git_repo.branch_exists("whetstone/dead/attempt-1/iteration-1")

    assert manager.reclaim_orphans([]) == ["whetstone/live/iteration-1"]
    assert manager.list_sessions() == []
    assert not (manager.worktrees_dir / "whetstone").exists()
