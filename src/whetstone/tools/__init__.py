"""Subprocess-backed collaborators: git, worktrees and the test runner."""

from .test_runner import PytestRunner, TestRunner, detect_test_runner
from .vcs import GitError, GitRepository, WorktreeEntry
from .workspaces import WorkspaceIdentity, WorkspaceManager, parse_workspace_name, workspace_name

__all__ = [
    "GitError",
    "GitRepository",
    "PytestRunner",
    "TestRunner",
    "WorkspaceIdentity",
    "WorkspaceManager",
    "WorktreeEntry",
    "detect_test_runner",
    "parse_workspace_name",
    "workspace_name",
]
