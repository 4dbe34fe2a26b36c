"""Isolated per-iteration workspaces backed by git worktrees.

Every (session, attempt, iteration) triple owns one branch and one worktree
directory, both named by the same grammar::

    <prefix>/<session-id>/iteration-<n>
    <prefix>/<session-id>/attempt-<a>/iteration-<n>

The worktree for a branch lives at ``<worktrees_dir>/<branch>``.  Ownership is
therefore readable from the filesystem alone: orphan detection and owner
auto-detection both go through :func:`parse_workspace_name`, the single parser
of this grammar.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional

from ..errors import ErrorCode, WorkspaceError
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_PREFIX = "whetstone"
_ITERATION_RE = re.compile(r"^iteration-(\d+)$")
_ATTEMPT_RE = re.compile(r"^attempt-(\d+)$")


@dataclass(frozen=True, slots=True)
class WorkspaceIdentity:
    """Logical owner of a workspace."""

    session_id: str
    iteration: int
    attempt_id: Optional[int] = None


def workspace_name(
    session_id: str,
    iteration: int,
    attempt_id: Optional[int] = None,
    *,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """Return the branch name (and relative worktree path) for a workspace."""

    if iteration < 1:
        raise ValueError(f"iteration must be >= 1, got {iteration}")
    if attempt_id is None:
        return f"{prefix}/{session_id}/iteration-{iteration}"
    return f"{prefix}/{session_id}/attempt-{attempt_id}/iteration-{iteration}"


def parse_workspace_name(value: str | Path | None, *, prefix: str = DEFAULT_PREFIX) -> Optional[WorkspaceIdentity]:
    """Parse a branch name or any path inside a workspace back into its owner.

    Returns ``None`` for anything that does not follow the naming grammar.
    """

    if value is None:
        return None
    text = str(value).replace("\\", "/")
    parts = [part for part in PurePosixPath(text).parts if part not in ("", "/")]
    # Scan from the right so that a workspace nested in a path that happens to
    # contain the prefix earlier still resolves to the innermost owner.
    for index in range(len(parts) - 1, -1, -1):
        if parts[index] != prefix or index + 2 >= len(parts):
            continue
        session_id = parts[index + 1]
        if not session_id:
            continue
        following = parts[index + 2]
        attempt_match = _ATTEMPT_RE.match(following)
        if attempt_match:
            if index + 3 >= len(parts):
                continue
            iteration_match = _ITERATION_RE.match(parts[index + 3])
            if iteration_match is None:
                continue
            return WorkspaceIdentity(
                session_id=session_id,
                iteration=int(iteration_match.group(1)),
                attempt_id=int(attempt_match.group(1)),
            )
        iteration_match = _ITERATION_RE.match(following)
        if iteration_match is not None:
            return WorkspaceIdentity(session_id=session_id, iteration=int(iteration_match.group(1)))
    return None


class WorkspaceManager:
    """Create, reuse, enumerate and reclaim worktrees for sessions."""

    def __init__(
        self,
        repo: GitRepository,
        worktrees_dir: Path | str,
        *,
        prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self.repo = repo
        self.worktrees_dir = Path(worktrees_dir).resolve()
        self.prefix = prefix

    # ---------------------------------------------------------------- naming
    def name_for(self, session_id: str, iteration: int, attempt_id: Optional[int] = None) -> str:
        return workspace_name(session_id, iteration, attempt_id, prefix=self.prefix)

    def path_for(self, name: str) -> Path:
        return self.worktrees_dir / name

    def detect_owner(self, path: str | Path | None) -> Optional[WorkspaceIdentity]:
        """Return the owner of ``path`` when it lies inside a managed workspace."""

        return parse_workspace_name(path, prefix=self.prefix)

    # ------------------------------------------------------------- lifecycle
    def materialize(self, name: str, base_branch: str) -> Path:
        """Create branch ``name`` from ``base_branch`` and check it out in a new worktree."""

        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.repo.worktree_add(path, name, base_branch)
        except GitError as error:
            LOGGER.error("Workspace creation failed for %s from %s: %s", name, base_branch, error)
            raise WorkspaceError(
                f"Failed to create workspace {name}: {error}",
                code=ErrorCode.WORKSPACE_CREATE_FAILED,
                details={"name": name, "base_branch": base_branch, "path": path.as_posix()},
            ) from error
        LOGGER.info("Workspace %s created at %s from %s", name, path, base_branch)
        return path

    def resolve(self, name: str) -> Optional[Path]:
        """Return the path of an existing, registered workspace for ``name``."""

        path = self.path_for(name)
        if not path.is_dir():
            return None
        try:
            registered = {entry.path for entry in self.repo.worktree_list() if not entry.prunable}
        except GitError as error:
            LOGGER.warning("Unable to list worktrees while resolving %s: %s", name, error)
            return None
        return path if path.resolve() in registered else None

    def ensure(self, name: str, base_branch: str) -> Path:
        """Reuse the workspace for ``name`` if present, otherwise materialize it."""

        existing = self.resolve(name)
        if existing is not None:
            LOGGER.debug("Reusing workspace %s", name)
            return existing
        return self.materialize(name, base_branch)

    def reclaim(self, name: str, *, delete_branch: bool = True) -> None:
        """Remove the worktree and branch for ``name``.

        A failing ``git worktree remove`` falls back to deleting the directory
        and pruning git's worktree metadata; only when both fail is a
        :class:`WorkspaceError` raised.
        """

        path = self.path_for(name)
        try:
            self.repo.worktree_remove(path, force=True)
            LOGGER.info("Workspace %s removed", name)
        except GitError as git_error:
            LOGGER.warning("git worktree remove failed for %s, trying filesystem removal: %s", name, git_error)
            try:
                if path.exists():
                    shutil.rmtree(path)
                self.repo.worktree_prune()
                LOGGER.info("Workspace %s removed via filesystem", name)
            except (OSError, GitError) as fs_error:
                LOGGER.error("Workspace removal failed completely for %s", name)
                raise WorkspaceError(
                    f"Failed to remove workspace {name}: git error: {git_error}, fs error: {fs_error}",
                    code=ErrorCode.WORKSPACE_REMOVE_FAILED,
                    details={"name": name, "path": path.as_posix()},
                ) from fs_error

        if delete_branch and self.repo.branch_exists(name):
            try:
                self.repo.delete_branch(name)
            except GitError as error:
                LOGGER.warning("Unable to delete branch %s: %s", name, error)

    # ----------------------------------------------------------- enumeration
    def list_owned(self, session_id: str) -> List[Path]:
        """Return every workspace directory belonging to ``session_id``.

        Handles both the flat ``iteration-n`` layout and the nested
        ``attempt-a/iteration-n`` layout.
        """

        session_root = self.worktrees_dir / self.prefix / session_id
        if not session_root.is_dir():
            return []
        paths: List[Path] = []
        for entry in sorted(session_root.iterdir()):
            if not entry.is_dir():
                continue
            if _ITERATION_RE.match(entry.name):
                paths.append(entry)
            elif _ATTEMPT_RE.match(entry.name):
                paths.extend(
                    child
                    for child in sorted(entry.iterdir())
                    if child.is_dir() and _ITERATION_RE.match(child.name)
                )
        return sorted(paths, key=_workspace_sort_key)

    def list_sessions(self) -> List[str]:
        """Return the ids of every session that has workspaces on disk."""

        root = self.worktrees_dir / self.prefix
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir())

    def name_of(self, path: Path) -> str:
        """Return the workspace (branch) name for a workspace directory."""

        return Path(path).resolve().relative_to(self.worktrees_dir).as_posix()

    # --------------------------------------------------------------- cleanup
    def reclaim_orphans(self, live_session_ids: Iterable[str]) -> List[str]:
        """Reclaim workspaces whose owning session no longer exists."""

        live = set(live_session_ids)
        reclaimed: List[str] = []
        for session_id in self.list_sessions():
            if session_id in live:
                continue
            for path in self.list_owned(session_id):
                name = self.name_of(path)
                try:
                    self.reclaim(name)
                except WorkspaceError as error:
                    LOGGER.warning("Orphan workspace %s could not be reclaimed: %s", name, error)
                    continue
                reclaimed.append(name)
        self.prune_empty_dirs()
        return reclaimed

    def prune_empty_dirs(self) -> None:
        """Remove empty session and attempt directories left behind by reclamation."""

        root = self.worktrees_dir / self.prefix
        if not root.is_dir():
            return
        for session_dir in root.iterdir():
            if not session_dir.is_dir():
                continue
            for child in session_dir.iterdir():
                if child.is_dir() and _ATTEMPT_RE.match(child.name) and not any(child.iterdir()):
                    child.rmdir()
            if not any(session_dir.iterdir()):
                session_dir.rmdir()
                LOGGER.debug("Removed empty session directory %s", session_dir)
        if not any(root.iterdir()):
            root.rmdir()


def _workspace_sort_key(path: Path) -> tuple[int, int]:
    iteration_match = _ITERATION_RE.match(path.name)
    attempt_match = _ATTEMPT_RE.match(path.parent.name)
    attempt = int(attempt_match.group(1)) if attempt_match else 0
    iteration = int(iteration_match.group(1)) if iteration_match else 0
    return (attempt, iteration)


__all__ = [
    "DEFAULT_PREFIX",
    "WorkspaceIdentity",
    "WorkspaceManager",
    "parse_workspace_name",
    "workspace_name",
]
