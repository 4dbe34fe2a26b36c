"""Thin git layer used by the workspace manager and the orchestrator.

Only the commands whetstone needs are wrapped: branch lookups, worktree
bookkeeping, committing an iteration, diffing and the final merge.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence


class GitError(RuntimeError):
    """A git invocation exited non-zero or the path is not a repository."""


@dataclass(slots=True)
class WorktreeEntry:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    head: str | None
    branch: str | None
    prunable: bool = False


def _run(cwd: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=False)
    out = completed.stdout.decode("utf-8", errors="replace") if completed.stdout else ""
    err = completed.stderr.decode("utf-8", errors="replace") if completed.stderr else ""
    if check and completed.returncode != 0:
        detail = err.strip() or out.strip() or f"exit status {completed.returncode}"
        raise GitError(f"git {' '.join(args)}: {detail}")
    return subprocess.CompletedProcess(completed.args, completed.returncode, out, err)


class GitRepository:
    """A checkout (main or linked worktree) that git commands run against."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        # ``.git`` is a file inside linked worktrees.
        if not (self.root / ".git").exists():
            raise GitError(f"{self.root} is not inside a git checkout")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` (default: cwd) to the enclosing checkout."""

        origin = Path(start or Path.cwd()).resolve()
        for directory in (origin, *origin.parents):
            if (directory / ".git").exists():
                return cls(directory)
        raise GitError(f"No git checkout found above {origin}")

    @classmethod
    def initialise(cls, root: Path | str, *, branch: str = "main") -> "GitRepository":
        """Create a repository at ``root`` and commit whatever it contains."""

        target = Path(root).resolve()
        target.mkdir(parents=True, exist_ok=True)
        if (target / ".git").exists():
            shutil.rmtree(target / ".git")

        _run(target, ["init"])
        _run(target, ["symbolic-ref", "HEAD", f"refs/heads/{branch}"])
        for key, value in (("user.email", "whetstone@example.com"), ("user.name", "Whetstone")):
            configured = _run(target, ["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                _run(target, ["config", key, value])
        _run(target, ["add", "."])
        _run(target, ["commit", "--allow-empty", "-m", "Initial commit"])
        return cls(target)

    def main_worktree(self) -> "GitRepository":
        """Return the primary checkout when ``self`` is a linked worktree."""

        result = _run(self.root, ["rev-parse", "--git-common-dir"])
        common_dir = Path(result.stdout.strip())
        if not common_dir.is_absolute():
            common_dir = self.root / common_dir
        return GitRepository(common_dir.resolve().parent)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run an arbitrary git subcommand in this checkout."""

        return _run(self.root, args, check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Checked-out branch name; ``None`` on a detached HEAD."""

        resolved = self.git("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        if resolved.returncode != 0:
            return None
        return resolved.stdout.strip() or None

    def head(self) -> str | None:
        resolved = self.git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if resolved.returncode != 0:
            return None
        return resolved.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        return self.git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).returncode == 0

    def delete_branch(self, name: str) -> None:
        self.git("branch", "-D", name)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self.git("merge-base", "--is-ancestor", ancestor, descendant, check=False).returncode == 0

    def merge(self, branch: str, *, message: str | None = None) -> str:
        """Merge ``branch`` into the checked-out branch and return the new HEAD.

        A conflicting merge is aborted before :class:`GitError` is raised so
        the checkout is left as it was.
        """

        args: List[str] = ["merge", "--no-ff", "--no-edit"]
        if message:
            args += ["-m", message]
        args.append(branch)
        merged = self.git(*args, check=False)
        if merged.returncode != 0:
            self.git("merge", "--abort", check=False)
            detail = merged.stderr.strip() or merged.stdout.strip() or f"exit status {merged.returncode}"
            raise GitError(f"merging {branch} failed: {detail}")
        return self.head() or ""

    # ------------------------------------------------------------- worktrees
    def worktree_add(self, path: Path, branch: str, base: str) -> None:
        """Create ``branch`` at ``base`` (resetting it if present) checked out at ``path``."""

        self.git("worktree", "add", "-B", branch, str(path), base)

    def worktree_remove(self, path: Path, *, force: bool = True) -> None:
        args = ["worktree", "remove", *(["--force"] if force else []), str(path)]
        self.git(*args)

    def worktree_prune(self) -> None:
        self.git("worktree", "prune")

    def worktree_list(self) -> List[WorktreeEntry]:
        """Return the worktrees registered with the repository."""

        listing = self.git("worktree", "list", "--porcelain")
        entries: List[WorktreeEntry] = []
        for block in listing.stdout.strip().split("\n\n"):
            fields: dict[str, str] = {}
            for line in block.splitlines():
                key, _, value = line.partition(" ")
                fields[key] = value
            if "worktree" not in fields:
                continue
            branch = fields.get("branch")
            if branch and branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            entries.append(
                WorktreeEntry(
                    path=Path(fields["worktree"]).resolve(),
                    head=fields.get("HEAD") or None,
                    branch=branch or None,
                    prunable="prunable" in fields,
                )
            )
        return entries

    # ------------------------------------------------------------ snapshots
    def diff(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self.git("diff", *args, check=check)

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Stage everything and commit it.

        Returns the new commit sha, or ``None`` when the tree was clean and
        ``allow_empty`` is false.
        """

        self.git("add", "--all")
        args = ["commit", "-m", message, *(["--allow-empty"] if allow_empty else [])]
        committed = self.git(*args, check=False)
        if committed.returncode != 0:
            output = (committed.stderr.strip() or committed.stdout.strip()).lower()
            if "nothing to commit" in output or "nothing added to commit" in output:
                return None
            raise GitError(f"commit failed: {output or committed.returncode}")
        return self.head()


__all__ = ["GitError", "GitRepository", "WorktreeEntry"]
