"""CLI commands for running refinement sessions."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigError, load_config
from .orchestrator import Orchestrator
from .results import Result
from .tools.vcs import GitError, GitRepository

APP_HELP = "Whetstone: test-validated iterative refinement."

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    debug = verbose or os.environ.get("WHETSTONE_DEBUG", "").strip().lower() in {"1", "true", "yes"}
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: Optional[str], repo: Optional[str]) -> Dict[str, Any]:
    try:
        repo_root = GitRepository.discover(repo).main_worktree().root
    except GitError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error
    config_path = Path(config) if config else repo_root / DEFAULT_CONFIG_NAME
    try:
        config_data = load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error
    return {"repo_root": repo_root, "config": config_data}


def _orchestrator(config: Optional[str], repo: Optional[str], verbose: bool) -> Orchestrator:
    _configure_logging(verbose)
    loaded = _load(config, repo)
    return Orchestrator.from_repo_root(loaded["repo_root"], loaded["config"])


def _emit(result: Result[Any]) -> None:
    typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    if not result.ok:
        raise typer.Exit(code=1)


_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to whetstone.yaml (defaults to the repo root).")
_REPO_OPTION = typer.Option(None, "--repo", help="Repository path (defaults to the current directory).")
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


@app.command()
def start(
    task: str = typer.Argument(..., help="Description of the task to refine."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-n", help="Iteration cap per attempt."),
    merge_threshold: Optional[int] = typer.Option(None, "--merge-threshold", help="Minimum score required to merge."),
    attempts: Optional[int] = typer.Option(None, "--attempts", "-a", help="Number of parallel attempts."),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for prior-solution selection."),
    base_branch: Optional[str] = typer.Option(None, "--base", help="Branch the workspaces start from."),
    force: bool = typer.Option(False, "--force", help="Start even if an active session has the same task."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Start a refinement session."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(
        orchestrator.start(
            task,
            max_iterations=max_iterations,
            merge_threshold=merge_threshold,
            attempts=attempts,
            force=force,
            seed=seed,
            base_branch=base_branch,
        )
    )


@app.command()
def check(
    session_id: Optional[str] = typer.Argument(None, help="Session id (detected from the workspace when omitted)."),
    attempt: Optional[int] = typer.Option(None, "--attempt", help="Attempt id in multi-attempt sessions."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Run the tests of the current workspace and record an iteration."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.validate(session_id, attempt_id=attempt, cwd=Path.cwd()))


@app.command()
def status(
    session_id: Optional[str] = typer.Argument(None, help="Session id; lists all sessions when omitted."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Show a session or list sessions."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.status(session_id))


@app.command()
def vote(
    session_id: str = typer.Argument(..., help="Session id."),
    strategy: str = typer.Option(
        "highest_score",
        "--strategy",
        "-s",
        help="highest_score, minimal_diff, balanced or consensus.",
    ),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Select the winning iteration."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.vote(session_id, strategy))


@app.command()
def merge(
    session_id: str = typer.Argument(..., help="Session id."),
    iteration: Optional[int] = typer.Option(None, "--iteration", "-i", help="Iteration to merge."),
    attempt: Optional[int] = typer.Option(None, "--attempt", help="Attempt owning the iteration."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Merge the selected iteration into the base branch."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.merge(session_id, iteration=iteration, attempt_id=attempt))


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Session id."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Cancel a session and reclaim its workspaces."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.cancel(session_id))


@app.command()
def clean(
    session_id: Optional[str] = typer.Argument(None, help="Terminal session to delete."),
    all_terminal: bool = typer.Option(False, "--all", help="Delete every finished session."),
    config: Optional[str] = _CONFIG_OPTION,
    repo: Optional[str] = _REPO_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Delete finished sessions and reclaim orphaned workspaces."""
    orchestrator = _orchestrator(config, repo, verbose)
    _emit(orchestrator.clean(session_id, all_terminal=all_terminal))


if __name__ == "__main__":
    app()
