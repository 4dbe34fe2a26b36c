"""Session orchestration: start, validate, vote, merge, cancel and clean.

Every public operation returns a :class:`~whetstone.results.Success` or a
:class:`~whetstone.results.Failure`; typed errors raised by the layers below
are converted at this boundary.  Mutating operations run inside the session's
advisory lock so a read-modify-write never interleaves with another caller.
"""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .config import DEFAULT_CONFIG, default_config, resolve_path
from .errors import (
    ErrorCode,
    InvariantError,
    NoTestsDetectedError,
    SelectionError,
    SessionConflictError,
    SessionNotFoundError,
    ThresholdError,
    WhetstoneError,
    WorkspaceError,
)
from .evaluation.diff import DiffAnalyzer
from .evaluation.quality import QualityAnalyzer
from .evaluation.scoring import ScoringEngine
from .evaluation.soft import SoftScorer
from .evaluation.voting import VoteStrategy, VotingEngine, best_per_attempt
from .feedback import (
    DirectiveContext,
    DirectiveWriter,
    MergeEligibility,
    Renderer,
    merge_eligibility,
    select_prior_solutions,
)
from .results import Failure, Result, Success
from .state.schema import (
    AttemptRecord,
    AttemptStatus,
    DiffStats,
    QualityReport,
    Session,
    SessionSettings,
    SessionStatus,
    SolutionSnapshot,
)
from .state.store import SessionStore
from .tools.test_runner import DEFAULT_TIMEOUT, PytestRunner, TestRunner, detect_test_runner
from .tools.vcs import GitError, GitRepository
from .tools.workspaces import WorkspaceManager

LOGGER = logging.getLogger(__name__)

_RECOVERY_HINTS: Dict[ErrorCode, List[str]] = {
    ErrorCode.SESSION_NOT_FOUND: ["List sessions with `whetstone status`"],
    ErrorCode.SESSION_EXISTS: ["Resume the existing session, or pass --force to start another"],
    ErrorCode.SESSION_ACTIVE: ["Cancel the session before cleaning it"],
    ErrorCode.LOCK_TIMEOUT: ["Another operation holds the session lock; retry shortly"],
    ErrorCode.MAX_ITERATIONS_REACHED: ["Start a new session or raise max_iterations"],
    ErrorCode.INSUFFICIENT_ATTEMPTS: ["Improve the code and run `whetstone check` again"],
    ErrorCode.SCORE_BELOW_THRESHOLD: ["Improve the score or merge a higher-scoring iteration"],
    ErrorCode.NO_TESTS_DETECTED: ["Add tests for the task before validating"],
    ErrorCode.ATTEMPT_REQUIRED: ["Pass --attempt or run the command inside an attempt workspace"],
    ErrorCode.MERGE_FAILED: ["Check out the base branch with a clean working tree and retry"],
}


class Orchestrator:
    """Drive refinement sessions over a git repository."""

    def __init__(
        self,
        *,
        repo: GitRepository,
        config: Mapping[str, Any] | None = None,
        store: SessionStore | None = None,
        workspaces: WorkspaceManager | None = None,
        runner: TestRunner | None = None,
        renderer: Renderer | None = None,
        scoring: ScoringEngine | None = None,
        soft_scorer: SoftScorer | None = None,
        diff_analyzer: DiffAnalyzer | None = None,
        quality: QualityAnalyzer | None = None,
        voting: VotingEngine | None = None,
    ) -> None:
        self.repo = repo
        self.config: Dict[str, Any] = dict(config or default_config())
        root = repo.root
        self.state_dir = resolve_path(self.config, "state_dir", root)
        self.store = store or SessionStore.from_config(self.config, repo_root=root)
        workspace_cfg = self.config.get("workspace") or {}
        self.workspaces = workspaces or WorkspaceManager(
            repo,
            resolve_path(self.config, "worktrees_dir", root),
            prefix=str(workspace_cfg.get("branch_prefix") or DEFAULT_CONFIG["workspace"]["branch_prefix"]),
        )
        self.runner = runner
        self.renderer: Renderer = renderer or DirectiveWriter(resolve_path(self.config, "directive", root))
        self.scoring = scoring or ScoringEngine.from_config(self.config)
        self.soft_scorer = soft_scorer or SoftScorer()
        self.diff_analyzer = diff_analyzer or DiffAnalyzer()
        self.quality = quality or QualityAnalyzer()
        self.voting = voting or VotingEngine()
        tests_cfg = self.config.get("tests") or {}
        self.test_timeout = float(tests_cfg.get("timeout", DEFAULT_TIMEOUT))

    @classmethod
    def from_repo_root(cls, repo_root: Path | str, config: Mapping[str, Any] | None = None) -> "Orchestrator":
        """Convenience constructor used by the CLI."""
        return cls(repo=GitRepository.discover(repo_root), config=config)

    # ------------------------------------------------------------- boundary
    def _guard(self, operation: str, action: Callable[[], Result[Any]], *, git_code: ErrorCode) -> Result[Any]:
        try:
            return action()
        except WhetstoneError as error:
            LOGGER.info("%s failed: [%s] %s", operation, error.code.value, error.message)
            return Failure(error, next_steps=list(_RECOVERY_HINTS.get(error.code, [])))
        except GitError as error:
            LOGGER.warning("%s failed on git: %s", operation, error)
            wrapped = WhetstoneError(str(error), code=git_code, details={"operation": operation})
            return Failure(wrapped, next_steps=list(_RECOVERY_HINTS.get(git_code, [])))
        except OSError as error:
            LOGGER.error("%s failed on I/O: %s", operation, error)
            wrapped = WhetstoneError(
                f"{operation} failed: {error}",
                code=ErrorCode.PERSISTENCE_FAILED,
                details={"operation": operation},
            )
            return Failure(wrapped)

    def _ensure_state_dir(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        ignore_file = self.state_dir / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    def _settings(self, seed: Optional[int]) -> SessionSettings:
        session_cfg = self.config.get("session") or {}
        return SessionSettings(
            max_solutions=int(session_cfg.get("max_solutions", 5)),
            improving_order=bool(session_cfg.get("improving_order", True)),
            selection_probability=float(session_cfg.get("selection_probability", 1.0)),
            shuffle_examples=bool(session_cfg.get("shuffle_examples", False)),
            seed=seed if seed is not None else session_cfg.get("seed"),
        )

    def _resolve_base_branch(self, explicit: Optional[str]) -> str:
        session_cfg = self.config.get("session") or {}
        base = explicit or session_cfg.get("base_branch") or self.repo.current_branch() or self.repo.head()
        if not base:
            raise InvariantError("Repository has no commits to use as a base line")
        return str(base)

    # ---------------------------------------------------------------- start
    def start(
        self,
        task: str,
        *,
        max_iterations: Optional[int] = None,
        merge_threshold: Optional[int] = None,
        attempts: Optional[int] = None,
        force: bool = False,
        seed: Optional[int] = None,
        base_branch: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """Create a session and materialize the first workspace of every attempt."""

        return self._guard(
            "start",
            lambda: self._start(task, max_iterations, merge_threshold, attempts, force, seed, base_branch),
            git_code=ErrorCode.WORKSPACE_CREATE_FAILED,
        )

    def _start(
        self,
        task: str,
        max_iterations: Optional[int],
        merge_threshold: Optional[int],
        attempts: Optional[int],
        force: bool,
        seed: Optional[int],
        base_branch: Optional[str],
    ) -> Result[Dict[str, Any]]:
        session_cfg = self.config.get("session") or {}
        if not task.strip():
            raise InvariantError("Task description must not be empty")
        cap = int(max_iterations if max_iterations is not None else session_cfg.get("max_iterations", 5))
        count = int(attempts if attempts is not None else session_cfg.get("attempts", 1))
        threshold = merge_threshold if merge_threshold is not None else session_cfg.get("merge_threshold")
        if cap < 1:
            raise InvariantError("max_iterations must be at least 1", details={"max_iterations": cap})
        if count < 1:
            raise InvariantError("attempts must be at least 1", details={"attempts": count})
        if threshold is not None and not 0 <= int(threshold) <= 100:
            raise InvariantError("merge_threshold must be between 0 and 100", details={"merge_threshold": threshold})

        self._ensure_state_dir()
        base = self._resolve_base_branch(base_branch)
        session = self.store.create(
            task,
            max_iterations=cap,
            merge_threshold=int(threshold) if threshold is not None else None,
            attempts=count,
            base_branch=base,
            settings=self._settings(seed),
            force=force,
        )

        with self.store.lock(session.id):
            attempt_ids: Sequence[Optional[int]] = (
                list(range(1, count + 1)) if session.is_multi else [None]
            )
            created: Dict[str, str] = {}
            try:
                for attempt_id in attempt_ids:
                    name = self.workspaces.name_for(session.id, 1, attempt_id)
                    created[name] = self.workspaces.ensure(name, base).as_posix()
            except WorkspaceError:
                session.transition_to(SessionStatus.FAILED)
                self.store.persist(session)
                for name in created:
                    self._reclaim_quietly(name, {})
                raise
            session.transition_to(SessionStatus.ITERATING)
            self.store.persist(session)

        next_steps = [
            f"Make code changes for the task inside {path}" for path in created.values()
        ]
        next_steps.append(f"Run `whetstone check {session.id}` to validate with tests")
        self._render(session, None, next_steps, Path(next(iter(created.values()))))
        return Success(
            {
                "session_id": session.id,
                "status": session.status.value,
                "mode": session.mode.value,
                "base_branch": base,
                "max_iterations": cap,
                "workspaces": created,
            },
            message=f"Session {session.id} created",
            next_steps=next_steps,
        )

    # ------------------------------------------------------------- validate
    def validate(
        self,
        session_id: Optional[str] = None,
        *,
        attempt_id: Optional[int] = None,
        cwd: Path | str | None = None,
    ) -> Result[Dict[str, Any]]:
        """Run the tests of the current workspace and record a scored iteration."""

        return self._guard(
            "validate",
            lambda: self._validate(session_id, attempt_id, cwd),
            git_code=ErrorCode.TEST_RUN_FAILED,
        )

    def _resolve_session_id(self, session_id: Optional[str], cwd: Path | str | None) -> str:
        if session_id:
            return session_id
        owner = self.workspaces.detect_owner(Path(cwd).resolve() if cwd else None)
        if owner is None:
            raise SessionNotFoundError(
                "No session id given and the working directory is not inside a workspace",
                details={"cwd": str(cwd) if cwd else None},
            )
        return owner.session_id

    def _resolve_attempt(self, session: Session, attempt_id: Optional[int], cwd: Path | str | None) -> Optional[int]:
        if not session.is_multi:
            if attempt_id is not None:
                raise WhetstoneError(
                    f"Session {session.id} runs a single attempt",
                    code=ErrorCode.ATTEMPT_NOT_FOUND,
                    details={"attempt_id": attempt_id},
                )
            return None
        if attempt_id is None and cwd is not None:
            owner = self.workspaces.detect_owner(Path(cwd).resolve())
            if owner is not None and owner.session_id == session.id:
                attempt_id = owner.attempt_id
        if attempt_id is None:
            raise WhetstoneError(
                f"Session {session.id} has {session.attempt_count} attempts; say which one to validate",
                code=ErrorCode.ATTEMPT_REQUIRED,
                details={"attempts": sorted(session.attempt_states)},
            )
        if attempt_id not in session.attempt_states:
            raise WhetstoneError(
                f"Attempt {attempt_id} does not exist in session {session.id}",
                code=ErrorCode.ATTEMPT_NOT_FOUND,
                details={"attempt_id": attempt_id, "attempts": sorted(session.attempt_states)},
            )
        return attempt_id

    def _check_can_validate(self, session: Session, attempt_id: Optional[int]) -> None:
        if session.status.is_terminal:
            raise SessionConflictError(
                f"Session {session.id} is {session.status.value}",
                code=ErrorCode.SESSION_TERMINAL,
                details={"status": session.status.value},
            )
        done = session.iteration_for(attempt_id)
        state = session.attempt_states.get(attempt_id) if attempt_id is not None else None
        latest = session.latest_record(attempt_id)
        if state is not None and state.finished and latest is not None and latest.is_passing:
            raise SessionConflictError(
                f"Attempt {attempt_id} already passed all tests",
                code=ErrorCode.SESSION_TERMINAL,
                details={"attempt_id": attempt_id, "iteration": done},
            )
        if done < session.max_iterations:
            return

        exhausted = not session.is_multi or all(
            item.current_iteration >= session.max_iterations or item.finished
            for item in session.attempt_states.values()
        )
        if exhausted:
            session.transition_to(SessionStatus.FAILED)
            self.store.persist(session)
            LOGGER.info("Session %s failed: iteration cap %d exhausted", session.id, session.max_iterations)
        raise ThresholdError(
            f"Max iterations ({session.max_iterations}) reached",
            code=ErrorCode.MAX_ITERATIONS_REACHED,
            details={
                "max_iterations": session.max_iterations,
                "attempt_id": attempt_id,
                "status": session.status.value,
            },
        )

    def _validate(
        self,
        session_id: Optional[str],
        attempt_id: Optional[int],
        cwd: Path | str | None,
    ) -> Result[Dict[str, Any]]:
        session_id = self._resolve_session_id(session_id, cwd)
        with self.store.lock(session_id):
            session = self.store.load(session_id)
            attempt_id = self._resolve_attempt(session, attempt_id, cwd)
            self._check_can_validate(session, attempt_id)

            iteration = session.iteration_for(attempt_id) + 1
            previous = session.latest_record(attempt_id)
            base = previous.branch if previous is not None and previous.branch else session.base_branch
            name = self.workspaces.name_for(session.id, iteration, attempt_id)
            path = self.workspaces.ensure(name, base)

            runner = self.runner or self._default_runner(path)
            outcome = runner.run(path, timeout=self.test_timeout)
            if outcome.total == 0:
                raise NoTestsDetectedError(
                    f"No tests detected in {path}",
                    details={"workspace": path.as_posix(), "framework": outcome.framework},
                )
            outcome = self.soft_scorer.annotate(outcome)

            workspace_repo = GitRepository(path)
            commit_sha = workspace_repo.commit_all(_commit_message(session, iteration, attempt_id))
            # With nothing committed HEAD~1 would measure the previous iteration.
            diff = self.diff_analyzer.analyze(path) if commit_sha else DiffStats()
            quality: Optional[QualityReport] = None
            if outcome.all_passing and commit_sha:
                iteration_diff = self.diff_analyzer.raw_diff(path)
                if iteration_diff:
                    quality = self.quality.analyze(iteration_diff)
            solution_diff = self.diff_analyzer.raw_diff(path, base=session.base_branch)
            scored = self.scoring.score(outcome, diff)

            record = AttemptRecord(
                iteration=iteration,
                attempt_id=attempt_id,
                status=AttemptStatus.COMPLETED,
                test_outcome=outcome,
                score=scored.score,
                pass_rate=scored.pass_rate,
                score_breakdown=scored.breakdown,
                diff=diff,
                workspace_path=path.as_posix(),
                branch=name,
                base_branch=base,
                commit_sha=commit_sha or workspace_repo.head(),
                solution=SolutionSnapshot(code=solution_diff, feedback=outcome.summary(), score=scored.score),
                quality=quality,
            )
            if session.status == SessionStatus.EVALUATING:
                session.transition_to(SessionStatus.ITERATING)
            self.store.append_attempt(session, record)
            LOGGER.info(
                "Session %s iteration %d%s scored %d (%s)",
                session.id,
                iteration,
                f" attempt {attempt_id}" if attempt_id is not None else "",
                scored.score,
                outcome.summary(),
            )

            self._advance(session, record)
            remaining = session.max_iterations - iteration
            next_path: Optional[Path] = None
            if session.is_active and not record.is_passing and remaining > 0:
                next_name = self.workspaces.name_for(session.id, iteration + 1, attempt_id)
                next_path = self.workspaces.ensure(next_name, name)
            self.store.persist(session)

        eligibility = merge_eligibility(session, record)
        next_steps = _next_steps_after_validate(session, record, remaining, next_path, eligibility.can_merge)
        self._render(session, record, next_steps, next_path or path, eligibility=eligibility)
        return Success(
            {
                "session_id": session.id,
                "iteration": iteration,
                "attempt_id": attempt_id,
                "passed": outcome.passed,
                "failed": outcome.failed,
                "total": outcome.total,
                "score": scored.score,
                "soft_score": outcome.soft_score,
                "complexity": diff.complexity.value,
                "diff_strategy": diff.strategy,
                "quality_score": quality.score if quality is not None else None,
                "remaining_iterations": remaining,
                "status": session.status.value,
                "can_merge": eligibility.can_merge,
                "workspace": (next_path or path).as_posix(),
            },
            message=f"Iteration {iteration} completed with score {scored.score}",
            next_steps=next_steps,
        )

    def _default_runner(self, path: Path) -> TestRunner:
        tests_cfg = self.config.get("tests") or {}
        configured = PytestRunner(
            args=tuple(tests_cfg.get("args") or ("-q",)),
            command=tuple(tests_cfg.get("command") or ("pytest",)),
        )
        return detect_test_runner(path, runners=(configured,))

    def _advance(self, session: Session, record: AttemptRecord) -> None:
        """Apply the status consequences of a freshly appended record."""

        if not session.is_multi:
            if record.is_passing:
                session.transition_to(SessionStatus.COMPLETED)
            return

        assert record.attempt_id is not None
        state = session.attempt_states[record.attempt_id]
        if record.is_passing or state.current_iteration >= session.max_iterations:
            state.finished = True
        if all(item.finished for item in session.attempt_states.values()) and any(
            item.is_passing for item in session.attempts
        ):
            session.transition_to(SessionStatus.COMPLETED)

    # --------------------------------------------------------------- status
    def status(self, session_id: Optional[str] = None) -> Result[Dict[str, Any]]:
        """Describe one session, or list every known session."""

        def _status() -> Result[Dict[str, Any]]:
            if session_id is None:
                sessions = self.store.list_sessions()
                return Success(
                    {"sessions": [_session_summary(item) for item in sessions]},
                    message=f"{len(sessions)} session(s)",
                )
            session = self.store.load(session_id)
            summary = _session_summary(session)
            summary["iterations"] = [_record_summary(record) for record in session.attempts]
            latest = session.latest_record(None)
            summary["can_merge"] = merge_eligibility(session, latest).can_merge
            return Success(summary, message=f"Session {session.id} is {session.status.value}")

        return self._guard("status", _status, git_code=ErrorCode.PERSISTENCE_FAILED)

    # ----------------------------------------------------------------- vote
    def vote(self, session_id: str, strategy: str | VoteStrategy = VoteStrategy.HIGHEST_SCORE) -> Result[Dict[str, Any]]:
        """Select a winner and mark the session as evaluating."""

        def _vote() -> Result[Dict[str, Any]]:
            chosen = VoteStrategy.parse(strategy)
            with self.store.lock(session_id):
                session = self.store.load(session_id)
                if session.status in (SessionStatus.FAILED, SessionStatus.CANCELLED) or session.is_merged:
                    raise SessionConflictError(
                        f"Session {session.id} is {session.status.value}",
                        code=ErrorCode.SESSION_TERMINAL,
                        details={"status": session.status.value},
                    )
                candidates = best_per_attempt(session.attempts) if session.is_multi else list(session.attempts)
                if not session.attempts:
                    raise SelectionError("No iterations to vote on", code=ErrorCode.NO_ATTEMPTS)
                result = self.voting.vote(candidates, chosen)
                session.selected_iteration = result.winner.iteration
                session.selected_attempt = result.winner.attempt_id
                if session.status == SessionStatus.ITERATING:
                    session.transition_to(SessionStatus.EVALUATING)
                self.store.persist(session)

            winner = result.winner
            data = result.to_dict()
            data.update({"session_id": session.id, "selected_iteration": winner.iteration, "status": session.status.value})
            return Success(
                data,
                message=f"Selected iteration {winner.iteration} with score {winner.score}",
                next_steps=[f"Run `whetstone merge {session.id}` to merge iteration {winner.iteration}"],
            )

        return self._guard("vote", _vote, git_code=ErrorCode.PERSISTENCE_FAILED)

    # ---------------------------------------------------------------- merge
    def merge(
        self,
        session_id: str,
        *,
        iteration: Optional[int] = None,
        attempt_id: Optional[int] = None,
    ) -> Result[Dict[str, Any]]:
        """Merge the chosen iteration's branch into the base line and reclaim workspaces."""

        return self._guard(
            "merge",
            lambda: self._merge(session_id, iteration, attempt_id),
            git_code=ErrorCode.MERGE_FAILED,
        )

    def _merge_target(self, session: Session, iteration: Optional[int], attempt_id: Optional[int]) -> AttemptRecord:
        if iteration is not None:
            if session.is_multi and attempt_id is None:
                raise WhetstoneError(
                    "An attempt id is required to merge a specific iteration of a multi-attempt session",
                    code=ErrorCode.ATTEMPT_REQUIRED,
                )
            record = session.find_record(iteration, attempt_id)
            if record is None:
                raise WhetstoneError(
                    f"Iteration {iteration} not found in session {session.id}",
                    code=ErrorCode.ITERATION_NOT_FOUND,
                    details={"iteration": iteration, "attempt_id": attempt_id},
                )
            return record
        if session.selected_iteration is not None:
            record = session.find_record(session.selected_iteration, session.selected_attempt)
            if record is not None:
                return record
        if session.best_iteration is not None:
            record = session.find_record(session.best_iteration, session.best_attempt)
            if record is not None:
                return record
        raise SelectionError(
            f"Session {session.id} has no scored iteration to merge",
            code=ErrorCode.NO_SCORED_ATTEMPTS,
        )

    def _merge(self, session_id: str, iteration: Optional[int], attempt_id: Optional[int]) -> Result[Dict[str, Any]]:
        with self.store.lock(session_id):
            session = self.store.load(session_id)
            if session.status in (SessionStatus.FAILED, SessionStatus.CANCELLED) or session.is_merged:
                raise SessionConflictError(
                    f"Session {session.id} is {session.status.value} and cannot be merged",
                    code=ErrorCode.SESSION_TERMINAL,
                    details={"status": session.status.value, "merged_commit": session.merged_commit},
                )
            target = self._merge_target(session, iteration, attempt_id)

            eligibility = merge_eligibility(session, session.latest_record(None))
            if not eligibility.can_merge:
                raise ThresholdError(
                    f"Merge requires {eligibility.required} completed iterations or a fully passing run; "
                    f"{eligibility.completed} completed so far",
                    code=ErrorCode.INSUFFICIENT_ATTEMPTS,
                    details={"completed": eligibility.completed, "required": eligibility.required},
                )
            threshold = session.merge_threshold
            if threshold is not None and (target.score or 0) < threshold:
                raise ThresholdError(
                    f"Cannot merge iteration with score {target.score}; minimum required is {threshold}",
                    code=ErrorCode.SCORE_BELOW_THRESHOLD,
                    details={"score": target.score, "threshold": threshold, "iteration": target.iteration},
                )

            branch = target.branch
            if not branch or not self.repo.branch_exists(branch):
                raise WhetstoneError(
                    f"Branch for iteration {target.iteration} no longer exists",
                    code=ErrorCode.MERGE_FAILED,
                    details={"branch": branch},
                )
            current = self.repo.current_branch()
            if current != session.base_branch:
                raise WhetstoneError(
                    f"Check out {session.base_branch} before merging (currently on {current or 'a detached HEAD'})",
                    code=ErrorCode.MERGE_FAILED,
                    details={"base_branch": session.base_branch, "current_branch": current},
                )
            commit = self.repo.merge(branch, message=f"whetstone: merge {branch}")
            session.merged_commit = commit
            session.merged_iteration = target.iteration
            session.merged_attempt = target.attempt_id
            session.transition_to(SessionStatus.COMPLETED)
            self.store.persist(session)
            LOGGER.info("Session %s merged iteration %d as %s", session.id, target.iteration, commit)

            failures = self._reclaim_all(session)

        return Success(
            {
                "session_id": session.id,
                "merged_iteration": target.iteration,
                "attempt_id": target.attempt_id,
                "score": target.score,
                "commit": commit,
                "reclaim_failures": failures,
            },
            message=f"Session {session.id} merged iteration {target.iteration}",
            next_steps=["Refinement session complete; changes are on " + session.base_branch],
        )

    # --------------------------------------------------------------- cancel
    def cancel(self, session_id: str) -> Result[Dict[str, Any]]:
        """Cancel a session, then reclaim its workspaces on a best-effort basis."""

        def _cancel() -> Result[Dict[str, Any]]:
            with self.store.lock(session_id):
                session = self.store.load(session_id)
                if session.status.is_terminal:
                    raise SessionConflictError(
                        f"Session {session.id} is already {session.status.value}",
                        code=ErrorCode.SESSION_TERMINAL,
                        details={"status": session.status.value},
                    )
                session.transition_to(SessionStatus.CANCELLED)
                self.store.persist(session)
                failures = self._reclaim_all(session)
            return Success(
                {"session_id": session.id, "status": session.status.value, "reclaim_failures": failures},
                message=f"Session {session.id} cancelled",
                next_steps=[f"Run `whetstone clean {session.id}` to delete its state"],
            )

        return self._guard("cancel", _cancel, git_code=ErrorCode.WORKSPACE_REMOVE_FAILED)

    def _reclaim_quietly(self, name: str, failures: Dict[str, str]) -> None:
        try:
            self.workspaces.reclaim(name)
        except (WhetstoneError, GitError, OSError) as error:
            LOGGER.warning("Could not reclaim workspace %s: %s", name, error)
            failures[name] = str(error)

    def _reclaim_all(self, session: Session) -> Dict[str, str]:
        """Reclaim every workspace referenced by a record or found on disk."""

        names: List[str] = []
        for record in session.attempts:
            if record.branch and record.branch not in names:
                names.append(record.branch)
        for path in self.workspaces.list_owned(session.id):
            name = self.workspaces.name_of(path)
            if name not in names:
                names.append(name)
        failures: Dict[str, str] = {}
        for name in names:
            self._reclaim_quietly(name, failures)
        try:
            self.workspaces.prune_empty_dirs()
        except OSError as error:
            LOGGER.warning("Could not prune workspace directories: %s", error)
        return failures

    # ---------------------------------------------------------------- clean
    def clean(self, session_id: Optional[str] = None, *, all_terminal: bool = False) -> Result[Dict[str, Any]]:
        """Delete a terminal session, purge every terminal session, or reclaim orphans."""

        def _clean() -> Result[Dict[str, Any]]:
            deleted: List[str] = []
            failures: Dict[str, str] = {}
            if session_id is not None:
                targets = [self.store.load(session_id)]
            elif all_terminal:
                targets = [item for item in self.store.list_sessions() if not item.is_active]
            else:
                targets = []
            for session in targets:
                with self.store.lock(session.id):
                    if session.is_active:
                        raise SessionConflictError(
                            f"Session {session.id} is still {session.status.value}; cancel it first",
                            code=ErrorCode.SESSION_ACTIVE,
                            details={"session_id": session.id, "status": session.status.value},
                        )
                    failures.update(self._reclaim_all(session))
                    for record in session.attempts:
                        if record.branch and self.repo.branch_exists(record.branch):
                            try:
                                self.repo.delete_branch(record.branch)
                            except GitError as error:
                                failures[record.branch] = str(error)
                self.store.delete(session.id)
                deleted.append(session.id)

            orphans = self.workspaces.reclaim_orphans(self.store.list_ids())
            return Success(
                {"deleted": deleted, "orphans_reclaimed": orphans, "reclaim_failures": failures},
                message=f"Deleted {len(deleted)} session(s), reclaimed {len(orphans)} orphan workspace(s)",
            )

        return self._guard("clean", _clean, git_code=ErrorCode.WORKSPACE_REMOVE_FAILED)

    # -------------------------------------------------------------- helpers
    def _render(
        self,
        session: Session,
        latest: Optional[AttemptRecord],
        next_steps: List[str],
        working_directory: Optional[Path],
        *,
        eligibility: Optional[MergeEligibility] = None,
    ) -> None:
        attempt_id = latest.attempt_id if latest is not None else None
        history = [
            record for record in session.records_for(attempt_id) if latest is None or record.key != latest.key
        ]
        context = DirectiveContext(
            session=session,
            latest=latest,
            next_actions=list(next_steps),
            working_directory=working_directory,
            prior_solutions=select_prior_solutions(history, session.settings, self._rng(session, latest)),
            eligibility=eligibility,
        )
        try:
            self.renderer.write(context)
        except OSError as error:
            LOGGER.warning("Failed to write directive for %s: %s", session.id, error)

    @staticmethod
    def _rng(session: Session, latest: Optional[AttemptRecord]) -> random.Random:
        seed = session.settings.seed
        if latest is not None and latest.attempt_id is not None:
            state = session.attempt_states.get(latest.attempt_id)
            seed = state.seed if state is not None else seed
        if seed is None:
            return random.Random()
        iteration = latest.iteration if latest is not None else 0
        return random.Random(f"{seed}:{iteration}")


def _commit_message(session: Session, iteration: int, attempt_id: Optional[int]) -> str:
    label = f"attempt {attempt_id} " if attempt_id is not None else ""
    return f"whetstone: session {session.id} {label}iteration {iteration}"


def _next_steps_after_validate(
    session: Session,
    record: AttemptRecord,
    remaining: int,
    next_path: Optional[Path],
    can_merge: bool,
) -> List[str]:
    if record.is_passing:
        steps = ["All tests pass"]
        if can_merge:
            steps.append(f"Run `whetstone merge {session.id}` to merge the result")
        return steps
    if next_path is not None:
        return [
            f"Continue in {next_path}",
            "Fix the failing tests listed in the directive",
            f"Run `whetstone check {session.id}` again ({remaining} iteration(s) left)",
        ]
    steps = ["Iteration cap reached for this attempt"]
    if can_merge:
        steps.append(f"Run `whetstone vote {session.id}` then `whetstone merge {session.id}`")
    steps.append(f"Or run `whetstone cancel {session.id}`")
    return steps


def _record_summary(record: AttemptRecord) -> Dict[str, Any]:
    outcome = record.test_outcome
    return {
        "iteration": record.iteration,
        "attempt_id": record.attempt_id,
        "status": record.status.value,
        "score": record.score,
        "passed": outcome.passed if outcome else None,
        "total": outcome.total if outcome else None,
        "soft_score": outcome.soft_score if outcome else None,
        "diff_size": record.diff_size,
        "branch": record.branch,
    }


def _session_summary(session: Session) -> Dict[str, Any]:
    return {
        "session_id": session.id,
        "task": session.task_description,
        "status": session.status.value,
        "mode": session.mode.value,
        "current_iteration": session.current_iteration,
        "max_iterations": session.max_iterations,
        "best_score": session.best_score,
        "best_iteration": session.best_iteration,
        "best_attempt": session.best_attempt,
        "selected_iteration": session.selected_iteration,
        "merged_commit": session.merged_commit,
        "base_branch": session.base_branch,
    }


__all__ = ["Orchestrator"]
