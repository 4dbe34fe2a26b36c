"""Durable storage for refinement sessions and their attempt records.

Each session lives in its own directory::

    <state_dir>/sessions/<session-id>/state.json
    <state_dir>/sessions/<session-id>/iterations/<record>.json
    <state_dir>/sessions/<session-id>/session.lock

``state.json`` is always rewritten as a whole through a temporary file and
``os.replace`` so a crash never leaves a half-written document behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from pydantic import ValidationError

from ..errors import (
    ErrorCode,
    InvariantError,
    SessionConflictError,
    SessionNotFoundError,
    WhetstoneError,
)
from .lock import DEFAULT_BACKOFF, DEFAULT_STALE_AFTER, DEFAULT_TIMEOUT, SessionLock
from .schema import (
    AttemptRecord,
    AttemptState,
    Session,
    SessionMode,
    SessionSettings,
    SessionStatus,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
LOCK_FILENAME = "session.lock"
ITERATIONS_DIRNAME = "iterations"


def record_filename(record: AttemptRecord) -> str:
    """Return the file name used to persist ``record``."""
    if record.attempt_id is None:
        return f"iteration-{record.iteration}.json"
    return f"attempt-{record.attempt_id}-iteration-{record.iteration}.json"


class SessionStore:
    """Filesystem-backed persistence for :class:`Session` documents."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        lock_stale_after: float = DEFAULT_STALE_AFTER,
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_backoff: float = DEFAULT_BACKOFF,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.sessions_dir = self.state_dir / "sessions"
        self.lock_stale_after = lock_stale_after
        self.lock_timeout = lock_timeout
        self.lock_backoff = lock_backoff
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, repo_root: Path) -> "SessionStore":
        paths = config.get("paths") or {}
        lock_cfg = config.get("lock") or {}
        state_dir = Path(paths.get("state_dir") or ".whetstone")
        if not state_dir.is_absolute():
            state_dir = repo_root / state_dir
        return cls(
            state_dir,
            lock_stale_after=float(lock_cfg.get("stale_after", DEFAULT_STALE_AFTER)),
            lock_timeout=float(lock_cfg.get("timeout", DEFAULT_TIMEOUT)),
            lock_backoff=float(lock_cfg.get("backoff", DEFAULT_BACKOFF)),
        )

    # ------------------------------------------------------------------ paths
    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def state_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / STATE_FILENAME

    def lock_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / LOCK_FILENAME

    def lock(self, session_id: str) -> SessionLock:
        """Return the advisory lock guarding ``session_id``."""

        if not self.exists(session_id):
            raise SessionNotFoundError(
                f"Session {session_id} not found",
                details={"session_id": session_id},
            )
        return SessionLock(
            self.lock_path(session_id),
            stale_after=self.lock_stale_after,
            timeout=self.lock_timeout,
            backoff=self.lock_backoff,
            clock=self._clock,
            sleep=self._sleep,
        )

    # --------------------------------------------------------------- creation
    def create(
        self,
        task_description: str,
        *,
        max_iterations: int = 5,
        merge_threshold: Optional[int] = None,
        attempts: int = 1,
        base_branch: str = "main",
        settings: SessionSettings | None = None,
        force: bool = False,
    ) -> Session:
        """Create and persist a new session.

        Raises :class:`SessionConflictError` when an active session already
        exists for the same task, unless ``force`` is set.
        """

        if not force:
            for existing in self.list_by_status(*ACTIVE_STATUSES):
                if existing.task_description.strip() == task_description.strip():
                    raise SessionConflictError(
                        f"An active session already exists for this task: {existing.id}",
                        code=ErrorCode.SESSION_EXISTS,
                        details={
                            "session_id": existing.id,
                            "status": existing.status.value,
                            "current_iteration": existing.current_iteration,
                            "max_iterations": existing.max_iterations,
                        },
                    )

        settings = settings or SessionSettings()
        mode = SessionMode.MULTI if attempts > 1 else SessionMode.SINGLE
        session = Session(
            id=str(uuid.uuid4()),
            task_description=task_description,
            max_iterations=max_iterations,
            merge_threshold=merge_threshold,
            mode=mode,
            attempt_count=attempts,
            base_branch=base_branch,
            settings=settings,
        )
        if mode == SessionMode.MULTI:
            base_seed = settings.seed or 0
            session.attempt_states = {
                attempt_id: AttemptState(attempt_id=attempt_id, seed=base_seed + attempt_id)
                for attempt_id in range(1, attempts + 1)
            }
        self.persist(session)
        LOGGER.info("Created session %s (%s, cap=%d)", session.id, mode.value, max_iterations)
        return session

    # ------------------------------------------------------------------- read
    def exists(self, session_id: str) -> bool:
        return self.state_path(session_id).is_file()

    def get(self, session_id: str) -> Optional[Session]:
        """Return the stored session or ``None`` when it does not exist."""

        path = self.state_path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as error:
            raise WhetstoneError(
                f"Session document {path} is corrupt: {error}",
                code=ErrorCode.PERSISTENCE_FAILED,
                details={"path": path.as_posix()},
            ) from error

    def load(self, session_id: str) -> Session:
        """Return the stored session or raise :class:`SessionNotFoundError`."""

        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"Session {session_id} not found",
                details={"session_id": session_id},
            )
        return session

    def list_ids(self) -> List[str]:
        if not self.sessions_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.sessions_dir.iterdir()
            if entry.is_dir() and (entry / STATE_FILENAME).is_file()
        )

    def list_sessions(self) -> List[Session]:
        sessions: List[Session] = []
        for session_id in self.list_ids():
            try:
                session = self.get(session_id)
            except WhetstoneError as error:
                LOGGER.warning("Skipping unreadable session %s: %s", session_id, error)
                continue
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda item: item.created_at)
        return sessions

    def list_by_status(self, *statuses: SessionStatus) -> List[Session]:
        wanted = set(statuses)
        return [session for session in self.list_sessions() if not wanted or session.status in wanted]

    def load_records(self, session_id: str) -> List[AttemptRecord]:
        """Read the per-record files of a session in iteration order."""

        directory = self.session_dir(session_id) / ITERATIONS_DIRNAME
        if not directory.is_dir():
            return []
        records = [
            AttemptRecord.model_validate_json(path.read_text(encoding="utf-8"))
            for path in directory.glob("*.json")
        ]
        records.sort(key=lambda record: (record.created_at, record.attempt_id or 0, record.iteration))
        return records

    # ------------------------------------------------------------------ write
    def persist(self, session: Session) -> None:
        """Atomically overwrite the session document."""

        session.updated_at = utc_now()
        path = self.state_path(session.id)
        write_atomic(path, session.model_dump_json(indent=2))

    def append_attempt(self, session: Session, record: AttemptRecord) -> Session:
        """Append ``record`` to ``session`` and persist both.

        Enforces one record per (attempt, iteration), strictly increasing
        iterations per attempt and the iteration cap.  The best-score pointer
        is only ever updated here.
        """

        if session.find_record(record.iteration, record.attempt_id) is not None:
            raise InvariantError(
                f"Iteration {record.iteration} already recorded for session {session.id}",
                details={"iteration": record.iteration, "attempt_id": record.attempt_id},
            )
        expected = session.iteration_for(record.attempt_id) + 1
        if record.iteration != expected:
            raise InvariantError(
                f"Expected iteration {expected}, got {record.iteration}",
                details={"expected": expected, "iteration": record.iteration},
            )
        if record.iteration > session.max_iterations:
            raise InvariantError(
                f"Iteration {record.iteration} exceeds cap of {session.max_iterations}",
                code=ErrorCode.MAX_ITERATIONS_REACHED,
                details={"iteration": record.iteration, "max_iterations": session.max_iterations},
            )

        record_path = self.session_dir(session.id) / ITERATIONS_DIRNAME / record_filename(record)
        write_atomic(record_path, record.model_dump_json(indent=2))

        session.attempts.append(record)
        if record.attempt_id is not None:
            state = session.attempt_states.get(record.attempt_id)
            if state is None:
                state = AttemptState(attempt_id=record.attempt_id)
                session.attempt_states[record.attempt_id] = state
            state.current_iteration = record.iteration
            if record.score is not None and (state.best_score is None or record.score > state.best_score):
                state.best_score = record.score
                state.best_iteration = record.iteration
            session.current_iteration = max(
                item.current_iteration for item in session.attempt_states.values()
            )
        else:
            session.current_iteration = record.iteration

        if record.score is not None and (session.best_score is None or record.score > session.best_score):
            session.best_score = record.score
            session.best_iteration = record.iteration
            session.best_attempt = record.attempt_id

        self.persist(session)
        return session

    def delete(self, session_id: str, *, force: bool = False) -> None:
        """Remove all persisted state of a session.

        Active sessions are protected unless ``force`` is set.
        """

        session = self.load(session_id)
        if session.is_active and not force:
            raise SessionConflictError(
                f"Session {session_id} is still {session.status.value}; cancel it first",
                code=ErrorCode.SESSION_ACTIVE,
                details={"session_id": session_id, "status": session.status.value},
            )
        shutil.rmtree(self.session_dir(session_id))
        LOGGER.info("Deleted session state for %s", session_id)


ACTIVE_STATUSES = (
    SessionStatus.INITIALIZING,
    SessionStatus.ITERATING,
    SessionStatus.EVALUATING,
)


def write_atomic(path: Path, payload: str) -> None:
    """Replace ``path`` with ``payload`` through a sibling temp file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


__all__ = ["ACTIVE_STATUSES", "SessionStore", "record_filename", "write_atomic"]
