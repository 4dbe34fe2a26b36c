"""Session-scoped advisory lock backed by an exclusive lock file.

The lock file contains an owner marker (process id, host, random token and the
acquisition timestamp).  A marker older than ``stale_after`` seconds is
considered abandoned by a crashed holder: it is discarded with a warning and
the new caller takes over.  Time is read through an injectable clock so tests
can simulate a crashed holder without sleeping.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..errors import LockTimeoutError

LOGGER = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 60.0
DEFAULT_TIMEOUT = 10.0
DEFAULT_BACKOFF = 0.1


@dataclass(slots=True)
class LockMarker:
    """Owner marker written into the lock file."""

    token: str
    pid: int
    host: str
    acquired_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "pid": self.pid,
            "host": self.host,
            "acquired_at": self.acquired_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LockMarker":
        return cls(
            token=str(payload.get("token") or ""),
            pid=int(payload.get("pid") or 0),
            host=str(payload.get("host") or ""),
            acquired_at=float(payload.get("acquired_at") or 0.0),
        )


def _read_marker_file(path: Path) -> Optional[LockMarker]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict) or "acquired_at" not in payload:
        # Half-written marker: date it by the file itself.
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        return LockMarker(token="", pid=0, host="", acquired_at=mtime)
    return LockMarker.from_dict(payload)


class SessionLock:
    """Mutual exclusion for read-modify-write cycles on one session."""

    def __init__(
        self,
        path: Path | str,
        *,
        stale_after: float = DEFAULT_STALE_AFTER,
        timeout: float = DEFAULT_TIMEOUT,
        backoff: float = DEFAULT_BACKOFF,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.timeout = timeout
        self.backoff = backoff
        self._clock = clock
        self._sleep = sleep
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    # ---------------------------------------------------------------- marker IO
    def read_marker(self) -> Optional[LockMarker]:
        """Return the current owner marker, or ``None`` when the lock is free."""

        return _read_marker_file(self.path)

    def _write_marker(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        marker = LockMarker(
            token=uuid.uuid4().hex,
            pid=os.getpid(),
            host=socket.gethostname(),
            acquired_at=self._clock(),
        )
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(marker.to_dict(), handle)
        self._token = marker.token
        return True

    # ------------------------------------------------------------- acquisition
    def try_acquire(self) -> bool:
        """Attempt a single acquisition without waiting."""

        if self.held:
            return True
        if self._write_marker():
            return True

        marker = self.read_marker()
        if marker is None:
            # Released between our attempt and the read.
            return self._write_marker()

        age = self._clock() - marker.acquired_at
        if age < self.stale_after:
            return False

        if not self._discard_stale(marker):
            return False
        LOGGER.warning(
            "Discarded stale lock %s held by pid %s on %s (age %.1fs)",
            self.path,
            marker.pid,
            marker.host or "unknown host",
            age,
        )
        return self._write_marker()

    def _discard_stale(self, stale: LockMarker) -> bool:
        """Move ``stale`` out of the way, but only if it is still the lock file.

        The lock file is renamed to a private tombstone first; a concurrent
        caller that already replaced the stale marker with its own gets its
        marker put back and this attempt reports contention.
        """

        tombstone = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            return False
        moved = _read_marker_file(tombstone)
        if moved is not None and moved.token == stale.token and moved.acquired_at == stale.acquired_at:
            tombstone.unlink(missing_ok=True)
            return True
        try:
            os.link(tombstone, self.path)
        except FileExistsError:
            LOGGER.warning("Lock %s changed owner during stale takeover", self.path)
        tombstone.unlink(missing_ok=True)
        return False

    def acquire(self) -> None:
        """Acquire the lock, retrying with backoff until ``timeout`` elapses."""

        deadline = self._clock() + self.timeout
        while not self.try_acquire():
            if self._clock() >= deadline:
                marker = self.read_marker()
                raise LockTimeoutError(
                    f"Timed out after {self.timeout:.1f}s waiting for lock {self.path}",
                    details={
                        "lock_path": self.path.as_posix(),
                        "timeout": self.timeout,
                        "holder_pid": marker.pid if marker else None,
                    },
                )
            self._sleep(self.backoff)
        LOGGER.debug("Acquired lock %s", self.path)

    def release(self) -> None:
        """Release the lock if this instance still owns the marker."""

        token = self._token
        if token is None:
            return
        self._token = None
        marker = self.read_marker()
        if marker is None:
            return
        if marker.token != token:
            LOGGER.warning("Lock %s was taken over by another owner; leaving it in place", self.path)
            return
        self.path.unlink(missing_ok=True)
        LOGGER.debug("Released lock %s", self.path)

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


__all__ = [
    "DEFAULT_BACKOFF",
    "DEFAULT_STALE_AFTER",
    "DEFAULT_TIMEOUT",
    "LockMarker",
    "SessionLock",
]
