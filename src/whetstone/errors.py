"""Typed error taxonomy shared by the store, workspace, and evaluation layers.

Every failure that can reach a caller is described by an :class:`ErrorCode`.
Codes are grouped into coarse :class:`ErrorCategory` buckets so that automated
callers can branch on the kind of problem (retry on concurrency, stop on
threshold, ...) without matching individual codes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping


class ErrorCategory(str, Enum):
    """Coarse classification of orchestrator failures."""

    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    RESOURCE = "resource-lifecycle"
    CONCURRENCY = "concurrency"
    EXECUTION = "execution"
    THRESHOLD = "threshold"
    SELECTION = "selection"
    STATE = "state"


class ErrorCode(str, Enum):
    """Machine-readable failure codes."""

    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    ITERATION_NOT_FOUND = "ITERATION_NOT_FOUND"
    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
    SESSION_EXISTS = "SESSION_EXISTS"
    SESSION_ACTIVE = "SESSION_ACTIVE"
    SESSION_TERMINAL = "SESSION_TERMINAL"
    WORKSPACE_CREATE_FAILED = "WORKSPACE_CREATE_FAILED"
    WORKSPACE_REMOVE_FAILED = "WORKSPACE_REMOVE_FAILED"
    MERGE_FAILED = "MERGE_FAILED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    TEST_RUNNER_NOT_FOUND = "TEST_RUNNER_NOT_FOUND"
    TEST_RUN_FAILED = "TEST_RUN_FAILED"
    TEST_TIMEOUT = "TEST_TIMEOUT"
    NO_TESTS_DETECTED = "NO_TESTS_DETECTED"
    MAX_ITERATIONS_REACHED = "MAX_ITERATIONS_REACHED"
    SCORE_BELOW_THRESHOLD = "SCORE_BELOW_THRESHOLD"
    INSUFFICIENT_ATTEMPTS = "INSUFFICIENT_ATTEMPTS"
    NO_ATTEMPTS = "NO_ATTEMPTS"
    NO_SCORED_ATTEMPTS = "NO_SCORED_ATTEMPTS"
    UNKNOWN_STRATEGY = "UNKNOWN_STRATEGY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    ATTEMPT_REQUIRED = "ATTEMPT_REQUIRED"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: Dict[ErrorCode, ErrorCategory] = {
    ErrorCode.SESSION_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.ITERATION_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.ATTEMPT_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.SESSION_EXISTS: ErrorCategory.CONFLICT,
    ErrorCode.SESSION_ACTIVE: ErrorCategory.CONFLICT,
    ErrorCode.SESSION_TERMINAL: ErrorCategory.CONFLICT,
    ErrorCode.WORKSPACE_CREATE_FAILED: ErrorCategory.RESOURCE,
    ErrorCode.WORKSPACE_REMOVE_FAILED: ErrorCategory.RESOURCE,
    ErrorCode.MERGE_FAILED: ErrorCategory.RESOURCE,
    ErrorCode.PERSISTENCE_FAILED: ErrorCategory.RESOURCE,
    ErrorCode.LOCK_TIMEOUT: ErrorCategory.CONCURRENCY,
    ErrorCode.TEST_RUNNER_NOT_FOUND: ErrorCategory.EXECUTION,
    ErrorCode.TEST_RUN_FAILED: ErrorCategory.EXECUTION,
    ErrorCode.TEST_TIMEOUT: ErrorCategory.EXECUTION,
    ErrorCode.NO_TESTS_DETECTED: ErrorCategory.EXECUTION,
    ErrorCode.MAX_ITERATIONS_REACHED: ErrorCategory.THRESHOLD,
    ErrorCode.SCORE_BELOW_THRESHOLD: ErrorCategory.THRESHOLD,
    ErrorCode.INSUFFICIENT_ATTEMPTS: ErrorCategory.THRESHOLD,
    ErrorCode.NO_ATTEMPTS: ErrorCategory.SELECTION,
    ErrorCode.NO_SCORED_ATTEMPTS: ErrorCategory.SELECTION,
    ErrorCode.UNKNOWN_STRATEGY: ErrorCategory.SELECTION,
    ErrorCode.INVALID_TRANSITION: ErrorCategory.STATE,
    ErrorCode.INVARIANT_VIOLATION: ErrorCategory.STATE,
    ErrorCode.ATTEMPT_REQUIRED: ErrorCategory.STATE,
}


class WhetstoneError(RuntimeError):
    """Base class for failures that carry a structured error code."""

    default_code: ErrorCode = ErrorCode.INVARIANT_VIOLATION

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable view of the error."""

        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "details": dict(self.details),
        }


class SessionNotFoundError(WhetstoneError):
    default_code = ErrorCode.SESSION_NOT_FOUND


class SessionConflictError(WhetstoneError):
    """Raised for conflicting creates and operations on active/terminal sessions."""

    default_code = ErrorCode.SESSION_EXISTS


class StateTransitionError(WhetstoneError):
    default_code = ErrorCode.INVALID_TRANSITION


class InvariantError(WhetstoneError):
    default_code = ErrorCode.INVARIANT_VIOLATION


class LockTimeoutError(WhetstoneError):
    default_code = ErrorCode.LOCK_TIMEOUT


class WorkspaceError(WhetstoneError):
    default_code = ErrorCode.WORKSPACE_CREATE_FAILED


class TestRunnerError(WhetstoneError):
    __test__ = False  # keep pytest from collecting this class
    default_code = ErrorCode.TEST_RUN_FAILED


class TestTimeoutError(TestRunnerError):
    __test__ = False
    default_code = ErrorCode.TEST_TIMEOUT


class NoTestsDetectedError(TestRunnerError):
    default_code = ErrorCode.NO_TESTS_DETECTED


class SelectionError(WhetstoneError):
    default_code = ErrorCode.NO_ATTEMPTS


class ThresholdError(WhetstoneError):
    default_code = ErrorCode.SCORE_BELOW_THRESHOLD


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "InvariantError",
    "LockTimeoutError",
    "NoTestsDetectedError",
    "SelectionError",
    "SessionConflictError",
    "SessionNotFoundError",
    "StateTransitionError",
    "TestRunnerError",
    "TestTimeoutError",
    "ThresholdError",
    "WhetstoneError",
    "WorkspaceError",
]
