"""Tagged result values returned by orchestrator operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Literal, TypeVar, Union

from .errors import ErrorCode, WhetstoneError

T = TypeVar("T")


@dataclass(slots=True)
class Success(Generic[T]):
    """Successful operation carrying its payload."""

    data: T
    message: str = ""
    next_steps: List[str] = field(default_factory=list)
    ok: Literal[True] = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "data": self.data,
            "next_steps": list(self.next_steps),
        }


@dataclass(slots=True)
class Failure:
    """Failed operation carrying a typed error."""

    error: WhetstoneError
    next_steps: List[str] = field(default_factory=list)
    ok: Literal[False] = False

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "message": self.error.message,
            "error": self.error.to_dict(),
            "next_steps": list(self.next_steps),
        }


Result = Union[Success[T], Failure]


__all__ = ["Failure", "Result", "Success"]
