"""Code-quality signals for the lines an iteration added.

Only ``+`` lines of a unified diff are inspected.  The report is advisory: it
is rendered into the directive once the tests pass and never changes the hard
score.  Structural checks (function size, nesting, debug statements, ``Any``
annotations, magic numbers) apply to Python files; line length and
TODO/FIXME markers apply to every file.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..state.schema import QualityReport, QualitySignal, Severity, SignalKind

LOGGER = logging.getLogger(__name__)

LARGE_FUNCTION_THRESHOLD = 50
LONG_LINE_THRESHOLD = 120
NESTING_THRESHOLD = 4
INDENT_WIDTH = 4

SIGNAL_WEIGHTS: Dict[SignalKind, int] = {
    SignalKind.LARGE_FUNCTION: 10,
    SignalKind.DEEP_NESTING: 8,
    SignalKind.ANY_TYPE: 5,
    SignalKind.LONG_LINE: 3,
    SignalKind.DEBUG_PRINT: 2,
    SignalKind.MAGIC_NUMBER: 2,
    SignalKind.TODO_COMMENT: 1,
}

_FILE_HEADER = re.compile(r"^diff --git a/.* b/(.+)$")
_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@")
_DEF = re.compile(r"^(\s*)(?:async\s+)?def\s+(\w+)")
_DEBUG = re.compile(r"(?<![\w.])(?:print|breakpoint)\(|\bpdb\.set_trace\(")
_TODO = re.compile(r"\b(?:TODO|FIXME)\b")
_ANY = re.compile(r"(?::|->)\s*Any\b")
_MAGIC = re.compile(r"(?<![\w.])(\d{2,})(?![\w.])")
_CONSTANT = re.compile(r"^\s*[A-Z][A-Z0-9_]*\s*(?::[^=]+)?=")
_TEST_FILE = re.compile(r"(^|/)(tests?/|test_[^/]*\.py$|[^/]*_test\.py$|conftest\.py$)")


def quality_score(signals: List[QualitySignal]) -> int:
    """100 minus the weight of every signal, floored at 0."""

    penalty = sum(SIGNAL_WEIGHTS.get(signal.kind, 0) for signal in signals)
    return max(0, 100 - penalty)


def _indent(text: str) -> int:
    expanded = text.expandtabs(INDENT_WIDTH)
    return len(expanded) - len(expanded.lstrip(" "))


@dataclass(slots=True)
class _Function:
    name: str
    indent: int
    line: Optional[int]
    added: int = 0
    nesting_flagged: bool = False


class QualityAnalyzer:
    """Scan a unified diff and report quality signals for its added lines."""

    def __init__(
        self,
        *,
        large_function: int = LARGE_FUNCTION_THRESHOLD,
        long_line: int = LONG_LINE_THRESHOLD,
        nesting: int = NESTING_THRESHOLD,
    ) -> None:
        self.large_function = large_function
        self.long_line = long_line
        self.nesting = nesting

    def analyze(self, diff: str) -> QualityReport:
        signals: List[QualitySignal] = []
        current_file = ""
        line_number: Optional[int] = None
        function: Optional[_Function] = None
        nesting_flagged = False

        def close_function() -> None:
            nonlocal function
            if function is not None:
                self._check_function_size(current_file, function, signals)
            function = None

        for raw in diff.splitlines():
            header = _FILE_HEADER.match(raw)
            if header:
                close_function()
                current_file = header.group(1)
                line_number = None
                nesting_flagged = False
                continue
            hunk = _HUNK_HEADER.match(raw)
            if hunk:
                close_function()
                line_number = int(hunk.group(1))
                nesting_flagged = False
                continue
            if raw.startswith("+++") or raw.startswith("---"):
                continue
            if raw.startswith(" "):
                if line_number is not None:
                    line_number += 1
                continue
            if not raw.startswith("+"):
                continue

            content = raw[1:]
            lineno = line_number
            if line_number is not None:
                line_number += 1

            if len(content) > self.long_line:
                signals.append(
                    QualitySignal(
                        kind=SignalKind.LONG_LINE,
                        severity=Severity.WARNING,
                        message=f"Line exceeds {self.long_line} characters ({len(content)})",
                        file=current_file,
                        line=lineno,
                        suggestion="Break the expression over several lines",
                    )
                )
            if _TODO.search(content):
                signals.append(
                    QualitySignal(
                        kind=SignalKind.TODO_COMMENT,
                        severity=Severity.INFO,
                        message="TODO/FIXME comment found",
                        file=current_file,
                        line=lineno,
                        suggestion="Resolve it or track it in the issue tracker",
                    )
                )
            if not current_file.endswith(".py") or not content.strip():
                continue

            indent = _indent(content)
            definition = _DEF.match(content)
            if function is not None and indent <= function.indent and not definition:
                close_function()
            if definition and (function is None or indent <= function.indent):
                close_function()
                function = _Function(name=definition.group(2), indent=indent, line=lineno)
            if function is not None:
                function.added += 1

            depth = indent // INDENT_WIDTH
            already_flagged = function.nesting_flagged if function is not None else nesting_flagged
            if depth > self.nesting and not already_flagged:
                signals.append(
                    QualitySignal(
                        kind=SignalKind.DEEP_NESTING,
                        severity=Severity.WARNING,
                        message=f"Nesting depth of {depth} exceeds {self.nesting}",
                        file=current_file,
                        line=lineno,
                        suggestion="Extract the nested logic into a helper or return early",
                    )
                )
                if function is not None:
                    function.nesting_flagged = True
                else:
                    nesting_flagged = True

            self._check_smells(content, current_file, lineno, signals)

        close_function()
        report = QualityReport(signals=signals, score=quality_score(signals))
        LOGGER.debug("Quality analysis found %d signal(s), score %d", len(signals), report.score)
        return report

    def _check_function_size(self, file: str, function: _Function, signals: List[QualitySignal]) -> None:
        if function.added <= self.large_function:
            return
        signals.append(
            QualitySignal(
                kind=SignalKind.LARGE_FUNCTION,
                severity=Severity.WARNING,
                message=f"Function '{function.name}' has {function.added} added lines",
                file=file,
                line=function.line,
                suggestion="Split it into smaller, focused functions",
            )
        )

    def _check_smells(self, content: str, file: str, line: Optional[int], signals: List[QualitySignal]) -> None:
        code = content.split("#", 1)[0]
        if _DEBUG.search(code):
            signals.append(
                QualitySignal(
                    kind=SignalKind.DEBUG_PRINT,
                    severity=Severity.INFO,
                    message="Debug statement detected",
                    file=file,
                    line=line,
                    suggestion="Use the module logger or remove the statement",
                )
            )
        if _ANY.search(code):
            signals.append(
                QualitySignal(
                    kind=SignalKind.ANY_TYPE,
                    severity=Severity.WARNING,
                    message="Annotation uses 'Any'",
                    file=file,
                    line=line,
                    suggestion="Replace 'Any' with a concrete type",
                )
            )
        if _TEST_FILE.search(file) or _CONSTANT.match(code):
            return
        magic = _MAGIC.search(code)
        if magic and magic.group(1) != "100":
            signals.append(
                QualitySignal(
                    kind=SignalKind.MAGIC_NUMBER,
                    severity=Severity.INFO,
                    message=f"Magic number '{magic.group(1)}' detected",
                    file=file,
                    line=line,
                    suggestion="Extract the number into a named constant",
                )
            )


__all__ = [
    "LARGE_FUNCTION_THRESHOLD",
    "LONG_LINE_THRESHOLD",
    "NESTING_THRESHOLD",
    "QualityAnalyzer",
    "SIGNAL_WEIGHTS",
    "quality_score",
]
