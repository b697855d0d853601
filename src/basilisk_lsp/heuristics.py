from __future__ import annotations

import re

from lsprotocol.types import Diagnostic, DiagnosticSeverity, Position, Range

HEURISTIC_SOURCE = "basilisk-lsp"

_BARE_FOREACH_RE = re.compile(r"^\s*foreach\s*\([^)]*\)\s*$")
_FIELD_WITHOUT_BRACKETS_RE = re.compile(r"\b(scalar|vector)\s+(\w+)\s*;")
_EVENT_RE = re.compile(r"^\s*event\s+\w+\s+[^(]")
_EVENT_WITH_PARENS_RE = re.compile(r"^\s*event\s+\w+\s*\(")


def _diagnostic(line: int, start: int, end: int, severity: DiagnosticSeverity, message: str) -> Diagnostic:
    return Diagnostic(
        range=Range(start=Position(line=line, character=start), end=Position(line=line, character=end)),
        severity=severity,
        source=HEURISTIC_SOURCE,
        message=message,
    )


def brace_positions(text: str) -> list[tuple[int, int, str]]:
    """Return ``(line, column, brace)`` for every brace outside strings and comments."""
    positions: list[tuple[int, int, str]] = []
    in_block_comment = False
    for line_number, line in enumerate(text.split("\n")):
        in_string = False
        in_char = False
        escaped = False
        index = 0
        while index < len(line):
            char = line[index]
            following = line[index + 1] if index + 1 < len(line) else ""
            if in_block_comment:
                if char == "*" and following == "/":
                    in_block_comment = False
                    index += 1
            elif escaped:
                escaped = False
            elif char == "\\" and (in_string or in_char):
                escaped = True
            elif in_string:
                in_string = char != '"'
            elif in_char:
                in_char = char != "'"
            elif char == "/" and following == "/":
                break
            elif char == "/" and following == "*":
                in_block_comment = True
                index += 1
            elif char == '"':
                in_string = True
            elif char == "'":
                in_char = True
            elif char in "{}":
                positions.append((line_number, index, char))
            index += 1
    return positions


def _check_foreach_braces(lines: list[str], index: int) -> Diagnostic | None:
    line = lines[index]
    if not _BARE_FOREACH_RE.match(line):
        return None
    if index + 1 >= len(lines):
        return None
    next_line = lines[index + 1].strip()
    if not next_line or next_line.startswith("{") or next_line.endswith(";"):
        return None
    return _diagnostic(
        index,
        0,
        len(line),
        DiagnosticSeverity.Hint,
        "Consider using braces {} for foreach loops for clarity",
    )


def _check_brace_balance(text: str) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    open_braces: list[tuple[int, int]] = []
    for line, column, brace in brace_positions(text):
        if brace == "{":
            open_braces.append((line, column))
        elif open_braces:
            open_braces.pop()
        else:
            diagnostics.append(
                _diagnostic(line, column, column + 1, DiagnosticSeverity.Hint, "Unmatched closing brace '}'")
            )
    for line, column in open_braces:
        diagnostics.append(
            _diagnostic(line, column, column + 1, DiagnosticSeverity.Hint, "Unclosed brace '{'")
        )
    return diagnostics


def quick_validate(text: str) -> list[Diagnostic]:
    """Cheap line-level checks for common Basilisk mistakes; never spawns anything."""
    diagnostics: list[Diagnostic] = []
    lines = text.split("\n")
    for index, line in enumerate(lines):
        foreach_hint = _check_foreach_braces(lines, index)
        if foreach_hint is not None:
            diagnostics.append(foreach_hint)

        match = _FIELD_WITHOUT_BRACKETS_RE.search(line)
        if match:
            diagnostics.append(
                _diagnostic(
                    index,
                    match.start(),
                    match.end(),
                    DiagnosticSeverity.Warning,
                    f"Field '{match.group(2)}' should be declared with [], "
                    f"e.g., '{match.group(1)} {match.group(2)}[]'",
                )
            )

        if _EVENT_RE.match(line) and not _EVENT_WITH_PARENS_RE.match(line):
            diagnostics.append(
                _diagnostic(
                    index,
                    0,
                    len(line),
                    DiagnosticSeverity.Error,
                    "Event definition requires parentheses with timing parameters",
                )
            )
    diagnostics.extend(_check_brace_balance(text))
    return diagnostics
