from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum, IntFlag

from lsprotocol.types import SemanticTokens, SemanticTokensLegend

from basilisk_lsp.language import BUILTIN_FUNCTIONS


class TokenType(IntEnum):
    KEYWORD = 0
    TYPE = 1
    FUNCTION = 2
    VARIABLE = 3
    PARAMETER = 4
    PROPERTY = 5
    NUMBER = 6
    STRING = 7
    COMMENT = 8
    OPERATOR = 9
    MACRO = 10
    NAMESPACE = 11
    EVENT = 12


class TokenModifier(IntFlag):
    NONE = 0
    DECLARATION = 1 << 0
    DEFINITION = 1 << 1
    READONLY = 1 << 2
    STATIC = 1 << 3
    DEPRECATED = 1 << 4
    MODIFICATION = 1 << 5
    DOCUMENTATION = 1 << 6


LEGEND = SemanticTokensLegend(
    token_types=[member.name.lower() for member in TokenType],
    token_modifiers=[member.name.lower() for member in TokenModifier if member.value],
)

_KEYWORD_RE = re.compile(
    r"\b(foreach|foreach_face|foreach_vertex|foreach_boundary|foreach_dimension|foreach_neighbor"
    r"|foreach_level|foreach_leaf|foreach_cell|foreach_child|foreach_block|event|reduction)\b"
)
_TYPE_RE = re.compile(r"\b(scalar|vector|tensor|face|vertex|coord|point|symmetric)\b")
_CALL_RE = re.compile(r"\b([a-zA-Z_]\w*)\s*\(")
_CONSTANT_RE = re.compile(r"\b(PI|M_PI|HUGE|nodata|true|false|NULL|N|L0|X0|Y0|Z0|DT|TOLERANCE)\b")
_LOOP_VARIABLE_RE = re.compile(
    r"\b(Delta|level|depth|point|child|neighbor|left|right|top|bottom|front|back)\b"
)
_MPI_RE = re.compile(r"\b(MPI_\w+|mpi_\w+|pid|npe)\b")
_DIRECTIVE_RE = re.compile(r"^\s*(#\w+)")

_BUILTINS = frozenset(BUILTIN_FUNCTIONS)


@dataclass(frozen=True)
class Token:
    line: int
    start: int
    length: int
    token_type: TokenType
    modifiers: TokenModifier = TokenModifier.NONE


def _line_tokens(line_number: int, line: str) -> list[Token]:
    tokens: list[Token] = []
    for match in _KEYWORD_RE.finditer(line):
        tokens.append(Token(line_number, match.start(), len(match.group(0)), TokenType.KEYWORD))
    for match in _TYPE_RE.finditer(line):
        tokens.append(Token(line_number, match.start(), len(match.group(0)), TokenType.TYPE))
    for match in _CALL_RE.finditer(line):
        if match.group(1) in _BUILTINS:
            tokens.append(Token(line_number, match.start(1), len(match.group(1)), TokenType.FUNCTION))
    for match in _CONSTANT_RE.finditer(line):
        tokens.append(
            Token(
                line_number,
                match.start(),
                len(match.group(0)),
                TokenType.VARIABLE,
                TokenModifier.READONLY,
            )
        )
    for match in _LOOP_VARIABLE_RE.finditer(line):
        tokens.append(Token(line_number, match.start(), len(match.group(0)), TokenType.PARAMETER))
    for match in _MPI_RE.finditer(line):
        tokens.append(Token(line_number, match.start(), len(match.group(0)), TokenType.NAMESPACE))
    match = _DIRECTIVE_RE.match(line)
    if match:
        tokens.append(Token(line_number, match.start(1), len(match.group(1)), TokenType.MACRO))
    return tokens


def scan_tokens(text: str) -> list[Token]:
    """Classify Basilisk tokens line by line.

    When two classes claim the same span the first-registered class wins, so
    ``point`` stays a type rather than a loop variable. Overlapping spans are
    dropped since the wire format cannot express them.
    """
    tokens: list[Token] = []
    for line_number, line in enumerate(text.split("\n")):
        if not line.strip():
            continue
        tokens.extend(_line_tokens(line_number, line))
    accepted: list[Token] = []
    for token in sorted(tokens, key=lambda item: (item.line, item.start)):
        if accepted:
            previous = accepted[-1]
            if previous.line == token.line and token.start < previous.start + previous.length:
                continue
        accepted.append(token)
    return accepted


def encode_tokens(tokens: list[Token]) -> list[int]:
    """Relative five-integer encoding of sorted, non-overlapping tokens."""
    data: list[int] = []
    previous_line = 0
    previous_start = 0
    for token in tokens:
        delta_line = token.line - previous_line
        delta_start = token.start - previous_start if delta_line == 0 else token.start
        data.extend([delta_line, delta_start, token.length, int(token.token_type), int(token.modifiers)])
        previous_line = token.line
        previous_start = token.start
    return data


def semantic_tokens(text: str) -> SemanticTokens:
    return SemanticTokens(data=encode_tokens(scan_tokens(text)))
