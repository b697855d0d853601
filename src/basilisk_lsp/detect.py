from __future__ import annotations

import re
from typing import Sequence

from lsprotocol.types import Diagnostic

from basilisk_lsp.language import CONSTANTS, CONTROL_KEYWORDS, FIELD_TYPES, LOOP_VARIABLES

_BASILISK_TOKEN_RE = re.compile(
    r"\b(" + "|".join(re.escape(token) for token in (*CONTROL_KEYWORDS, *FIELD_TYPES, *CONSTANTS, *LOOP_VARIABLES)) + r")\b"
)
_BASILISK_INCLUDE_RE = re.compile(
    r"#\s*include\s*[<\"](?:(?:grid|navier-stokes)/[\w-]+|two-phase|two-phase-generic|vof|run|events|common"
    r"|utils|embed|curvature|fractions|conservation|view|output|draw)\.h"
)

# clangd errors that Basilisk syntax produces on otherwise valid code.
NOISE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"unknown type name", re.IGNORECASE),
    re.compile(r"a type specifier is required", re.IGNORECASE),
    re.compile(r"expected ';' after top level declarator", re.IGNORECASE),
    re.compile(r"definition of variable with array type needs an explicit size", re.IGNORECASE),
    re.compile(r"use of undeclared identifier", re.IGNORECASE),
)


def _looks_basilisk(text: str) -> bool:
    return bool(_BASILISK_TOKEN_RE.search(text) or _BASILISK_INCLUDE_RE.search(text))


def is_likely_basilisk_text(text: str) -> bool:
    return _looks_basilisk(text)


def filter_clangd_diagnostics(diagnostics: Sequence[Diagnostic], text: str) -> list[Diagnostic]:
    """Drop clangd noise on lines that use Basilisk constructs.

    Diagnostics on plain C lines, or in text with no Basilisk markers at all,
    are kept untouched.
    """
    if not is_likely_basilisk_text(text):
        return list(diagnostics)
    lines = text.split("\n")
    kept: list[Diagnostic] = []
    for diagnostic in diagnostics:
        line_number = diagnostic.range.start.line
        line = lines[line_number] if 0 <= line_number < len(lines) else ""
        if _looks_basilisk(line) and any(pattern.search(diagnostic.message) for pattern in NOISE_PATTERNS):
            continue
        kept.append(diagnostic)
    return kept
