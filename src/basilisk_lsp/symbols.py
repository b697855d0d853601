from __future__ import annotations

import re
from dataclasses import dataclass

from lsprotocol.types import DocumentSymbol, Location, Position, Range, SymbolKind

from basilisk_lsp.heuristics import brace_positions
from basilisk_lsp.language import BUILTIN_FUNCTIONS, CONTROL_KEYWORDS, FIELD_TYPES

_EVENT_RE = re.compile(r"^\s*event\s+(\w+)\s*\(([^)]*)\)\s*\{?")
_FUNCTION_RE = re.compile(r"^(?:static\s+)?(?:inline\s+)?(\w+(?:\s*\*)?)\s+(\w+)\s*\(([^)]*)\)\s*\{?$")
_FIELD_RE = re.compile(
    r"^\s*(face\s+vector|vertex\s+scalar|vertex\s+vector|scalar|vector|tensor|symmetric\s+tensor)\s+([^;]+);"
)
_FIELD_NAME_RE = re.compile(r"(\w+)\s*\[")
_GLOBAL_RE = re.compile(
    r"^(?:static\s+)?(?:const\s+)?(double|int|float|char|long|short|unsigned|size_t)\s+(\w+)\s*(?:=|;)"
)
_TYPEDEF_STRUCT_RE = re.compile(r"^\s*typedef\s+struct\s*\w*\s*\{")
_STRUCT_CLOSE_RE = re.compile(r"}\s*(\w+)\s*;")
_DEFINE_RE = re.compile(r"^\s*#define\s+(\w+)(?:\(([^)]*)\))?\s+(.*)")
_ENUM_RE = re.compile(r"^\s*(?:typedef\s+)?enum\s*(\w*)\s*\{")
_WORD_CHAR_RE = re.compile(r"\w")

_C_KEYWORDS = frozenset(
    {
        "if", "else", "for", "while", "do", "switch", "case", "default",
        "break", "continue", "return", "goto", "sizeof", "typedef",
        "struct", "union", "enum", "static", "const", "volatile",
        "extern", "register", "auto", "inline", "restrict",
    }
)


@dataclass
class SymbolRecord:
    """A flattened symbol with the doc comment found above its declaration."""

    name: str
    kind: SymbolKind
    detail: str
    location: Location
    documentation: str | None = None
    container_name: str | None = None


@dataclass
class _Extracted:
    symbol: DocumentSymbol
    documentation: str | None
    children: list["_Extracted"]


def _is_keyword(word: str) -> bool:
    return word in _C_KEYWORDS or word in CONTROL_KEYWORDS


def _is_builtin_or_keyword(word: str) -> bool:
    return _is_keyword(word) or word in BUILTIN_FUNCTIONS or word in FIELD_TYPES


def _doc_comment(lines: list[str], line_number: int) -> str | None:
    index = line_number - 1
    while index >= 0 and not lines[index].strip():
        index -= 1
    if index < 0 or "*/" not in lines[index]:
        return None
    start = index
    while start >= 0:
        if "/**" in lines[start] or "/*!" in lines[start]:
            break
        if "/*" in lines[start]:
            return None
        start -= 1
    if start < 0:
        return None
    raw = lines[start : index + 1]
    cleaned: list[str] = []
    for offset, line in enumerate(raw):
        value = line
        if offset == 0:
            value = re.sub(r"^\s*/\*+!?", "", value)
        if offset == len(raw) - 1:
            value = re.sub(r"\*/\s*$", "", value)
        cleaned.append(re.sub(r"^\s*\*\s?", "", value))
    doc = "\n".join(cleaned).strip()
    return doc or None


def _make(
    name: str, kind: SymbolKind, detail: str, line: int, start: int, length: int, documentation: str | None
) -> _Extracted:
    start = max(0, start)
    selection_end = start + len(name)
    symbol = DocumentSymbol(
        name=name,
        kind=kind,
        detail=detail,
        range=Range(start=Position(line=line, character=0), end=Position(line=line, character=max(length, selection_end))),
        selection_range=Range(start=Position(line=line, character=start), end=Position(line=line, character=selection_end)),
        children=[],
    )
    return _Extracted(symbol=symbol, documentation=documentation, children=[])


def _extract(text: str) -> list[_Extracted]:
    lines = text.split("\n")
    brace_lines: dict[int, list[str]] = {}
    for line, _column, brace in brace_positions(text):
        brace_lines.setdefault(line, []).append(brace)

    symbols: list[_Extracted] = []
    depth = 0
    container: _Extracted | None = None
    for line_number, line in enumerate(lines):
        for brace in brace_lines.get(line_number, ()):
            if brace == "{":
                depth += 1
            else:
                depth -= 1
                if depth == 0:
                    container = None

        match = _EVENT_RE.match(line)
        if match:
            entry = _make(
                match.group(1),
                SymbolKind.Event,
                f"event ({match.group(2).strip()})",
                line_number,
                match.start(),
                len(line),
                _doc_comment(lines, line_number),
            )
            symbols.append(entry)
            container = entry
            continue

        match = _FUNCTION_RE.match(line)
        if match and not _is_keyword(match.group(2)):
            return_type, name, params = match.group(1), match.group(2), match.group(3)
            entry = _make(
                name,
                SymbolKind.Function,
                f"{return_type} {name}({params.strip()})",
                line_number,
                0,
                len(line),
                _doc_comment(lines, line_number),
            )
            symbols.append(entry)
            container = entry
            continue

        match = _FIELD_RE.match(line)
        if match:
            field_type = match.group(1)
            documentation = _doc_comment(lines, line_number)
            for declaration in match.group(2).split(","):
                name_match = _FIELD_NAME_RE.search(declaration.strip())
                if not name_match:
                    continue
                name = name_match.group(1)
                entry = _make(
                    name, SymbolKind.Field, field_type, line_number, line.find(name), len(line), documentation
                )
                if container is not None:
                    container.children.append(entry)
                else:
                    symbols.append(entry)
            continue

        match = _GLOBAL_RE.match(line)
        if match and depth == 0:
            var_type, name = match.group(1), match.group(2)
            if not _is_builtin_or_keyword(name):
                symbols.append(
                    _make(
                        name,
                        SymbolKind.Variable,
                        var_type,
                        line_number,
                        line.find(name),
                        len(line),
                        _doc_comment(lines, line_number),
                    )
                )
            continue

        if _TYPEDEF_STRUCT_RE.match(line):
            struct = _typedef_struct(lines, line_number)
            if struct is not None:
                symbols.append(struct)
            continue

        match = _DEFINE_RE.match(line)
        if match:
            name, params = match.group(1), match.group(2)
            detail = f"#define {name}({params})" if params is not None else f"#define {name}"
            symbols.append(
                _make(
                    name,
                    SymbolKind.Function if params is not None else SymbolKind.Constant,
                    detail,
                    line_number,
                    line.find(name),
                    len(line),
                    _doc_comment(lines, line_number),
                )
            )
            continue

        match = _ENUM_RE.match(line)
        if match:
            symbols.append(
                _make(
                    match.group(1) or "anonymous",
                    SymbolKind.Enum,
                    "enum",
                    line_number,
                    0,
                    len(line),
                    _doc_comment(lines, line_number),
                )
            )
    return symbols


def _typedef_struct(lines: list[str], line_number: int) -> _Extracted | None:
    depth = 1
    for closing in range(line_number + 1, len(lines)):
        depth += lines[closing].count("{") - lines[closing].count("}")
        if depth > 0:
            continue
        match = _STRUCT_CLOSE_RE.search(lines[closing])
        if not match:
            return None
        entry = _make(
            match.group(1),
            SymbolKind.Struct,
            "typedef struct",
            line_number,
            0,
            len(lines[line_number]),
            _doc_comment(lines, line_number),
        )
        entry.symbol.range = Range(
            start=Position(line=line_number, character=0),
            end=Position(line=closing, character=len(lines[closing])),
        )
        return entry
    return None


def _to_document_symbol(entry: _Extracted) -> DocumentSymbol:
    entry.symbol.children = [_to_document_symbol(child) for child in entry.children]
    return entry.symbol


def _flatten(entries: list[_Extracted], uri: str, container_name: str | None = None) -> list[SymbolRecord]:
    records: list[SymbolRecord] = []
    for entry in entries:
        records.append(
            SymbolRecord(
                name=entry.symbol.name,
                kind=entry.symbol.kind,
                detail=entry.symbol.detail or "",
                location=Location(uri=uri, range=entry.symbol.selection_range),
                documentation=entry.documentation,
                container_name=container_name,
            )
        )
        records.extend(_flatten(entry.children, uri, entry.symbol.name))
    return records


def extract_symbols(text: str) -> list[DocumentSymbol]:
    return [_to_document_symbol(entry) for entry in _extract(text)]


class SymbolIndex:
    """Per-URI outline plus a flat name index used for workspace-wide lookups."""

    def __init__(self) -> None:
        self._document_symbols: dict[str, list[DocumentSymbol]] = {}
        self._records: dict[str, list[SymbolRecord]] = {}

    def index_document(self, uri: str, text: str) -> list[DocumentSymbol]:
        entries = _extract(text)
        self._records[uri] = _flatten(entries, uri)
        symbols = [_to_document_symbol(entry) for entry in entries]
        self._document_symbols[uri] = symbols
        return symbols

    def document_symbols(self, uri: str) -> list[DocumentSymbol]:
        return list(self._document_symbols.get(uri, []))

    def find_symbols(self, query: str) -> list[SymbolRecord]:
        needle = query.lower()
        return [
            record
            for records in self._records.values()
            for record in records
            if needle in record.name.lower()
        ]

    def find_definition(self, name: str) -> SymbolRecord | None:
        for records in self._records.values():
            for record in records:
                if record.name == name:
                    return record
        return None

    def remove_document(self, uri: str) -> None:
        self._records.pop(uri, None)
        self._document_symbols.pop(uri, None)

    def clear(self) -> None:
        self._records.clear()
        self._document_symbols.clear()


def word_at_position(text: str, position: Position) -> tuple[str, Range] | None:
    lines = text.split("\n")
    if position.line < 0 or position.line >= len(lines):
        return None
    line = lines[position.line]
    column = min(max(position.character, 0), len(line))
    start = column
    end = column
    while start > 0 and _WORD_CHAR_RE.match(line[start - 1]):
        start -= 1
    while end < len(line) and _WORD_CHAR_RE.match(line[end]):
        end += 1
    if start == end:
        return None
    return line[start:end], Range(
        start=Position(line=position.line, character=start),
        end=Position(line=position.line, character=end),
    )


def find_references(text: str, name: str) -> list[Range]:
    pattern = re.compile(rf"\b{re.escape(name)}\b")
    ranges: list[Range] = []
    for line_number, line in enumerate(text.split("\n")):
        for match in pattern.finditer(line):
            ranges.append(
                Range(
                    start=Position(line=line_number, character=match.start()),
                    end=Position(line=line_number, character=match.end()),
                )
            )
    return ranges
