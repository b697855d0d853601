from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Iterable, Sequence, TypeVar

import attrs
from lsprotocol.converters import get_converter
from lsprotocol.types import (
    CompletionItem,
    CompletionList,
    DocumentSymbol,
    Hover,
    Location,
    LocationLink,
    MarkupContent,
    MarkupKind,
    SymbolInformation,
    WorkspaceSymbol,
)

from basilisk_lsp.json_types import JSONValue

logger = logging.getLogger(__name__)

T = TypeVar("T")

HOVER_SEPARATOR = "\n\n---\n\n"

_CONVERTER = get_converter()


class CompletionSource(StrEnum):
    CLANGD = "clangd"
    BASILISK = "basilisk"


@dataclass(frozen=True)
class TaggedCompletion:
    """Provenance wrapper carried through ``CompletionItem.data`` on the wire."""

    source: CompletionSource
    data: JSONValue = None

    def encode(self) -> dict[str, JSONValue]:
        return {"source": self.source.value, "data": self.data}

    @classmethod
    def decode(cls, payload: object) -> TaggedCompletion | None:
        if not isinstance(payload, dict):
            return None
        try:
            source = CompletionSource(payload.get("source"))
        except ValueError:
            return None
        return cls(source=source, data=payload.get("data"))


def tag_completion(item: CompletionItem, source: CompletionSource) -> CompletionItem:
    return attrs.evolve(item, data=TaggedCompletion(source=source, data=item.data).encode())


def untag_completion(item: CompletionItem) -> tuple[CompletionItem, CompletionSource | None]:
    """Strip the provenance wrapper, restoring the item's original ``data``."""
    tagged = TaggedCompletion.decode(item.data)
    if tagged is None:
        return item, None
    return attrs.evolve(item, data=tagged.data), tagged.source


def normalize_completion_result(
    result: CompletionList | Sequence[CompletionItem] | None,
) -> CompletionList:
    if result is None:
        return CompletionList(is_incomplete=False, items=[])
    if isinstance(result, CompletionList):
        return result
    return CompletionList(is_incomplete=False, items=list(result))


def merge_completions(
    clangd_result: CompletionList | Sequence[CompletionItem] | None,
    basilisk_items: Iterable[CompletionItem],
) -> CompletionList:
    clangd_list = normalize_completion_result(clangd_result)
    merged: list[CompletionItem] = []
    seen: set[str] = set()
    for source, items in (
        (CompletionSource.CLANGD, clangd_list.items),
        (CompletionSource.BASILISK, basilisk_items),
    ):
        for item in items:
            if item.label in seen:
                continue
            seen.add(item.label)
            merged.append(tag_completion(item, source))
    return CompletionList(is_incomplete=bool(clangd_list.is_incomplete), items=merged)


def tag_basilisk_completions(items: Iterable[CompletionItem]) -> list[CompletionItem]:
    return [tag_completion(item, CompletionSource.BASILISK) for item in items]


def _hover_text(contents: object) -> str:
    if isinstance(contents, MarkupContent):
        return contents.value
    if isinstance(contents, str):
        return contents
    if isinstance(contents, (list, tuple)):
        return "\n\n".join(part for part in (_hover_text(entry) for entry in contents) if part)
    language = getattr(contents, "language", None)
    value = getattr(contents, "value", None)
    if isinstance(language, str) and isinstance(value, str):
        return f"```{language}\n{value}\n```"
    return ""


def merge_hovers(primary: Hover | None, secondary: Hover | None) -> Hover | None:
    """Join two hovers into one markdown block, ``primary`` first.

    The primary hover's range wins.
    """
    if primary is None:
        return secondary
    if secondary is None:
        return primary
    sections = [text for text in (_hover_text(primary.contents), _hover_text(secondary.contents)) if text]
    return Hover(
        contents=MarkupContent(kind=MarkupKind.Markdown, value=HOVER_SEPARATOR.join(sections)),
        range=primary.range,
    )


def to_params(value: object) -> JSONValue:
    return _CONVERTER.unstructure(value)


def structure_result(value: JSONValue, target: type[T]) -> T | None:
    if value is None:
        return None
    try:
        return _CONVERTER.structure(value, target)
    except Exception as exc:
        logger.debug("Ignoring clangd result that is not a %s: %s", target.__name__, exc)
        return None


def _structure_each(values: Iterable[JSONValue], target: type[T]) -> list[T]:
    structured = (structure_result(value, target) for value in values)
    return [item for item in structured if item is not None]


def structure_completion_result(value: JSONValue) -> CompletionList | list[CompletionItem] | None:
    if isinstance(value, list):
        return _structure_each(value, CompletionItem)
    if isinstance(value, dict):
        return structure_result(value, CompletionList)
    return None


def structure_locations(value: JSONValue) -> list[Location | LocationLink]:
    entries = value if isinstance(value, list) else [value]
    locations: list[Location | LocationLink] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        target: type[Location] | type[LocationLink] = LocationLink if "targetUri" in entry else Location
        location = structure_result(entry, target)
        if location is not None:
            locations.append(location)
    return locations


def structure_document_symbols(value: JSONValue) -> list[DocumentSymbol] | list[SymbolInformation]:
    """clangd answers with either the hierarchical or the flat symbol shape."""
    if not isinstance(value, list):
        return []
    if value and all(isinstance(entry, dict) and "location" in entry for entry in value):
        return _structure_each(value, SymbolInformation)
    return _structure_each(value, DocumentSymbol)


def structure_workspace_symbols(value: JSONValue) -> list[SymbolInformation | WorkspaceSymbol]:
    if not isinstance(value, list):
        return []
    symbols: list[SymbolInformation | WorkspaceSymbol] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        location = entry.get("location")
        target: type[SymbolInformation] | type[WorkspaceSymbol] = (
            SymbolInformation if isinstance(location, dict) and "range" in location else WorkspaceSymbol
        )
        symbol = structure_result(entry, target)
        if symbol is not None:
            symbols.append(symbol)
    return symbols
