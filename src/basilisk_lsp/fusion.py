from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

import attrs
from lsprotocol.types import Diagnostic

from basilisk_lsp.detect import filter_clangd_diagnostics
from basilisk_lsp.settings import BasiliskSettings, DiagnosticsMode

logger = logging.getLogger(__name__)

CLANGD_SOURCE = "clangd"

PublishCallback = Callable[[str, list[Diagnostic]], None]


@dataclass
class DocumentState:
    """Everything the server tracks for one open document.

    ``version`` is our own edit counter and is the staleness marker for local
    validation cycles; ``client_version`` is whatever the editor last sent and
    is compared against versioned clangd pushes.
    """

    uri: str
    text: str
    language_id: str = "c"
    client_version: int = 0
    version: int = 0
    local_diagnostics: list[Diagnostic] = field(default_factory=list)
    clangd_diagnostics: list[Diagnostic] = field(default_factory=list)
    clangd_generation: int = 0
    settings_task: asyncio.Task[BasiliskSettings] | None = None


def _key(diagnostic: Diagnostic) -> tuple[object, ...]:
    start = diagnostic.range.start
    end = diagnostic.range.end
    return (
        start.line,
        start.character,
        end.line,
        end.character,
        diagnostic.severity,
        diagnostic.message,
        diagnostic.source,
    )


def dedupe_diagnostics(diagnostics: Iterable[Diagnostic]) -> list[Diagnostic]:
    seen: set[tuple[object, ...]] = set()
    unique: list[Diagnostic] = []
    for diagnostic in diagnostics:
        key = _key(diagnostic)
        if key in seen:
            continue
        seen.add(key)
        unique.append(diagnostic)
    return unique


def fuse(
    clangd: Sequence[Diagnostic], local: Sequence[Diagnostic], max_problems: int
) -> list[Diagnostic]:
    return dedupe_diagnostics([*clangd, *local])[: max(0, max_problems)]


def normalize_clangd_source(diagnostics: Iterable[Diagnostic]) -> list[Diagnostic]:
    return [
        diagnostic if diagnostic.source else attrs.evolve(diagnostic, source=CLANGD_SOURCE)
        for diagnostic in diagnostics
    ]


def apply_diagnostics_mode(
    diagnostics: Sequence[Diagnostic], mode: DiagnosticsMode, text: str | None
) -> list[Diagnostic]:
    if mode is DiagnosticsMode.NONE:
        return []
    if mode is DiagnosticsMode.FILTERED and text is not None:
        return filter_clangd_diagnostics(diagnostics, text)
    return list(diagnostics)


class DiagnosticFusion:
    """Per-document diagnostic state shared by the qcc path and the clangd path.

    Both paths are split into ``begin_*`` (capture a marker) and ``commit_*``
    (store and maybe publish if the marker is still current), so whichever
    finishes last wins only when it is not stale.
    """

    def __init__(self, publish: PublishCallback) -> None:
        self._publish = publish
        self._documents: dict[str, DocumentState] = {}

    def get(self, uri: str) -> DocumentState | None:
        return self._documents.get(uri)

    def documents(self) -> list[DocumentState]:
        return list(self._documents.values())

    def open(self, uri: str, text: str, *, language_id: str = "c", client_version: int = 0) -> DocumentState:
        previous = self._documents.get(uri)
        state = DocumentState(
            uri=uri,
            text=text,
            language_id=language_id,
            client_version=client_version,
            version=0 if previous is None else previous.version + 1,
        )
        self._documents[uri] = state
        return state

    def change(self, uri: str, text: str, *, client_version: int | None = None) -> DocumentState | None:
        state = self._documents.get(uri)
        if state is None:
            logger.debug("Ignoring change for unopened document %s", uri)
            return None
        state.text = text
        state.version += 1
        if client_version is not None:
            state.client_version = client_version
        return state

    def close(self, uri: str) -> None:
        self._documents.pop(uri, None)
        self._publish(uri, [])

    def begin_local(self, uri: str) -> int | None:
        state = self._documents.get(uri)
        return None if state is None else state.version

    def commit_local(
        self, uri: str, version: int, diagnostics: Sequence[Diagnostic], *, max_problems: int
    ) -> bool:
        state = self._documents.get(uri)
        if state is None or state.version != version:
            logger.debug("Discarding stale local diagnostics for %s (v%s)", uri, version)
            return False
        state.local_diagnostics = list(diagnostics)
        self.publish(uri, max_problems=max_problems)
        return True

    def begin_push(self, uri: str, version: int | None = None) -> int | None:
        state = self._documents.get(uri)
        if state is None:
            logger.debug("Dropping clangd diagnostics for unopened document %s", uri)
            return None
        if version is not None and version < state.client_version:
            logger.debug(
                "Dropping clangd diagnostics for %s at v%s (current v%s)",
                uri,
                version,
                state.client_version,
            )
            return None
        state.clangd_generation += 1
        return state.clangd_generation

    def is_current_push(self, uri: str, generation: int) -> bool:
        state = self._documents.get(uri)
        return state is not None and state.clangd_generation == generation

    def commit_push(
        self,
        uri: str,
        generation: int,
        diagnostics: Sequence[Diagnostic],
        *,
        publish: bool,
        max_problems: int,
    ) -> bool:
        state = self._documents.get(uri)
        if state is None or state.clangd_generation != generation:
            return False
        state.clangd_diagnostics = list(diagnostics)
        if publish:
            self.publish(uri, max_problems=max_problems)
        return True

    def clear_clangd(self) -> None:
        for state in self._documents.values():
            state.clangd_diagnostics = []
            state.clangd_generation += 1

    def fused(self, uri: str, *, max_problems: int) -> list[Diagnostic]:
        state = self._documents.get(uri)
        if state is None:
            return []
        return fuse(state.clangd_diagnostics, state.local_diagnostics, max_problems)

    def publish(self, uri: str, *, max_problems: int) -> None:
        if uri not in self._documents:
            return
        self._publish(uri, self.fused(uri, max_problems=max_problems))
