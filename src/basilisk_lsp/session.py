from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from pathlib import Path
from typing import Awaitable, Callable, Coroutine, Protocol, Sequence

import attrs
from lsprotocol.types import (
    CompletionItem,
    CompletionList,
    CompletionParams,
    DefinitionParams,
    Diagnostic,
    DocumentSymbol,
    DocumentSymbolParams,
    Hover,
    HoverParams,
    Location,
    LocationLink,
    MarkupContent,
    MarkupKind,
    MessageType,
    Position,
    ReferenceParams,
    SemanticTokens,
    SymbolInformation,
    WorkspaceSymbol,
    WorkspaceSymbolParams,
)

from basilisk_lsp.bridge import BridgeConfig, BridgeState, ClangdBridge
from basilisk_lsp.exceptions import BasiliskLspError, BridgeStartError
from basilisk_lsp.fusion import (
    DiagnosticFusion,
    DocumentState,
    apply_diagnostics_mode,
    normalize_clangd_source,
)
from basilisk_lsp.gate import BridgeGate, bridge_enabled, build_bridge_config
from basilisk_lsp.heuristics import quick_validate
from basilisk_lsp.json_types import JSONArray, JSONValue
from basilisk_lsp.language import contextual_completion_items, hover_documentation, keyword_category
from basilisk_lsp.merge import (
    CompletionSource,
    merge_completions,
    merge_hovers,
    structure_completion_result,
    structure_document_symbols,
    structure_locations,
    structure_result,
    structure_workspace_symbols,
    tag_basilisk_completions,
    to_params,
    untag_completion,
)
from basilisk_lsp.paths import uri_to_path
from basilisk_lsp.qcc import QccRun, check_qcc_available, resolve_qcc_path, run_qcc_diagnostics
from basilisk_lsp.settings import DEFAULT_SETTINGS, BasiliskSettings, ClangdMode, resolve_settings
from basilisk_lsp.symbols import SymbolIndex, find_references, word_at_position
from basilisk_lsp.tokens import semantic_tokens
from basilisk_lsp.transport import ProcessFactory

logger = logging.getLogger(__name__)

FEATURE_TIMEOUT_SECONDS = 10.0

QccRunner = Callable[..., Awaitable[QccRun]]
QccProbe = Callable[..., Awaitable[bool]]


class EditorClient(Protocol):
    """What the session needs from the editor connection."""

    def publish_diagnostics(
        self, uri: str, diagnostics: list[Diagnostic], version: int | None = None
    ) -> None: ...

    def log_message(self, message: str, message_type: MessageType = MessageType.Log) -> None: ...

    def show_message(self, message: str, message_type: MessageType = MessageType.Info) -> None: ...

    async def fetch_configuration(self, scope_uri: str | None) -> JSONValue: ...


class ValidationTrigger(StrEnum):
    OPEN = "open"
    CHANGE = "change"
    SAVE = "save"


def should_run_quick(settings: BasiliskSettings, trigger: ValidationTrigger) -> bool:
    if trigger is ValidationTrigger.OPEN:
        return True
    if trigger is ValidationTrigger.CHANGE:
        return settings.diagnostics_on_type
    return settings.diagnostics_on_save


def should_run_qcc(settings: BasiliskSettings, trigger: ValidationTrigger) -> bool:
    if not settings.enable_diagnostics:
        return False
    if trigger is ValidationTrigger.CHANGE:
        return settings.diagnostics_on_type
    return settings.diagnostics_on_save


class BasiliskSession:
    """Owns every open document and the clangd bridge for one editor connection.

    Editor events come in through the ``did_*`` coroutines and the feature
    methods; diagnostics go out through ``client.publish_diagnostics``. The
    qcc path and the clangd path race per document and the fusion layer
    decides which result is still current.
    """

    def __init__(
        self,
        client: EditorClient,
        *,
        process_factory: ProcessFactory | None = None,
        qcc_runner: QccRunner = run_qcc_diagnostics,
        qcc_probe: QccProbe = check_qcc_available,
        bridge_factory: Callable[[BridgeConfig], ClangdBridge] | None = None,
        feature_timeout: float = FEATURE_TIMEOUT_SECONDS,
    ) -> None:
        self.client = client
        self.fusion = DiagnosticFusion(self._publish)
        self.symbols = SymbolIndex()
        self.gate = BridgeGate(bridge_factory or self._make_bridge, on_stopped=self.fusion.clear_clangd)
        self.settings: BasiliskSettings = DEFAULT_SETTINGS
        self.root: Path | None = None
        self.root_uri: str | None = None
        self.workspace_folders: tuple[tuple[str, str], ...] = ()
        self.supports_configuration = False
        self.qcc_available = False
        self._process_factory = process_factory
        self._qcc_runner = qcc_runner
        self._qcc_probe = qcc_probe
        self._feature_timeout = feature_timeout
        self._editor_payload: JSONValue = None
        self._config_warnings: set[Path] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    # Lifecycle

    def initialize(
        self,
        *,
        root_uri: str | None = None,
        workspace_folders: Sequence[tuple[str, str]] = (),
        supports_configuration: bool = False,
    ) -> None:
        self.root_uri = root_uri
        self.workspace_folders = tuple(workspace_folders)
        self.supports_configuration = supports_configuration
        if root_uri:
            self.root = uri_to_path(root_uri)
        elif self.workspace_folders:
            self.root = uri_to_path(self.workspace_folders[0][0])
        else:
            self.root = None

    async def startup(self) -> None:
        await self.refresh_global_settings()
        await self.check_qcc(self.settings)
        await self.ensure_clangd()

    async def reconfigure(self, editor_payload: JSONValue = None) -> None:
        """Re-resolve settings, re-gate clangd and revalidate every open document."""
        if editor_payload is not None:
            self._editor_payload = editor_payload
        self.clear_settings_cache()
        await self.refresh_global_settings()
        await self.check_qcc(self.settings)
        await self.ensure_clangd()
        for state in self.fusion.documents():
            self.schedule(self.validate(state.uri, ValidationTrigger.OPEN))

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.gate.stop()

    def schedule(self, coro: Coroutine[object, object, None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    # Settings

    def _on_config_error(self, path: Path, error: str) -> None:
        if path in self._config_warnings:
            return
        self._config_warnings.add(path)
        self.client.log_message(f"Failed to parse {path}: {error}", MessageType.Warning)

    async def _fetch_configuration(self, scope_uri: str | None) -> JSONValue:
        try:
            return await self.client.fetch_configuration(scope_uri)
        except Exception as exc:
            logger.warning("Could not fetch basilisk settings for %s: %s", scope_uri or "workspace", exc)
            return None

    async def refresh_global_settings(self) -> BasiliskSettings:
        if self.supports_configuration:
            editor = await self._fetch_configuration(None)
        else:
            editor = self._editor_payload
        self.settings = resolve_settings(
            start_dir=self.root,
            root=self.root,
            editor=editor,
            on_config_error=self._on_config_error,
        )
        return self.settings

    async def _resolve_document_settings(self, uri: str) -> BasiliskSettings:
        editor = await self._fetch_configuration(uri)
        document_dir = uri_to_path(uri).parent
        return resolve_settings(
            start_dir=document_dir,
            root=self.root or document_dir,
            editor=editor,
            on_config_error=self._on_config_error,
        )

    async def document_settings(self, uri: str) -> BasiliskSettings:
        """Settings for ``uri``, fetched once per open document and then cached."""
        if not self.supports_configuration:
            return self.settings
        state = self.fusion.get(uri)
        if state is None:
            return await self._resolve_document_settings(uri)
        if state.settings_task is None:
            state.settings_task = asyncio.ensure_future(self._resolve_document_settings(uri))
        return await asyncio.shield(state.settings_task)

    def clear_settings_cache(self) -> None:
        for state in self.fusion.documents():
            state.settings_task = None

    # qcc and clangd

    async def check_qcc(self, settings: BasiliskSettings) -> bool:
        resolved = resolve_qcc_path(settings)
        available = resolved is not None and await self._qcc_probe(
            resolved, process_factory=self._process_factory
        )
        if settings.enable_diagnostics:
            if available:
                self.client.log_message(
                    f"Basilisk LSP server initialized with qcc support ({resolved})", MessageType.Info
                )
            else:
                self.client.log_message(
                    f"qcc compiler not found at '{settings.qcc_path}'. "
                    "Diagnostics will be limited. Set basilisk.qccPath in settings.",
                    MessageType.Warning,
                )
        self.qcc_available = available
        return available

    async def ensure_clangd(self) -> bool:
        config: BridgeConfig | None = None
        if bridge_enabled(self.settings, self.qcc_available):
            config = build_bridge_config(
                self.settings,
                root=self.root,
                root_uri=self.root_uri,
                workspace_folders=self.workspace_folders,
            )
        try:
            started = await self.gate.ensure_ready(config)
        except BridgeStartError as exc:
            message = f"clangd error: {exc}"
            logger.error(message)
            self.client.log_message(message, MessageType.Error)
            self.client.show_message(message, MessageType.Error)
            return False
        if started:
            for state in self.fusion.documents():
                self._forward_open(state)
        return started

    def _make_bridge(self, config: BridgeConfig) -> ClangdBridge:
        return ClangdBridge(
            config,
            on_diagnostics=self.handle_clangd_push,
            on_log=self._handle_clangd_log,
            on_exit=self._handle_bridge_exit,
            process_factory=self._process_factory,
        )

    def _handle_clangd_log(self, message: str) -> None:
        self.client.log_message(message.strip(), MessageType.Log)

    def _handle_bridge_exit(self, returncode: int | None) -> None:
        self.client.log_message(f"clangd exited unexpectedly (code {returncode})", MessageType.Warning)
        self.fusion.clear_clangd()
        for state in self.fusion.documents():
            self.schedule(self._republish(state.uri))

    async def _republish(self, uri: str) -> None:
        settings = await self.document_settings(uri)
        self.fusion.publish(uri, max_problems=settings.max_number_of_problems)

    def _forward(self, method: str, params: JSONValue) -> None:
        bridge = self.gate.bridge
        if bridge is None or bridge.state is BridgeState.STOPPED:
            return
        bridge.notify(method, params)

    def _forward_open(self, state: DocumentState) -> None:
        self._forward(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": state.uri,
                    "languageId": state.language_id,
                    "version": state.client_version,
                    "text": state.text,
                }
            },
        )

    # Document sync

    async def did_open(self, uri: str, text: str, *, language_id: str = "c", version: int = 0) -> None:
        state = self.fusion.open(uri, text, language_id=language_id, client_version=version)
        self.symbols.index_document(uri, text)
        self._forward_open(state)
        await self.validate(uri, ValidationTrigger.OPEN)

    async def did_change(self, uri: str, text: str, *, version: int | None = None) -> None:
        state = self.fusion.change(uri, text, client_version=version)
        if state is None:
            return
        self.symbols.index_document(uri, text)
        self._forward(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": state.client_version},
                "contentChanges": [{"text": text}],
            },
        )
        await self.validate(uri, ValidationTrigger.CHANGE)

    async def did_save(self, uri: str) -> None:
        self._forward("textDocument/didSave", {"textDocument": {"uri": uri}})
        await self.validate(uri, ValidationTrigger.SAVE)

    def did_close(self, uri: str) -> None:
        self.fusion.close(uri)
        self.symbols.remove_document(uri)
        self._forward("textDocument/didClose", {"textDocument": {"uri": uri}})

    # Diagnostics

    async def validate(self, uri: str, trigger: ValidationTrigger) -> None:
        settings = await self.document_settings(uri)
        if trigger is ValidationTrigger.CHANGE and not settings.diagnostics_on_type:
            return
        if trigger is ValidationTrigger.SAVE and not settings.diagnostics_on_save:
            return
        version = self.fusion.begin_local(uri)
        state = self.fusion.get(uri)
        if version is None or state is None:
            return
        diagnostics = await self.collect_local_diagnostics(uri, state.text, settings, trigger)
        self.fusion.commit_local(
            uri, version, diagnostics, max_problems=settings.max_number_of_problems
        )

    async def collect_local_diagnostics(
        self,
        uri: str,
        text: str,
        settings: BasiliskSettings,
        trigger: ValidationTrigger,
    ) -> list[Diagnostic]:
        diagnostics: list[Diagnostic] = []
        if should_run_quick(settings, trigger):
            diagnostics.extend(quick_validate(text))
        if should_run_qcc(settings, trigger):
            try:
                run = await self._qcc_runner(uri, text, settings, process_factory=self._process_factory)
            except BasiliskLspError as exc:
                self.client.log_message(f"qcc diagnostics failed: {exc}", MessageType.Warning)
            else:
                diagnostics.extend(run.diagnostics)
        return diagnostics

    def handle_clangd_push(self, uri: str, raw: JSONArray, version: int | None) -> None:
        generation = self.fusion.begin_push(uri, version)
        if generation is None:
            return
        structured = (structure_result(entry, Diagnostic) for entry in raw)
        diagnostics = normalize_clangd_source(item for item in structured if item is not None)
        self.schedule(self._commit_push(uri, generation, diagnostics))

    async def _commit_push(self, uri: str, generation: int, diagnostics: list[Diagnostic]) -> None:
        settings = await self.document_settings(uri)
        state = self.fusion.get(uri)
        if state is None or not self.fusion.is_current_push(uri, generation):
            return
        kept = apply_diagnostics_mode(diagnostics, settings.clangd.diagnostics_mode, state.text)
        self.fusion.commit_push(
            uri,
            generation,
            kept,
            publish=settings.diagnostics_on_type,
            max_problems=settings.max_number_of_problems,
        )

    def _publish(self, uri: str, diagnostics: list[Diagnostic]) -> None:
        state = self.fusion.get(uri)
        self.client.publish_diagnostics(
            uri, diagnostics, None if state is None else state.client_version
        )

    # Editor features

    async def _proxy(
        self, settings: BasiliskSettings, method: str, params: object
    ) -> tuple[bool, JSONValue]:
        """Forward a feature request to clangd; ``(False, None)`` means fall back."""
        bridge = self.gate.ready_bridge()
        if bridge is None or not settings.clangd.enabled or settings.clangd.mode is not ClangdMode.PROXY:
            return False, None
        try:
            result = await bridge.request(method, to_params(params), timeout=self._feature_timeout)
        except (BasiliskLspError, asyncio.TimeoutError) as exc:
            logger.debug("clangd %s failed: %s", method, exc or "timed out")
            return False, None
        return True, result

    def _word_at(self, uri: str, position: Position) -> str | None:
        state = self.fusion.get(uri)
        if state is None:
            return None
        found = word_at_position(state.text, position)
        return None if found is None else found[0]

    def basilisk_completions(self, uri: str, position: Position) -> list[CompletionItem]:
        state = self.fusion.get(uri)
        if state is None:
            return contextual_completion_items("")
        lines = state.text.split("\n")
        line = lines[position.line] if 0 <= position.line < len(lines) else ""
        return contextual_completion_items(line[: position.character])

    async def completion(self, params: CompletionParams) -> CompletionList | list[CompletionItem]:
        uri = params.text_document.uri
        basilisk_items = self.basilisk_completions(uri, params.position)
        settings = await self.document_settings(uri)
        ok, result = await self._proxy(settings, "textDocument/completion", params)
        if not ok:
            return tag_basilisk_completions(basilisk_items)
        return merge_completions(structure_completion_result(result), basilisk_items)

    async def resolve_completion(self, item: CompletionItem) -> CompletionItem:
        resolved, source = untag_completion(item)
        bridge = self.gate.ready_bridge()
        if source is CompletionSource.CLANGD and bridge is not None:
            try:
                raw = await bridge.request(
                    "completionItem/resolve", to_params(resolved), timeout=self._feature_timeout
                )
            except (BasiliskLspError, asyncio.TimeoutError) as exc:
                logger.debug("clangd completion resolve failed: %s", exc or "timed out")
            else:
                resolved = structure_result(raw, CompletionItem) or resolved
        doc = hover_documentation(resolved.label)
        if doc and not resolved.documentation:
            resolved = attrs.evolve(
                resolved, documentation=MarkupContent(kind=MarkupKind.Markdown, value=doc)
            )
        return resolved

    def basilisk_hover(self, uri: str, position: Position) -> Hover | None:
        state = self.fusion.get(uri)
        if state is None:
            return None
        found = word_at_position(state.text, position)
        if found is None:
            return None
        word, word_range = found
        value = hover_documentation(word)
        if value is None:
            category = keyword_category(word)
            if category is not None:
                value = f"**{word}** (Basilisk {category})"
        if value is None:
            record = self.symbols.find_definition(word)
            if record is None:
                return None
            sections: list[str] = []
            if record.documentation:
                sections.append(record.documentation.strip())
            if record.detail:
                sections.append(f"```c\n{record.detail}\n```")
            value = "\n\n".join(sections) or f"**{record.name}**"
        return Hover(contents=MarkupContent(kind=MarkupKind.Markdown, value=value), range=word_range)

    async def hover(self, params: HoverParams) -> Hover | None:
        uri = params.text_document.uri
        if self.fusion.get(uri) is None:
            return None
        settings = await self.document_settings(uri)
        basilisk = self.basilisk_hover(uri, params.position)
        ok, result = await self._proxy(settings, "textDocument/hover", params)
        clangd = structure_result(result, Hover) if ok else None
        return merge_hovers(clangd, basilisk)

    async def definition(self, params: DefinitionParams) -> list[Location | LocationLink] | Location | None:
        uri = params.text_document.uri
        if self.fusion.get(uri) is None:
            return None
        settings = await self.document_settings(uri)
        ok, result = await self._proxy(settings, "textDocument/definition", params)
        if ok and result:
            locations = structure_locations(result)
            if locations:
                return locations
        word = self._word_at(uri, params.position)
        if word is None:
            return None
        record = self.symbols.find_definition(word)
        return None if record is None else record.location

    async def references(self, params: ReferenceParams) -> list[Location]:
        uri = params.text_document.uri
        state = self.fusion.get(uri)
        if state is None:
            return []
        settings = await self.document_settings(uri)
        ok, result = await self._proxy(settings, "textDocument/references", params)
        if ok and isinstance(result, list):
            return [location for location in structure_locations(result) if isinstance(location, Location)]
        word = self._word_at(uri, params.position)
        if word is None:
            return []
        return [Location(uri=uri, range=found) for found in find_references(state.text, word)]

    async def document_symbols(
        self, params: DocumentSymbolParams
    ) -> list[DocumentSymbol] | list[SymbolInformation]:
        uri = params.text_document.uri
        settings = await self.document_settings(uri)
        ok, result = await self._proxy(settings, "textDocument/documentSymbol", params)
        if ok and isinstance(result, list):
            return structure_document_symbols(result)
        return self.symbols.document_symbols(uri)

    async def workspace_symbols(
        self, params: WorkspaceSymbolParams
    ) -> list[SymbolInformation | WorkspaceSymbol]:
        ok, result = await self._proxy(self.settings, "workspace/symbol", params)
        if ok and isinstance(result, list):
            return structure_workspace_symbols(result)
        return [
            SymbolInformation(
                name=record.name,
                kind=record.kind,
                location=record.location,
                container_name=record.container_name,
            )
            for record in self.symbols.find_symbols(params.query)
        ]

    def semantic_tokens(self, uri: str) -> SemanticTokens:
        state = self.fusion.get(uri)
        if state is None:
            return SemanticTokens(data=[])
        return semantic_tokens(state.text)
