from __future__ import annotations

import logging
import sys
from typing import Callable

from lsprotocol.types import (
    INITIALIZE,
    INITIALIZED,
    SHUTDOWN,
    TEXT_DOCUMENT_COMPLETION,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    TEXT_DOCUMENT_DOCUMENT_SYMBOL,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_REFERENCES,
    TEXT_DOCUMENT_SEMANTIC_TOKENS_FULL,
    WORKSPACE_DID_CHANGE_CONFIGURATION,
    WORKSPACE_DID_CHANGE_WATCHED_FILES,
    WORKSPACE_SYMBOL,
    COMPLETION_ITEM_RESOLVE,
    CompletionItem,
    CompletionList,
    CompletionOptions,
    CompletionParams,
    ConfigurationItem,
    ConfigurationParams,
    DefinitionParams,
    Diagnostic,
    DidChangeConfigurationParams,
    DidChangeTextDocumentParams,
    DidChangeWatchedFilesParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DidSaveTextDocumentParams,
    DocumentSymbol,
    DocumentSymbolParams,
    Hover,
    HoverParams,
    InitializedParams,
    InitializeParams,
    Location,
    LocationLink,
    LogMessageParams,
    MessageType,
    PublishDiagnosticsParams,
    ReferenceParams,
    Registration,
    RegistrationParams,
    SemanticTokens,
    SemanticTokensParams,
    ShowMessageParams,
    SymbolInformation,
    WorkspaceSymbol,
    WorkspaceSymbolParams,
)
from pygls.lsp.server import LanguageServer

from basilisk_lsp import __version__
from basilisk_lsp.env_policy import log_level_name
from basilisk_lsp.json_types import JSONValue
from basilisk_lsp.session import BasiliskSession
from basilisk_lsp.tokens import LEGEND

logger = logging.getLogger(__name__)

SETTINGS_SECTION = "basilisk"
COMPLETION_TRIGGER_CHARACTERS = [".", "#", "<", '"', "/"]


class PyglsEditorClient:
    """``EditorClient`` backed by a pygls ``LanguageServer``."""

    def __init__(self, ls: LanguageServer) -> None:
        self._ls = ls

    def publish_diagnostics(
        self, uri: str, diagnostics: list[Diagnostic], version: int | None = None
    ) -> None:
        self._ls.text_document_publish_diagnostics(
            PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics, version=version)
        )

    def log_message(self, message: str, message_type: MessageType = MessageType.Log) -> None:
        self._ls.window_log_message(LogMessageParams(type=message_type, message=message))

    def show_message(self, message: str, message_type: MessageType = MessageType.Info) -> None:
        self._ls.window_show_message(ShowMessageParams(type=message_type, message=message))

    async def fetch_configuration(self, scope_uri: str | None) -> JSONValue:
        result = await self._ls.workspace_configuration_async(
            ConfigurationParams(items=[ConfigurationItem(scope_uri=scope_uri, section=SETTINGS_SECTION)])
        )
        if isinstance(result, list) and result:
            return result[0]
        return None


server = LanguageServer("basilisk-lsp", __version__)
session = BasiliskSession(PyglsEditorClient(server))


def _settings_section(settings: object) -> JSONValue:
    if isinstance(settings, dict):
        section = settings.get(SETTINGS_SECTION)
        if isinstance(section, dict):
            return section
    return {}


@server.feature(INITIALIZE)
def initialize(ls: LanguageServer, params: InitializeParams) -> None:
    workspace = params.capabilities.workspace
    session.initialize(
        root_uri=params.root_uri,
        workspace_folders=[(folder.uri, folder.name) for folder in params.workspace_folders or []],
        supports_configuration=bool(workspace is not None and workspace.configuration),
    )


@server.feature(INITIALIZED)
async def initialized(ls: LanguageServer, params: InitializedParams) -> None:
    if session.supports_configuration:
        try:
            await ls.client_register_capability_async(
                RegistrationParams(
                    registrations=[
                        Registration(
                            id="basilisk-did-change-configuration",
                            method=WORKSPACE_DID_CHANGE_CONFIGURATION,
                        )
                    ]
                )
            )
        except Exception as exc:
            logger.warning("Could not register for configuration changes: %s", exc)
    await session.startup()


@server.feature(WORKSPACE_DID_CHANGE_CONFIGURATION)
async def did_change_configuration(ls: LanguageServer, params: DidChangeConfigurationParams) -> None:
    payload = None if session.supports_configuration else _settings_section(params.settings)
    await session.reconfigure(payload)


@server.feature(WORKSPACE_DID_CHANGE_WATCHED_FILES)
async def did_change_watched_files(ls: LanguageServer, params: DidChangeWatchedFilesParams) -> None:
    await session.reconfigure()


@server.feature(TEXT_DOCUMENT_DID_OPEN)
async def did_open(ls: LanguageServer, params: DidOpenTextDocumentParams) -> None:
    document = params.text_document
    await session.did_open(
        document.uri, document.text, language_id=document.language_id, version=document.version
    )


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
async def did_change(ls: LanguageServer, params: DidChangeTextDocumentParams) -> None:
    uri = params.text_document.uri
    document = ls.workspace.get_text_document(uri)
    await session.did_change(uri, document.source, version=params.text_document.version)


@server.feature(TEXT_DOCUMENT_DID_SAVE)
async def did_save(ls: LanguageServer, params: DidSaveTextDocumentParams) -> None:
    await session.did_save(params.text_document.uri)


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: LanguageServer, params: DidCloseTextDocumentParams) -> None:
    session.did_close(params.text_document.uri)


@server.feature(
    TEXT_DOCUMENT_COMPLETION,
    CompletionOptions(trigger_characters=COMPLETION_TRIGGER_CHARACTERS, resolve_provider=True),
)
async def completion(ls: LanguageServer, params: CompletionParams) -> CompletionList | list[CompletionItem]:
    return await session.completion(params)


@server.feature(COMPLETION_ITEM_RESOLVE)
async def completion_resolve(ls: LanguageServer, item: CompletionItem) -> CompletionItem:
    return await session.resolve_completion(item)


@server.feature(TEXT_DOCUMENT_HOVER)
async def hover(ls: LanguageServer, params: HoverParams) -> Hover | None:
    return await session.hover(params)


@server.feature(TEXT_DOCUMENT_DEFINITION)
async def definition(
    ls: LanguageServer, params: DefinitionParams
) -> list[Location | LocationLink] | Location | None:
    return await session.definition(params)


@server.feature(TEXT_DOCUMENT_REFERENCES)
async def references(ls: LanguageServer, params: ReferenceParams) -> list[Location]:
    return await session.references(params)


@server.feature(TEXT_DOCUMENT_DOCUMENT_SYMBOL)
async def document_symbol(
    ls: LanguageServer, params: DocumentSymbolParams
) -> list[DocumentSymbol] | list[SymbolInformation]:
    return await session.document_symbols(params)


@server.feature(WORKSPACE_SYMBOL)
async def workspace_symbol(
    ls: LanguageServer, params: WorkspaceSymbolParams
) -> list[SymbolInformation | WorkspaceSymbol]:
    return await session.workspace_symbols(params)


@server.feature(TEXT_DOCUMENT_SEMANTIC_TOKENS_FULL, LEGEND)
def semantic_tokens_full(ls: LanguageServer, params: SemanticTokensParams) -> SemanticTokens:
    return session.semantic_tokens(params.text_document.uri)


@server.feature(SHUTDOWN)
async def shutdown(ls: LanguageServer, params: None) -> None:
    await session.shutdown()


def configure_logging(level: str | None = None) -> None:
    # stdout carries the protocol.
    logging.basicConfig(
        stream=sys.stderr,
        level=(level or log_level_name()).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def start(start_fn: Callable[[], None] | None = None) -> None:
    """Start the language server over stdio."""
    configure_logging()
    logger.info("Basilisk C Language Server %s starting", __version__)
    (start_fn or server.start_io)()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
