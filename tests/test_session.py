from __future__ import annotations

import asyncio
from pathlib import Path

from lsprotocol.types import (
    CompletionItem,
    CompletionList,
    CompletionParams,
    DefinitionParams,
    Diagnostic,
    DiagnosticSeverity,
    DocumentSymbolParams,
    HoverParams,
    Location,
    MarkupContent,
    MessageType,
    Position,
    Range,
    ReferenceContext,
    ReferenceParams,
    SymbolInformation,
    TextDocumentIdentifier,
    WorkspaceSymbolParams,
)

from basilisk_lsp.exceptions import CommandTimeoutError
from basilisk_lsp.json_types import JSONValue
from basilisk_lsp.language import hover_documentation
from basilisk_lsp.merge import HOVER_SEPARATOR, CompletionSource, tag_completion, untag_completion
from basilisk_lsp.qcc import QccRun
from basilisk_lsp.session import BasiliskSession, ValidationTrigger, should_run_qcc, should_run_quick
from basilisk_lsp.settings import BasiliskSettings

from tests.process_fakes import FailingFactory, FakeClangdFactory

URI = "file:///work/cases/drop.c"
PROGRAM = "double maxlevel = 8;\nint main() {\n  maxlevel = 2;\n  foreach()\n    f[] = 0;\n}\n"


class FakeEditor:
    def __init__(self, payload: JSONValue = None) -> None:
        self.payload = payload
        self.published: list[tuple[str, list[Diagnostic], int | None]] = []
        self.logs: list[tuple[str, MessageType]] = []
        self.shown: list[tuple[str, MessageType]] = []
        self.fetches: list[str | None] = []

    def publish_diagnostics(self, uri: str, diagnostics: list[Diagnostic], version: int | None = None) -> None:
        self.published.append((uri, list(diagnostics), version))

    def log_message(self, message: str, message_type: MessageType = MessageType.Log) -> None:
        self.logs.append((message, message_type))

    def show_message(self, message: str, message_type: MessageType = MessageType.Info) -> None:
        self.shown.append((message, message_type))

    async def fetch_configuration(self, scope_uri: str | None) -> JSONValue:
        self.fetches.append(scope_uri)
        return self.payload

    def last_messages(self, uri: str = URI) -> list[str]:
        for published_uri, diagnostics, _version in reversed(self.published):
            if published_uri == uri:
                return [diagnostic.message for diagnostic in diagnostics]
        raise AssertionError(f"nothing published for {uri}")

    def log_text(self) -> str:
        return "\n".join(message for message, _type in self.logs)


def _qcc_diagnostic(message: str, line: int = 0) -> Diagnostic:
    return Diagnostic(
        range=Range(start=Position(line=line, character=0), end=Position(line=line, character=1)),
        message=message,
        severity=DiagnosticSeverity.Error,
        source="qcc",
    )


async def quiet_qcc(uri: str, text: str, settings: BasiliskSettings, **_kwargs: object) -> QccRun:
    return QccRun(diagnostics=[], output="")


async def never_available(_path: str, **_kwargs: object) -> bool:
    return False


def _session(
    payload: JSONValue,
    *,
    factory: object = None,
    runner=quiet_qcc,
    probe=never_available,
    feature_timeout: float = 1.0,
) -> tuple[BasiliskSession, FakeEditor]:
    editor = FakeEditor(payload)
    session = BasiliskSession(
        editor,
        process_factory=factory,  # type: ignore[arg-type]
        qcc_runner=runner,
        qcc_probe=probe,
        feature_timeout=feature_timeout,
    )
    session.initialize(root_uri=None, supports_configuration=True)
    return session, editor


async def _settle(session: BasiliskSession) -> None:
    for _ in range(10):
        await asyncio.sleep(0)
    await session.wait_idle()


_NO_CLANGD = {"clangd": {"enabled": False}}
_PROXY = {"diagnosticsOnType": True, "clangd": {"enabled": True, "mode": "proxy"}}


def _position(line: int, character: int) -> Position:
    return Position(line=line, character=character)


def test_trigger_policy() -> None:
    defaults = BasiliskSettings()
    on_type = BasiliskSettings(diagnostics_on_type=True)
    disabled = BasiliskSettings(enable_diagnostics=False)
    assert should_run_quick(defaults, ValidationTrigger.OPEN)
    assert not should_run_quick(defaults, ValidationTrigger.CHANGE)
    assert should_run_quick(on_type, ValidationTrigger.CHANGE)
    assert should_run_qcc(defaults, ValidationTrigger.SAVE)
    assert should_run_qcc(defaults, ValidationTrigger.OPEN)
    assert not should_run_qcc(defaults, ValidationTrigger.CHANGE)
    assert not should_run_qcc(disabled, ValidationTrigger.SAVE)
    assert should_run_quick(disabled, ValidationTrigger.OPEN)


def test_open_publishes_heuristics_and_qcc_results() -> None:
    async def runner(uri: str, text: str, settings: BasiliskSettings, **_kwargs: object) -> QccRun:
        return QccRun(diagnostics=[_qcc_diagnostic("qcc: expected ';'", line=1)], output="")

    async def scenario() -> None:
        session, editor = _session(_NO_CLANGD, runner=runner)
        await session.startup()
        await session.did_open(URI, "scalar f;\nint x\n", version=3)
        uri, diagnostics, version = editor.published[-1]
        assert uri == URI and version == 3
        assert [d.source for d in diagnostics] == ["basilisk-lsp", "qcc"]
        assert "qcc compiler not found at 'qcc'" in editor.log_text()
        await session.shutdown()

    asyncio.run(scenario())


def test_stale_qcc_result_never_overwrites_newer_one() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()

        async def runner(uri: str, text: str, settings: BasiliskSettings, **_kwargs: object) -> QccRun:
            if text == "old":
                await gate.wait()
            return QccRun(diagnostics=[_qcc_diagnostic(f"from {text}")], output="")

        session, editor = _session({**_NO_CLANGD, "diagnosticsOnType": True}, runner=runner)
        await session.startup()
        opening = asyncio.create_task(session.did_open(URI, "old", version=1))
        await _settle_briefly()
        await session.did_change(URI, "new", version=2)
        gate.set()
        await opening
        assert [(messages, version) for _uri, messages, version in _summaries(editor)] == [(["from new"], 2)]

    asyncio.run(scenario())


async def _settle_briefly() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _summaries(editor: FakeEditor) -> list[tuple[str, list[str], int | None]]:
    return [(uri, [d.message for d in diagnostics], version) for uri, diagnostics, version in editor.published]


def test_qcc_failure_is_logged_and_heuristics_still_published() -> None:
    async def runner(uri: str, text: str, settings: BasiliskSettings, **_kwargs: object) -> QccRun:
        raise CommandTimeoutError("qcc -fsyntax-only", 0.5)

    async def scenario() -> None:
        session, editor = _session(_NO_CLANGD, runner=runner)
        await session.startup()
        await session.did_open(URI, "scalar f;\n")
        assert editor.last_messages() == ["Field 'f' should be declared with [], e.g., 'scalar f[]'"]
        assert ("qcc diagnostics failed: Command timed out after 500ms: qcc -fsyntax-only", MessageType.Warning) in editor.logs

    asyncio.run(scenario())


def test_change_without_on_type_does_not_validate() -> None:
    calls: list[str] = []

    async def runner(uri: str, text: str, settings: BasiliskSettings, **_kwargs: object) -> QccRun:
        calls.append(text)
        return QccRun(diagnostics=[], output="")

    async def scenario() -> None:
        session, editor = _session(_NO_CLANGD, runner=runner)
        await session.startup()
        await session.did_open(URI, "a", version=1)
        published = len(editor.published)
        await session.did_change(URI, "scalar f;", version=2)
        assert len(editor.published) == published
        await session.did_save(URI)
        assert calls == ["a", "scalar f;"]
        assert editor.last_messages() == ["Field 'f' should be declared with [], e.g., 'scalar f[]'"]

    asyncio.run(scenario())


def test_document_settings_fetched_once_until_reconfigured() -> None:
    async def scenario() -> None:
        session, editor = _session(_NO_CLANGD)
        await session.startup()
        await session.did_open(URI, "a")
        await session.did_save(URI)
        await session.did_save(URI)
        assert editor.fetches.count(URI) == 1
        await session.reconfigure()
        await _settle(session)
        assert editor.fetches.count(URI) == 2

    asyncio.run(scenario())


def test_close_publishes_empty_diagnostics() -> None:
    async def scenario() -> None:
        session, editor = _session(_NO_CLANGD)
        await session.startup()
        await session.did_open(URI, "scalar f;\n")
        session.did_close(URI)
        assert editor.published[-1] == (URI, [], None)
        assert session.symbols.document_symbols(URI) == []

    asyncio.run(scenario())


def test_clangd_diagnostics_filtered_and_fused() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        session, editor = _session(_PROXY, factory=factory)
        await session.startup()
        text = "scalar f[];\nint main() { return foo; }\n"
        await session.did_open(URI, text, version=1)
        process = factory.last
        opened = [message for message in process.received if message.get("method") == "textDocument/didOpen"]
        assert opened[0]["params"]["textDocument"]["text"] == text
        span = {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 6}}
        process.publish(
            URI,
            [
                {"range": span, "severity": 1, "message": "unknown type name 'scalar'"},
                {
                    "range": {"start": {"line": 1, "character": 20}, "end": {"line": 1, "character": 23}},
                    "severity": 1,
                    "message": "use of undeclared identifier 'foo'",
                },
            ],
            version=1,
        )
        await _settle(session)
        uri, diagnostics, version = editor.published[-1]
        assert uri == URI and version == 1
        assert [(d.message, d.source) for d in diagnostics] == [("use of undeclared identifier 'foo'", "clangd")]

        process.publish(URI, [{"range": span, "message": "old"}], version=0)
        await _settle(session)
        assert editor.last_messages() == ["use of undeclared identifier 'foo'"]
        await session.shutdown()

    asyncio.run(scenario())


def test_clangd_crash_clears_its_diagnostics() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        session, editor = _session({**_PROXY, "clangd": {"diagnosticsMode": "all"}}, factory=factory)
        await session.startup()
        await session.did_open(URI, "int main() {}\n", version=1)
        span = {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 1}}
        factory.last.publish(URI, [{"range": span, "message": "clangd complaint"}], version=1)
        await _settle(session)
        assert editor.last_messages() == ["clangd complaint"]
        factory.last.crash(6)
        await _settle(session)
        assert editor.last_messages() == []
        assert ("clangd exited unexpectedly (code 6)", MessageType.Warning) in editor.logs
        assert session.gate.ready_bridge() is None

    asyncio.run(scenario())


def test_settings_change_restarts_clangd_once_and_reannounces_documents() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        session, editor = _session(_PROXY, factory=factory)
        await session.startup()
        await session.did_open(URI, "int x;\n", version=4)
        await session.reconfigure()
        assert len(factory.processes) == 1
        editor.payload = {**_PROXY, "clangd": {"fallbackFlags": ["-DNEW"]}}
        await session.reconfigure()
        await _settle(session)
        assert len(factory.processes) == 2
        old, new = factory.processes
        assert old.returncode is not None
        reopened = [m for m in new.received if m.get("method") == "textDocument/didOpen"]
        assert reopened[0]["params"]["textDocument"] == {
            "uri": URI,
            "languageId": "c",
            "version": 4,
            "text": "int x;\n",
        }
        init = new.requests("initialize")[0]
        assert "-DNEW" in init["params"]["initializationOptions"]["fallbackFlags"]
        await session.shutdown()

    asyncio.run(scenario())


def test_bridge_start_failure_is_reported() -> None:
    async def scenario() -> None:
        factory = FailingFactory()
        session, editor = _session(_PROXY, factory=factory)
        await session.startup()
        assert factory.calls == 1
        assert editor.shown and editor.shown[0][0].startswith("clangd error: ")
        assert editor.shown[0][1] is MessageType.Error
        await session.did_open(URI, "scalar f;\n")
        assert editor.last_messages() == ["Field 'f' should be declared with [], e.g., 'scalar f[]'"]

    asyncio.run(scenario())


def test_clangd_not_started_when_qcc_available_or_augment(fake_executable) -> None:
    tool = str(fake_executable("qcc"))

    async def available(_path: str, **_kwargs: object) -> bool:
        return True

    async def scenario() -> None:
        factory = FakeClangdFactory()
        session, editor = _session({**_PROXY, "qccPath": tool}, factory=factory, probe=available)
        await session.startup()
        assert session.qcc_available is True
        assert f"Basilisk LSP server initialized with qcc support ({tool})" in editor.log_text()
        session, _editor = _session({"clangd": {"mode": "augment"}}, factory=factory)
        await session.startup()
        assert factory.commands == []

    asyncio.run(scenario())


def _doc() -> TextDocumentIdentifier:
    return TextDocumentIdentifier(uri=URI)


def test_features_fall_back_without_clangd() -> None:
    async def scenario() -> None:
        session, _editor = _session(_NO_CLANGD)
        await session.startup()
        await session.did_open(URI, PROGRAM)

        completions = await session.completion(CompletionParams(text_document=_doc(), position=_position(3, 4)))
        assert isinstance(completions, list)
        assert all(untag_completion(item)[1] is CompletionSource.BASILISK for item in completions)
        assert "foreach" in [item.label for item in completions]

        hover = await session.hover(HoverParams(text_document=_doc(), position=_position(3, 4)))
        assert hover is not None and isinstance(hover.contents, MarkupContent)
        assert hover.contents.value == hover_documentation("foreach")
        assert hover.range is not None and hover.range.start.character == 2

        symbol_hover = await session.hover(HoverParams(text_document=_doc(), position=_position(2, 3)))
        assert symbol_hover is not None and isinstance(symbol_hover.contents, MarkupContent)
        assert symbol_hover.contents.value == "```c\ndouble\n```"

        definition = await session.definition(DefinitionParams(text_document=_doc(), position=_position(2, 3)))
        assert isinstance(definition, Location)
        assert definition.range.start == _position(0, 7)

        references = await session.references(
            ReferenceParams(
                text_document=_doc(),
                position=_position(2, 3),
                context=ReferenceContext(include_declaration=True),
            )
        )
        assert [r.range.start.line for r in references] == [0, 2]

        outline = await session.document_symbols(DocumentSymbolParams(text_document=_doc()))
        assert [s.name for s in outline] == ["maxlevel", "main"]

        found = await session.workspace_symbols(WorkspaceSymbolParams(query="MAX"))
        assert [(s.name, type(s)) for s in found] == [("maxlevel", SymbolInformation)]

        assert session.semantic_tokens(URI).data
        assert session.semantic_tokens("file:///unopened.c").data == []

    asyncio.run(scenario())


def test_features_merge_clangd_answers() -> None:
    responses = {
        "textDocument/completion": {"isIncomplete": True, "items": [{"label": "clangd_only", "data": 7}]},
        "completionItem/resolve": lambda params: {**params, "detail": "int clangd_only(void)"},
        "textDocument/hover": {"contents": {"kind": "markdown", "value": "clangd says"}},
        "textDocument/definition": [],
        "textDocument/references": [
            {"uri": "file:///work/other.c", "range": {"start": {"line": 9, "character": 1}, "end": {"line": 9, "character": 9}}}
        ],
    }

    async def scenario() -> None:
        factory = FakeClangdFactory(responses=responses)
        session, _editor = _session(_PROXY, factory=factory)
        await session.startup()
        await session.did_open(URI, PROGRAM, version=1)

        completions = await session.completion(CompletionParams(text_document=_doc(), position=_position(3, 4)))
        assert isinstance(completions, CompletionList)
        assert completions.is_incomplete is True
        first = completions.items[0]
        assert first.label == "clangd_only"
        assert untag_completion(first)[1] is CompletionSource.CLANGD

        resolved = await session.resolve_completion(first)
        assert resolved.detail == "int clangd_only(void)"
        assert resolved.data == 7
        sent = factory.last.requests("completionItem/resolve")[0]["params"]
        assert sent["data"] == 7

        run_item = await session.resolve_completion(
            tag_completion(CompletionItem(label="run"), CompletionSource.BASILISK)
        )
        assert isinstance(run_item.documentation, MarkupContent)
        assert run_item.documentation.value == hover_documentation("run")
        assert len(factory.last.requests("completionItem/resolve")) == 1

        hover = await session.hover(HoverParams(text_document=_doc(), position=_position(3, 4)))
        assert hover is not None and isinstance(hover.contents, MarkupContent)
        assert hover.contents.value == "clangd says" + HOVER_SEPARATOR + hover_documentation("foreach")

        definition = await session.definition(DefinitionParams(text_document=_doc(), position=_position(2, 3)))
        assert isinstance(definition, Location) and definition.uri == URI

        references = await session.references(
            ReferenceParams(
                text_document=_doc(),
                position=_position(2, 3),
                context=ReferenceContext(include_declaration=False),
            )
        )
        assert [r.uri for r in references] == ["file:///work/other.c"]
        await session.shutdown()

    asyncio.run(scenario())


def test_unanswered_clangd_request_times_out_to_local_answer() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        session, _editor = _session(_PROXY, factory=factory, feature_timeout=0.05)
        await session.startup()
        await session.did_open(URI, PROGRAM, version=1)
        outline = await session.document_symbols(DocumentSymbolParams(text_document=_doc()))
        assert [s.name for s in outline] == ["maxlevel", "main"]
        await session.shutdown()

    asyncio.run(scenario())


def test_workspace_folders_pick_root(tmp_path: Path) -> None:
    session, _editor = _session(_NO_CLANGD)
    folder = tmp_path.as_uri()
    session.initialize(workspace_folders=[(folder, "work")])
    assert session.root == tmp_path
    session.initialize(root_uri=None)
    assert session.root is None
