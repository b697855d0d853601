"""One-shot ``check`` and ``doctor`` runs behind the ``qcc-lsp`` command."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from lsprotocol.types import Diagnostic, DiagnosticSeverity

from basilisk_lsp.bridge import ClangdBridge
from basilisk_lsp.config import load_project_config, load_project_config_from_file
from basilisk_lsp.env_policy import clangd_wait_seconds
from basilisk_lsp.exceptions import BasiliskLspError, BridgeStartError
from basilisk_lsp.fusion import apply_diagnostics_mode, dedupe_diagnostics, normalize_clangd_source
from basilisk_lsp.gate import bridge_enabled, build_bridge_config
from basilisk_lsp.heuristics import quick_validate
from basilisk_lsp.json_types import JSONArray, JSONObject
from basilisk_lsp.merge import structure_result
from basilisk_lsp.paths import expand_tilde, path_to_uri, resolve_executable
from basilisk_lsp.qcc import check_qcc_available, resolve_qcc_path, run_qcc_diagnostics
from basilisk_lsp.settings import (
    DEFAULT_SETTINGS,
    BasiliskSettings,
    DiagnosticsMode,
    resolve_basilisk_root,
    resolve_settings,
)
from basilisk_lsp.transport import ProcessFactory

logger = logging.getLogger(__name__)

DEFAULT_WRAP_INCLUDES = ("run.h",)

_SEVERITY_LABELS = {
    DiagnosticSeverity.Error: "error",
    DiagnosticSeverity.Warning: "warning",
    DiagnosticSeverity.Information: "info",
    DiagnosticSeverity.Hint: "hint",
}


@dataclass(frozen=True)
class ToolOptions:
    """Command-line overrides; ``None`` and empty tuples mean "not given"."""

    max_problems: int | None = None
    qcc_path: str | None = None
    basilisk_path: str | None = None
    project_config: Path | None = None
    enable_qcc: bool | None = None
    qcc_includes: tuple[str, ...] = ()
    clangd_enabled: bool | None = None
    clangd_path: str | None = None
    clangd_args: tuple[str, ...] = ()
    compile_commands_dir: str | None = None
    fallback_flags: tuple[str, ...] = ()
    clangd_diagnostics: DiagnosticsMode | None = None
    verbose: bool = False


@dataclass
class LoadedSettings:
    settings: BasiliskSettings
    messages: list[str] = field(default_factory=list)
    fatal: bool = False


@dataclass
class CheckReport:
    file_path: Path
    diagnostics: list[Diagnostic] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    exit_code: int = 0


@dataclass
class DoctorReport:
    labels: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    exit_code: int = 0

    def render(self) -> str:
        return " | ".join(self.labels)


def resolve_cli_path(value: str, cwd: Path) -> str:
    expanded = Path(expand_tilde(value))
    return str(expanded if expanded.is_absolute() else cwd / expanded)


def build_overrides(options: ToolOptions, *, cwd: Path) -> JSONObject:
    overrides: JSONObject = {}
    if options.qcc_path is not None:
        overrides["qccPath"] = options.qcc_path
    if options.basilisk_path is not None:
        overrides["basiliskPath"] = options.basilisk_path
    if options.enable_qcc is not None:
        overrides["enableDiagnostics"] = options.enable_qcc
    if options.max_problems is not None and options.max_problems > 0:
        overrides["maxNumberOfProblems"] = options.max_problems
    if options.qcc_includes:
        overrides["qcc"] = {"includePaths": [resolve_cli_path(entry, cwd) for entry in options.qcc_includes]}
    clangd: JSONObject = {}
    if options.clangd_enabled is not None:
        clangd["enabled"] = options.clangd_enabled
    if options.clangd_path is not None:
        clangd["path"] = options.clangd_path
    if options.clangd_args:
        clangd["args"] = list(options.clangd_args)
    if options.compile_commands_dir is not None:
        clangd["compileCommandsDir"] = options.compile_commands_dir
    if options.fallback_flags:
        clangd["fallbackFlags"] = list(options.fallback_flags)
    if options.clangd_diagnostics is not None:
        clangd["diagnosticsMode"] = options.clangd_diagnostics.value
    if clangd:
        overrides["clangd"] = clangd
    return overrides


def load_settings(options: ToolOptions, start_dir: Path, *, cwd: Path) -> LoadedSettings:
    """Defaults, then the project config, then command-line overrides.

    An explicitly named project config that cannot be read is fatal; a
    discovered one that cannot be parsed is reported only when verbose.
    """
    explicit = options.project_config is not None
    if explicit:
        project_config = load_project_config_from_file(resolve_cli_path(str(options.project_config), cwd))
    else:
        project_config = load_project_config(start_dir)
    loaded = LoadedSettings(settings=DEFAULT_SETTINGS)
    if project_config.error and project_config.path is not None and (explicit or options.verbose):
        loaded.messages.append(f"Failed to parse {project_config.path}: {project_config.error}")
    if explicit and project_config.error:
        loaded.fatal = True
        return loaded
    loaded.settings = resolve_settings(
        start_dir=start_dir,
        root=start_dir,
        overrides=build_overrides(options, cwd=cwd),
        project_config=project_config,
        on_config_error=lambda _path, _error: None,
    )
    return loaded


def format_diagnostic(file_path: Path | str, diagnostic: Diagnostic) -> str:
    start = diagnostic.range.start
    severity = _SEVERITY_LABELS.get(diagnostic.severity or DiagnosticSeverity.Hint, "hint")
    source = f"{diagnostic.source}: " if diagnostic.source else ""
    return f"{file_path}:{start.line + 1}:{start.character + 1}: {severity}: {source}{diagnostic.message}"


def has_errors(diagnostics: Sequence[Diagnostic]) -> bool:
    return any(diagnostic.severity == DiagnosticSeverity.Error for diagnostic in diagnostics)


def build_header_wrapper(file_path: Path, includes: Sequence[str] = ()) -> str:
    """A throwaway translation unit that pulls in ``file_path`` after its prerequisites."""
    header = file_path.resolve().as_posix()
    lines = [f'#include "{include}"' for include in (includes or DEFAULT_WRAP_INCLUDES)]
    lines.append(f'#include "{header}"')
    lines.append("int main() { return 0; }")
    return "\n".join(lines) + "\n"


async def run_clangd_once(
    file_path: Path,
    content: str,
    settings: BasiliskSettings,
    *,
    process_factory: ProcessFactory | None = None,
    wait: float | None = None,
    on_stderr: Callable[[str], None] | None = None,
) -> list[Diagnostic]:
    """Open ``file_path`` in a fresh clangd and collect its first diagnostics push.

    No push within ``wait`` seconds means no diagnostics. The bridge is always
    stopped before returning.
    """
    root_dir = file_path.parent
    uri = path_to_uri(file_path)
    config = build_bridge_config(settings, root=root_dir, root_uri=path_to_uri(root_dir))
    received: asyncio.Future[JSONArray] = asyncio.get_running_loop().create_future()

    def on_diagnostics(push_uri: str, diagnostics: JSONArray, _version: int | None) -> None:
        if push_uri == uri and not received.done():
            received.set_result(diagnostics)

    bridge = ClangdBridge(
        config,
        on_diagnostics=on_diagnostics,
        on_stderr=on_stderr,
        process_factory=process_factory,
    )
    try:
        if not await bridge.start():
            raise BridgeStartError(f"clangd failed to initialize ({config.path})")
        bridge.notify(
            "textDocument/didOpen",
            {"textDocument": {"uri": uri, "languageId": "c", "version": 1, "text": content}},
        )
        try:
            raw = await asyncio.wait_for(received, clangd_wait_seconds() if wait is None else wait)
        except asyncio.TimeoutError:
            logger.debug("No clangd diagnostics for %s before timeout", uri)
            raw = []
    finally:
        await bridge.stop()
    structured = (structure_result(entry, Diagnostic) for entry in raw)
    diagnostics = normalize_clangd_source(item for item in structured if item is not None)
    return apply_diagnostics_mode(diagnostics, settings.clangd.diagnostics_mode, content)


async def run_check(
    file_path: Path,
    options: ToolOptions,
    *,
    wrap_header: bool = False,
    wrap_includes: Sequence[str] = (),
    cwd: Path | None = None,
    process_factory: ProcessFactory | None = None,
    clangd_wait: float | None = None,
    on_clangd_stderr: Callable[[str], None] | None = None,
) -> CheckReport:
    cwd = cwd or Path.cwd()
    file_path = Path(resolve_cli_path(str(file_path), cwd))
    report = CheckReport(file_path=file_path)
    if not file_path.is_file():
        report.messages.append(f"File not found: {file_path}")
        report.exit_code = 1
        return report
    original = file_path.read_text(encoding="utf-8")
    qcc_content = build_header_wrapper(file_path, wrap_includes) if wrap_header else original

    loaded = load_settings(options, file_path.parent, cwd=cwd)
    report.messages.extend(loaded.messages)
    if loaded.fatal:
        report.exit_code = 2
        return report
    settings = loaded.settings

    diagnostics = quick_validate(original)
    qcc_available = False
    if settings.enable_diagnostics:
        resolved = resolve_qcc_path(settings)
        if resolved is not None:
            qcc_available = await check_qcc_available(resolved, process_factory=process_factory)
        try:
            run = await run_qcc_diagnostics(
                path_to_uri(file_path), qcc_content, settings, process_factory=process_factory
            )
        except BasiliskLspError as exc:
            report.messages.append(f"qcc diagnostics failed: {exc}")
        else:
            diagnostics.extend(run.diagnostics)

    use_clangd = bridge_enabled(settings, qcc_available)
    if use_clangd and resolve_executable(settings.clangd.path) is None:
        logger.debug("clangd not found at %s", settings.clangd.path)
        use_clangd = False
    if use_clangd:
        try:
            diagnostics.extend(
                await run_clangd_once(
                    file_path,
                    original,
                    settings,
                    process_factory=process_factory,
                    wait=clangd_wait,
                    on_stderr=on_clangd_stderr,
                )
            )
        except BasiliskLspError as exc:
            report.diagnostics = dedupe_diagnostics(diagnostics)[: settings.max_number_of_problems]
            report.messages.append(f"clangd error: {exc}")
            report.exit_code = 2
            return report

    report.diagnostics = dedupe_diagnostics(diagnostics)[: settings.max_number_of_problems]
    if not qcc_available and not use_clangd:
        report.messages.append("qcc not available and clangd fallback disabled.")
        report.exit_code = 2
    elif has_errors(report.diagnostics):
        report.exit_code = 1
    return report


async def run_doctor(
    options: ToolOptions,
    *,
    cwd: Path | None = None,
    process_factory: ProcessFactory | None = None,
) -> DoctorReport:
    cwd = cwd or Path.cwd()
    report = DoctorReport()
    loaded = load_settings(options, cwd, cwd=cwd)
    report.messages.extend(loaded.messages)
    if loaded.fatal:
        report.exit_code = 2
        return report
    settings = loaded.settings

    qcc_resolved = resolve_qcc_path(settings)
    qcc_available = qcc_resolved is not None and await check_qcc_available(
        qcc_resolved, process_factory=process_factory
    )
    clangd = settings.clangd
    clangd_resolved = resolve_executable(clangd.path) if clangd.enabled else None
    basilisk_root = resolve_basilisk_root(settings, cwd)

    if not settings.enable_diagnostics:
        report.labels.append("qcc=disabled")
    elif qcc_available:
        report.labels.append(f"qcc=found({qcc_resolved})")
    else:
        report.labels.append(f"qcc=missing({settings.qcc_path})")
    if not clangd.enabled:
        report.labels.append("clangd=disabled")
    elif clangd_resolved is not None:
        report.labels.append(f"clangd=found({clangd_resolved})")
    else:
        report.labels.append(f"clangd=missing({clangd.path})")
    report.labels.append(f"basilisk={basilisk_root}" if basilisk_root else "basilisk=unset")
    report.labels.append(f"clangd_fallback={'on' if bridge_enabled(settings, qcc_available) else 'off'}")

    qcc_usable = settings.enable_diagnostics and qcc_available
    if not qcc_usable and clangd_resolved is None:
        report.exit_code = 2
    return report
