from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from lsprotocol.types import Diagnostic, DiagnosticSeverity, Position, Range

from basilisk_lsp.config import find_src_local_dir
from basilisk_lsp.env_policy import DEFAULT_QCC_PROBE_TIMEOUT_MS, qcc_timeout_seconds
from basilisk_lsp.exceptions import CommandTimeoutError, ToolNotFoundError
from basilisk_lsp.paths import resolve_executable, uri_to_path
from basilisk_lsp.settings import BasiliskSettings
from basilisk_lsp.transport import ProcessFactory

logger = logging.getLogger(__name__)

QCC_SOURCE = "qcc"
TOOL_SOURCE = "basilisk-lsp"

_GCC_RE = re.compile(r"^(.+?):(\d+):(\d+):\s*(error|warning|note):\s*(.+)$")
_GCC_NO_COLUMN_RE = re.compile(r"^(.+?):(\d+):\s*(error|warning|note):\s*(.+)$")
_QCC_RE = re.compile(r"^(.+?):(\d+):\s*(.+)$")
_QCC_ERROR_HINTS = ("error", "undefined", "undeclared")

_SEVERITIES = {
    "error": DiagnosticSeverity.Error,
    "warning": DiagnosticSeverity.Warning,
    "note": DiagnosticSeverity.Information,
}

_HOMEBREW_QCC = "/opt/homebrew/bin/qcc"
_LOCAL_QCC = "/usr/local/bin/qcc"


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    returncode: int | None


@dataclass(frozen=True)
class CompilerMessage:
    file: str
    line: int
    column: int
    severity: str
    message: str


@dataclass(frozen=True)
class QccRun:
    diagnostics: list[Diagnostic]
    output: str


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    process_factory: ProcessFactory | None = None,
) -> CommandResult:
    factory = process_factory or asyncio.create_subprocess_exec
    try:
        process = await factory(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=None if env is None else dict(env),
            cwd=None if cwd is None else str(cwd),
        )
    except OSError as exc:
        raise ToolNotFoundError(argv[0]) from exc
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise CommandTimeoutError(" ".join(argv), timeout) from None
    return CommandResult(
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
        returncode=process.returncode,
    )


def parse_compiler_output(output: str) -> list[CompilerMessage]:
    """Parse gcc-style and bare qcc ``file:line: message`` lines.

    Lines without a column get column 1; bare qcc lines count only when they
    mention an error and are always errors.
    """
    messages: list[CompilerMessage] = []
    for line in output.splitlines():
        match = _GCC_RE.match(line)
        if match:
            messages.append(
                CompilerMessage(
                    file=match.group(1),
                    line=int(match.group(2)),
                    column=int(match.group(3)),
                    severity=match.group(4),
                    message=match.group(5),
                )
            )
            continue
        match = _GCC_NO_COLUMN_RE.match(line)
        if match:
            messages.append(
                CompilerMessage(
                    file=match.group(1),
                    line=int(match.group(2)),
                    column=1,
                    severity=match.group(3),
                    message=match.group(4),
                )
            )
            continue
        match = _QCC_RE.match(line)
        if match and any(hint in line for hint in _QCC_ERROR_HINTS):
            messages.append(
                CompilerMessage(
                    file=match.group(1),
                    line=int(match.group(2)),
                    column=1,
                    severity="error",
                    message=match.group(3),
                )
            )
    return messages


def to_diagnostic(message: CompilerMessage) -> Diagnostic:
    line = max(0, message.line - 1)
    column = max(0, message.column - 1)
    return Diagnostic(
        range=Range(start=Position(line=line, character=column), end=Position(line=line, character=column + 1)),
        severity=_SEVERITIES.get(message.severity, DiagnosticSeverity.Error),
        source=QCC_SOURCE,
        message=message.message,
    )


def missing_qcc_diagnostic(qcc_path: str) -> Diagnostic:
    return Diagnostic(
        range=Range(start=Position(line=0, character=0), end=Position(line=0, character=1)),
        severity=DiagnosticSeverity.Warning,
        source=TOOL_SOURCE,
        message=f"qcc compiler not found at '{qcc_path}'. Set basilisk.qccPath in settings.",
    )


def qcc_candidates(settings: BasiliskSettings) -> list[str]:
    candidates: list[str] = []
    if settings.qcc_path:
        candidates.append(settings.qcc_path)
    roots: list[str] = []
    if settings.basilisk_path:
        roots.append(settings.basilisk_path)
    env_root = os.environ.get("BASILISK")
    if env_root and env_root != settings.basilisk_path:
        roots.append(env_root)
    for root in roots:
        candidates.append(os.path.join(root, "qcc"))
        candidates.append(os.path.join(root, "bin", "qcc"))
    candidates.append(_HOMEBREW_QCC)
    candidates.append(_LOCAL_QCC)
    return candidates


def resolve_qcc_path(settings: BasiliskSettings) -> str | None:
    for candidate in qcc_candidates(settings):
        resolved = resolve_executable(candidate)
        if resolved is not None:
            return resolved
    return None


def _include_args(document_dir: Path, settings: BasiliskSettings) -> list[str]:
    include_dirs: list[str] = [str(document_dir)]
    src_local = find_src_local_dir(document_dir)
    if src_local is not None:
        include_dirs.append(str(src_local))
    include_dirs.extend(settings.qcc.include_paths)
    args: list[str] = []
    seen: set[str] = set()
    for include_dir in include_dirs:
        if not include_dir or include_dir in seen:
            continue
        seen.add(include_dir)
        args.extend(["-I", include_dir])
    return args


def _matches_document(message: CompilerMessage, temp_name: str, document_name: str) -> bool:
    name = os.path.basename(message.file)
    return name in (temp_name, document_name) or temp_name in message.file


async def run_qcc_diagnostics(
    uri: str,
    text: str,
    settings: BasiliskSettings,
    *,
    qcc_path: str | None = None,
    timeout: float | None = None,
    process_factory: ProcessFactory | None = None,
) -> QccRun:
    """Check ``text`` with ``qcc -Wall -fsyntax-only`` from a scratch directory.

    The buffer is written to a temporary copy so unsaved edits are checked;
    include paths still point at the document's real directory. An
    unresolvable qcc yields one warning diagnostic and spawns nothing.
    """
    if not settings.enable_diagnostics:
        return QccRun(diagnostics=[], output="")
    resolved = qcc_path or resolve_qcc_path(settings)
    if resolved is None:
        return QccRun(diagnostics=[missing_qcc_diagnostic(settings.qcc_path)], output="")

    document_path = uri_to_path(uri)
    document_name = document_path.name
    temp_name = f"basilisk_{document_name}"
    if not temp_name.endswith(".c"):
        temp_name += ".c"
    env = dict(os.environ)
    if settings.basilisk_path:
        env["BASILISK"] = settings.basilisk_path
    argv = [
        resolved,
        "-Wall",
        "-fsyntax-only",
        *_include_args(document_path.parent, settings),
        temp_name,
    ]
    with tempfile.TemporaryDirectory(prefix="basilisk-lsp-") as scratch:
        Path(scratch, temp_name).write_text(text, encoding="utf-8")
        try:
            result = await run_command(
                argv,
                timeout=qcc_timeout_seconds() if timeout is None else timeout,
                env=env,
                cwd=scratch,
                process_factory=process_factory,
            )
        except ToolNotFoundError:
            return QccRun(diagnostics=[missing_qcc_diagnostic(resolved)], output="")
    output = result.stderr + result.stdout
    diagnostics: list[Diagnostic] = []
    for message in parse_compiler_output(output):
        if not _matches_document(message, temp_name, document_name):
            continue
        diagnostics.append(to_diagnostic(message))
        if len(diagnostics) >= settings.max_number_of_problems:
            break
    logger.debug("qcc reported %d diagnostics for %s", len(diagnostics), uri)
    return QccRun(diagnostics=diagnostics, output=output)


async def _probe_version(
    qcc_path: str, process_factory: ProcessFactory | None
) -> CommandResult | None:
    resolved = resolve_executable(qcc_path)
    if resolved is None:
        return None
    try:
        return await run_command(
            [resolved, "--version"],
            timeout=DEFAULT_QCC_PROBE_TIMEOUT_MS / 1000,
            process_factory=process_factory,
        )
    except (ToolNotFoundError, CommandTimeoutError) as exc:
        logger.debug("qcc probe failed: %s", exc)
        return None


async def check_qcc_available(
    qcc_path: str, *, process_factory: ProcessFactory | None = None
) -> bool:
    result = await _probe_version(qcc_path, process_factory)
    if result is None:
        return False
    return result.returncode == 0 or "gcc" in result.stdout or "gcc" in result.stderr


async def get_qcc_version(
    qcc_path: str, *, process_factory: ProcessFactory | None = None
) -> str | None:
    result = await _probe_version(qcc_path, process_factory)
    if result is None:
        return None
    output = result.stdout or result.stderr
    first_line = output.splitlines()[0].strip() if output.strip() else ""
    return first_line or None
