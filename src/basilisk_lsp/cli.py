from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from lsprotocol.converters import get_converter

from basilisk_lsp.checker import (
    CheckReport,
    ToolOptions,
    format_diagnostic,
    run_check,
    run_doctor,
)
from basilisk_lsp.settings import DiagnosticsMode

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Basilisk C diagnostics from qcc and clangd.",
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _echo_clangd_stderr(line: str) -> None:
    text = line.rstrip()
    if text:
        typer.echo(f"[clangd] {text}", err=True)


def _emit_messages(messages: list[str]) -> None:
    for message in messages:
        typer.echo(message, err=True)


def _emit_check_report(report: CheckReport, *, json_output: bool) -> None:
    if json_output:
        payload = get_converter().unstructure(report.diagnostics)
        typer.echo(json.dumps(payload, indent=2))
        return
    for diagnostic in report.diagnostics:
        typer.echo(format_diagnostic(report.file_path, diagnostic))


@app.command()
def check(
    file: Path = typer.Argument(..., help="Basilisk C source or header to check."),
    json_output: bool = typer.Option(False, "--json", help="Output diagnostics as JSON."),
    max_problems: Optional[int] = typer.Option(None, "--max-problems", help="Max diagnostics to report."),
    qcc_path: Optional[str] = typer.Option(None, "--qcc-path", help="Path to qcc."),
    basilisk_path: Optional[str] = typer.Option(
        None, "--basilisk-path", help="Basilisk root path (overrides BASILISK)."
    ),
    project_config: Optional[Path] = typer.Option(
        None, "--project-config", help="Path to a .comphy-basilisk file; a missing file is an error."
    ),
    no_qcc: bool = typer.Option(False, "--no-qcc", help="Disable qcc diagnostics."),
    qcc_include: List[str] = typer.Option([], "--qcc-include", help="Extra qcc include path (repeatable)."),
    clangd: Optional[bool] = typer.Option(None, "--clangd/--no-clangd", help="Enable or disable clangd."),
    clangd_path: Optional[str] = typer.Option(None, "--clangd-path", help="Path to clangd."),
    clangd_arg: List[str] = typer.Option([], "--clangd-arg", help="Extra clangd argument (repeatable)."),
    compile_commands_dir: Optional[str] = typer.Option(
        None, "--compile-commands-dir", help="Directory containing compile_commands.json."
    ),
    fallback_flag: List[str] = typer.Option([], "--fallback-flag", help="Extra clangd fallback flag (repeatable)."),
    clangd_diagnostics: Optional[DiagnosticsMode] = typer.Option(
        None, "--clangd-diagnostics", help="clangd diagnostics: all, filtered or none."
    ),
    wrap_header: bool = typer.Option(
        False, "--wrap-header", help="Check a header through a temporary translation unit."
    ),
    wrap_include: List[str] = typer.Option(
        [], "--wrap-include", help="Header included before the wrapped header (repeatable)."
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging."),
) -> None:
    """Report diagnostics for FILE; exit 1 on errors, 2 when tooling is unusable."""
    _configure_logging(verbose)
    options = ToolOptions(
        max_problems=max_problems,
        qcc_path=qcc_path,
        basilisk_path=basilisk_path,
        project_config=project_config,
        enable_qcc=False if no_qcc else None,
        qcc_includes=tuple(qcc_include),
        clangd_enabled=clangd,
        clangd_path=clangd_path,
        clangd_args=tuple(clangd_arg),
        compile_commands_dir=compile_commands_dir,
        fallback_flags=tuple(fallback_flag),
        clangd_diagnostics=clangd_diagnostics,
        verbose=verbose,
    )
    report = asyncio.run(
        run_check(
            file,
            options,
            wrap_header=wrap_header,
            wrap_includes=tuple(wrap_include),
            on_clangd_stderr=_echo_clangd_stderr if verbose else None,
        )
    )
    _emit_check_report(report, json_output=json_output)
    _emit_messages(report.messages)
    raise typer.Exit(code=report.exit_code)


@app.command()
def doctor(
    qcc_path: Optional[str] = typer.Option(None, "--qcc-path", help="Path to qcc."),
    basilisk_path: Optional[str] = typer.Option(
        None, "--basilisk-path", help="Basilisk root path (overrides BASILISK)."
    ),
    project_config: Optional[Path] = typer.Option(
        None, "--project-config", help="Path to a .comphy-basilisk file; a missing file is an error."
    ),
    no_qcc: bool = typer.Option(False, "--no-qcc", help="Report qcc as disabled."),
    clangd: Optional[bool] = typer.Option(None, "--clangd/--no-clangd", help="Enable or disable clangd."),
    clangd_path: Optional[str] = typer.Option(None, "--clangd-path", help="Path to clangd."),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging."),
) -> None:
    """Report which of qcc, clangd and the Basilisk root are usable."""
    _configure_logging(verbose)
    options = ToolOptions(
        qcc_path=qcc_path,
        basilisk_path=basilisk_path,
        project_config=project_config,
        enable_qcc=False if no_qcc else None,
        clangd_enabled=clangd,
        clangd_path=clangd_path,
        verbose=verbose,
    )
    report = asyncio.run(run_doctor(options))
    if report.labels:
        typer.echo(report.render())
    _emit_messages(report.messages)
    raise typer.Exit(code=report.exit_code)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
