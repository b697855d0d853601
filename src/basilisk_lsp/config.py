from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from basilisk_lsp.json_types import JSONObject, JSONValue
from basilisk_lsp.paths import expand_tilde

DEFAULT_CONFIG_NAME = ".comphy-basilisk"


@dataclass(frozen=True)
class ProjectConfigResult:
    path: Path | None
    config: JSONObject | None
    error: str | None = None


def _resolve_entry(value: str, base_dir: Path) -> str:
    expanded = Path(expand_tilde(value))
    if expanded.is_absolute():
        return str(expanded)
    return str(base_dir / expanded)


def _string_list(value: JSONValue) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def find_repo_root(start_dir: Path) -> Path | None:
    for candidate in (start_dir, *start_dir.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _walk_up(start_dir: Path) -> Iterator[Path]:
    repo_root = find_repo_root(start_dir)
    for candidate in (start_dir, *start_dir.parents):
        yield candidate
        if repo_root is not None and candidate == repo_root:
            return


def find_src_local_dir(start_dir: Path) -> Path | None:
    for candidate in _walk_up(start_dir):
        src_local = candidate / "src-local"
        if src_local.is_dir():
            return src_local
    return None


def find_config_path(start_dir: Path, file_name: str = DEFAULT_CONFIG_NAME) -> Path | None:
    for candidate in _walk_up(start_dir):
        config_path = candidate / file_name
        if config_path.exists():
            return config_path
    return None


def resolve_project_config(config: JSONObject, base_dir: Path) -> JSONObject:
    """Anchor every path-valued key of a project config at ``base_dir``.

    ``qcc.includePaths`` and the flat ``qccIncludePaths`` key are concatenated
    into ``qcc.includePaths``.
    """
    resolved: JSONObject = dict(config)
    for key in ("basiliskPath", "qccPath"):
        value = config.get(key)
        if isinstance(value, str) and value:
            resolved[key] = _resolve_entry(value, base_dir)
    qcc_section = config.get("qcc")
    qcc_section = qcc_section if isinstance(qcc_section, dict) else {}
    include_paths = _string_list(qcc_section.get("includePaths")) + _string_list(
        config.get("qccIncludePaths")
    )
    if include_paths:
        resolved["qcc"] = {
            **qcc_section,
            "includePaths": [_resolve_entry(entry, base_dir) for entry in include_paths],
        }
    clangd_section = config.get("clangd")
    if isinstance(clangd_section, dict):
        clangd = dict(clangd_section)
        compile_commands_dir = clangd.get("compileCommandsDir")
        if isinstance(compile_commands_dir, str) and compile_commands_dir:
            clangd["compileCommandsDir"] = _resolve_entry(compile_commands_dir, base_dir)
        resolved["clangd"] = clangd
    return resolved


def _read_config(config_path: Path) -> ProjectConfigResult:
    try:
        raw = config_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        return ProjectConfigResult(path=config_path, config=None, error=str(exc))
    if not raw:
        return ProjectConfigResult(path=config_path, config=None)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return ProjectConfigResult(path=config_path, config=None, error=str(exc))
    if not isinstance(data, dict):
        return ProjectConfigResult(
            path=config_path, config=None, error="project config must be a JSON object"
        )
    return ProjectConfigResult(
        path=config_path, config=resolve_project_config(data, config_path.parent)
    )


def load_project_config(
    start_dir: Path, file_name: str = DEFAULT_CONFIG_NAME
) -> ProjectConfigResult:
    config_path = find_config_path(start_dir, file_name)
    if config_path is None:
        return ProjectConfigResult(path=None, config=None)
    return _read_config(config_path)


def load_project_config_from_file(file_path: str) -> ProjectConfigResult:
    config_path = Path(expand_tilde(file_path))
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    if not config_path.exists():
        return ProjectConfigResult(path=config_path, config=None, error="file not found")
    return _read_config(config_path)
