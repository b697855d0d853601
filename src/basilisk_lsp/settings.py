from __future__ import annotations

import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Callable, List

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from basilisk_lsp.config import ProjectConfigResult, load_project_config
from basilisk_lsp.json_types import JSONObject, JSONValue
from basilisk_lsp.paths import resolve_executable, resolve_path_setting

logger = logging.getLogger(__name__)

ConfigErrorCallback = Callable[[Path, str], None]


class DiagnosticsMode(StrEnum):
    ALL = "all"
    FILTERED = "filtered"
    NONE = "none"


class ClangdMode(StrEnum):
    PROXY = "proxy"
    AUGMENT = "augment"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class QccSettings(_CamelModel):
    include_paths: List[str] = []


class ClangdSettings(_CamelModel):
    enabled: bool = True
    mode: ClangdMode = ClangdMode.PROXY
    path: str = "clangd"
    args: List[str] = []
    compile_commands_dir: str = ""
    fallback_flags: List[str] = []
    diagnostics_mode: DiagnosticsMode = DiagnosticsMode.FILTERED


class BasiliskSettings(_CamelModel):
    qcc_path: str = "qcc"
    basilisk_path: str = ""
    enable_diagnostics: bool = True
    diagnostics_on_save: bool = True
    diagnostics_on_type: bool = False
    max_number_of_problems: int = 100
    qcc: QccSettings = QccSettings()
    clangd: ClangdSettings = ClangdSettings()

    def to_payload(self) -> JSONObject:
        return self.model_dump(mode="json", by_alias=True)


DEFAULT_SETTINGS = BasiliskSettings()


def _section(value: JSONValue) -> JSONObject:
    return value if isinstance(value, dict) else {}


def merge_string_lists(primary: List[str], secondary: List[str]) -> List[str]:
    seen: set[str] = set()
    merged: List[str] = []
    for entry in [*primary, *secondary]:
        if not entry or entry in seen:
            continue
        seen.add(entry)
        merged.append(entry)
    return merged


def merge_settings(base: BasiliskSettings, partial: JSONValue) -> BasiliskSettings:
    """Layer a camelCase settings payload over ``base``.

    Scalars replace, ``qcc.includePaths`` is unioned, and the ``clangd``
    section is shallow-merged. A payload that does not validate leaves
    ``base`` untouched.
    """
    if not isinstance(partial, dict) or not partial:
        return base
    payload = base.to_payload()
    partial_qcc = _section(partial.get("qcc"))
    partial_clangd = _section(partial.get("clangd"))
    merged: JSONObject = {**payload, **partial}
    include_paths = partial_qcc.get("includePaths")
    merged["qcc"] = {
        **_section(payload.get("qcc")),
        **partial_qcc,
        "includePaths": merge_string_lists(
            base.qcc.include_paths,
            [item for item in include_paths if isinstance(item, str)]
            if isinstance(include_paths, list)
            else [],
        ),
    }
    merged["clangd"] = {**_section(payload.get("clangd")), **partial_clangd}
    try:
        return BasiliskSettings.model_validate(merged)
    except ValidationError as exc:
        logger.warning("Ignoring invalid basilisk settings: %s", exc)
        return base


def project_config_to_settings(config: JSONObject) -> JSONObject:
    partial: JSONObject = {}
    for key in ("qccPath", "basiliskPath"):
        value = config.get(key)
        if isinstance(value, str) and value:
            partial[key] = value
    include_paths = _section(config.get("qcc")).get("includePaths")
    if isinstance(include_paths, list):
        partial["qcc"] = {"includePaths": include_paths}
    clangd = config.get("clangd")
    if isinstance(clangd, dict):
        partial["clangd"] = dict(clangd)
    return partial


def apply_project_config(
    base: BasiliskSettings,
    result: ProjectConfigResult,
    *,
    on_error: ConfigErrorCallback | None = None,
) -> BasiliskSettings:
    if result.error and result.path is not None:
        if on_error is not None:
            on_error(result.path, result.error)
        else:
            logger.warning("Failed to parse %s: %s", result.path, result.error)
    if result.config is None:
        return base
    return merge_settings(base, project_config_to_settings(result.config))


def resolve_include_paths(settings: BasiliskSettings, base_dir: Path | None) -> BasiliskSettings:
    include_paths = settings.qcc.include_paths
    if not include_paths:
        return settings
    resolved = [resolve_path_setting(entry, base_dir) for entry in include_paths]
    return settings.model_copy(update={"qcc": QccSettings(include_paths=resolved)})


def resolve_settings(
    *,
    start_dir: Path | None = None,
    root: Path | None = None,
    editor: JSONValue = None,
    overrides: JSONValue = None,
    project_config: ProjectConfigResult | None = None,
    on_config_error: ConfigErrorCallback | None = None,
) -> BasiliskSettings:
    """Resolve settings by precedence: defaults, project config, editor, overrides.

    ``project_config`` short-circuits the upward search from ``start_dir``.
    Relative include paths resolve against ``root``, falling back to
    ``start_dir``.
    """
    settings = DEFAULT_SETTINGS
    if project_config is None and start_dir is not None:
        project_config = load_project_config(start_dir)
    if project_config is not None:
        settings = apply_project_config(settings, project_config, on_error=on_config_error)
    settings = merge_settings(settings, editor)
    settings = merge_settings(settings, overrides)
    return resolve_include_paths(settings, root if root is not None else start_dir)


def resolve_basilisk_root(settings: BasiliskSettings, root: Path | str | None) -> str | None:
    """Basilisk install root from settings, then ``$BASILISK``, then qcc's directory."""
    if settings.basilisk_path:
        return resolve_path_setting(settings.basilisk_path, root)
    env_path = os.environ.get("BASILISK")
    if env_path:
        return resolve_path_setting(env_path, root)
    qcc = resolve_executable(settings.qcc_path) or resolve_executable("qcc")
    if qcc is not None:
        return str(Path(qcc).parent)
    return None
