from __future__ import annotations

import os
import shutil
from pathlib import Path
from urllib.parse import unquote, urlparse


def expand_tilde(value: str) -> str:
    if value.startswith("~"):
        return str(Path.home()) + value[1:]
    return value


def resolve_path_setting(value: str, root: Path | str | None) -> str:
    """Expand ``~`` and anchor a relative path at ``root``; empty stays empty."""
    if not value:
        return ""
    expanded = expand_tilde(value)
    if os.path.isabs(expanded):
        return expanded
    if root is None:
        return expanded
    return str(Path(root) / expanded)


def resolve_executable(command: str) -> str | None:
    if not command:
        return None
    expanded = expand_tilde(command)
    if os.path.isabs(expanded):
        if os.path.isfile(expanded) and os.access(expanded, os.X_OK):
            return expanded
        return None
    return shutil.which(expanded)


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


def path_to_uri(path: Path | str) -> str:
    return Path(path).resolve().as_uri()

