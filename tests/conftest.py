from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))


import pytest

from basilisk_lsp import qcc
from basilisk_lsp.env_policy import CLANGD_WAIT_ENV, LOG_LEVEL_ENV, QCC_TIMEOUT_ENV


@pytest.fixture(autouse=True)
def _isolated_toolchain(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    for name in ("BASILISK", QCC_TIMEOUT_ENV, CLANGD_WAIT_ENV, LOG_LEVEL_ENV):
        monkeypatch.delenv(name, raising=False)
    empty_bin = tmp_path_factory.mktemp("empty-bin")
    monkeypatch.setenv("PATH", str(empty_bin))
    monkeypatch.setattr(qcc, "_HOMEBREW_QCC", str(empty_bin / "homebrew-qcc"))
    monkeypatch.setattr(qcc, "_LOCAL_QCC", str(empty_bin / "local-qcc"))


@pytest.fixture
def fake_executable(tmp_path: Path):
    def _make(name: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
        path.chmod(0o755)
        return path

    return _make
