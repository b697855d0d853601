from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from basilisk_lsp.bridge import BridgeConfig, ClangdBridge
from basilisk_lsp.exceptions import BridgeStartError, ProcessExitedError
from basilisk_lsp.gate import (
    BridgeGate,
    bridge_enabled,
    build_bridge_config,
    derive_fallback_flags,
    merge_flags,
)
from basilisk_lsp.settings import BasiliskSettings

from tests.process_fakes import FailingFactory, FakeClangdFactory


def _gate(factory: object, stopped: list[int] | None = None) -> BridgeGate:
    def make(config: BridgeConfig) -> ClangdBridge:
        return ClangdBridge(config, process_factory=factory)  # type: ignore[arg-type]

    return BridgeGate(make, on_stopped=(lambda: stopped.append(1)) if stopped is not None else None)


def test_equal_fingerprint_reuses_running_bridge() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        gate = _gate(factory)
        config = BridgeConfig(path="clangd", fallback_flags=("-I/b",))
        assert await gate.ensure_ready(config) is True
        first = gate.bridge
        assert await gate.ensure_ready(BridgeConfig(path="clangd", fallback_flags=("-I/b",), root_uri="file:///x")) is False
        assert gate.bridge is first
        assert len(factory.processes) == 1
        await gate.stop()

    asyncio.run(scenario())


def test_changed_fingerprint_replaces_bridge_exactly_once() -> None:
    async def scenario() -> None:
        stopped: list[int] = []
        factory = FakeClangdFactory()
        gate = _gate(factory, stopped)
        await gate.ensure_ready(BridgeConfig(path="clangd"))
        old = gate.bridge
        assert old is not None
        pending = asyncio.create_task(old.request("textDocument/hover", {}))
        await asyncio.sleep(0)
        assert await gate.ensure_ready(BridgeConfig(path="clangd", fallback_flags=("-DNEW",))) is True
        with pytest.raises(ProcessExitedError):
            await pending
        assert len(factory.processes) == 2
        assert factory.processes[0].returncode is not None
        assert gate.ready_bridge() is gate.bridge is not old
        assert stopped == [1]
        await gate.stop()

    asyncio.run(scenario())


def test_concurrent_callers_converge_on_one_spawn() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        gate = _gate(factory)
        config = BridgeConfig(path="clangd")
        results = await asyncio.gather(*(gate.ensure_ready(config) for _ in range(4)))
        assert sorted(results) == [False, False, False, True]
        assert len(factory.processes) == 1
        await gate.stop()

    asyncio.run(scenario())


def test_failed_start_raises_and_clears_bridge() -> None:
    async def scenario() -> None:
        factory = FailingFactory()
        gate = _gate(factory)
        with pytest.raises(BridgeStartError):
            await gate.ensure_ready(BridgeConfig(path="/nowhere/clangd"))
        assert gate.bridge is None
        assert gate.fingerprint is None
        assert gate.ready_bridge() is None

    asyncio.run(scenario())


def test_none_config_stops_running_bridge() -> None:
    async def scenario() -> None:
        factory = FakeClangdFactory()
        gate = _gate(factory)
        await gate.ensure_ready(BridgeConfig(path="clangd"))
        assert await gate.ensure_ready(None) is False
        assert gate.bridge is None
        assert factory.last.returncode is not None

    asyncio.run(scenario())


def test_fallback_flags_cover_basilisk_include_dirs() -> None:
    assert derive_fallback_flags(None) == []
    assert derive_fallback_flags("/opt/basilisk/src") == [
        "-I/opt/basilisk/src",
        "-I/opt/basilisk/src/grid",
        "-I/opt/basilisk/src/navier-stokes",
        "-I/opt/basilisk/src/ast",
    ]


def test_merge_flags_keeps_first_occurrence() -> None:
    assert merge_flags(["-DA", "-I/x"], ["-I/x", "-DB", "-DA"]) == ["-DA", "-I/x", "-DB"]


def test_bridge_enabled_only_in_proxy_mode_without_qcc() -> None:
    proxy = BasiliskSettings.model_validate({"clangd": {"enabled": True, "mode": "proxy"}})
    augment = BasiliskSettings.model_validate({"clangd": {"enabled": True, "mode": "augment"}})
    disabled = BasiliskSettings.model_validate({"clangd": {"enabled": False}})
    assert bridge_enabled(proxy, qcc_available=False) is True
    assert bridge_enabled(proxy, qcc_available=True) is False
    assert bridge_enabled(augment, qcc_available=False) is False
    assert bridge_enabled(disabled, qcc_available=False) is False


def test_build_bridge_config_uses_basilisk_root(tmp_path: Path) -> None:
    settings = BasiliskSettings.model_validate(
        {"basiliskPath": str(tmp_path), "clangd": {"path": "clangd-17", "args": ["--log=error"], "fallbackFlags": ["-DMY"]}}
    )
    config = build_bridge_config(settings, root=None, root_uri="file:///w")
    assert config.path == "clangd-17"
    assert config.args == ("--log=error", f"--compile-commands-dir={tmp_path}")
    assert config.fallback_flags[0] == "-DMY"
    assert f"-I{tmp_path}" in config.fallback_flags
    assert config.root_uri == "file:///w"
