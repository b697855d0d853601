from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Sequence

from basilisk_lsp.bridge import BridgeConfig, ClangdBridge
from basilisk_lsp.exceptions import BridgeStartError
from basilisk_lsp.paths import resolve_path_setting
from basilisk_lsp.settings import BasiliskSettings, ClangdMode, resolve_basilisk_root

logger = logging.getLogger(__name__)

BridgeFactory = Callable[[BridgeConfig], ClangdBridge]

_BASILISK_INCLUDE_DIRS = ("grid", "navier-stokes", "ast")


def derive_fallback_flags(basilisk_root: str | None) -> list[str]:
    if not basilisk_root:
        return []
    root = Path(basilisk_root)
    return [f"-I{root}", *(f"-I{root / name}" for name in _BASILISK_INCLUDE_DIRS)]


def merge_flags(primary: Iterable[str], secondary: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for flag in [*primary, *secondary]:
        if flag in seen:
            continue
        seen.add(flag)
        merged.append(flag)
    return merged


def bridge_enabled(settings: BasiliskSettings, qcc_available: bool) -> bool:
    clangd = settings.clangd
    return clangd.enabled and clangd.mode is ClangdMode.PROXY and not qcc_available


def build_bridge_config(
    settings: BasiliskSettings,
    *,
    root: Path | None,
    root_uri: str | None = None,
    workspace_folders: Sequence[tuple[str, str]] = (),
) -> BridgeConfig:
    clangd = settings.clangd
    basilisk_root = resolve_basilisk_root(settings, root)
    compile_commands_dir = resolve_path_setting(clangd.compile_commands_dir, root) or (
        basilisk_root or ""
    )
    args = list(clangd.args)
    if compile_commands_dir:
        args.append(f"--compile-commands-dir={compile_commands_dir}")
    fallback_flags = merge_flags(clangd.fallback_flags, derive_fallback_flags(basilisk_root))
    return BridgeConfig(
        path=clangd.path,
        args=tuple(args),
        compile_commands_dir=compile_commands_dir,
        fallback_flags=tuple(fallback_flags),
        root_uri=root_uri,
        workspace_folders=tuple(workspace_folders),
    )


class BridgeGate:
    """Holds at most one clangd bridge and restarts it only when its fingerprint changes.

    ``ensure_ready`` calls are serialized: a caller arriving while another
    restart is in flight waits for it and then sees the bridge it produced.
    """

    def __init__(
        self,
        bridge_factory: BridgeFactory,
        *,
        on_stopped: Callable[[], None] | None = None,
    ) -> None:
        self._bridge_factory = bridge_factory
        self._on_stopped = on_stopped
        self._lock = asyncio.Lock()
        self._bridge: ClangdBridge | None = None
        self._fingerprint: str | None = None

    @property
    def bridge(self) -> ClangdBridge | None:
        return self._bridge

    @property
    def fingerprint(self) -> str | None:
        return self._fingerprint

    def ready_bridge(self) -> ClangdBridge | None:
        bridge = self._bridge
        if bridge is not None and bridge.ready:
            return bridge
        return None

    async def ensure_ready(self, config: BridgeConfig | None) -> bool:
        """Converge on ``config``; ``None`` means no bridge should run.

        Returns ``True`` when a new bridge was started by this call, so the
        caller can re-announce open documents to it.
        """
        async with self._lock:
            if config is None:
                await self._stop_locked()
                return False
            fingerprint = config.fingerprint()
            bridge = self._bridge
            if bridge is not None and bridge.ready and fingerprint == self._fingerprint:
                return False
            await self._stop_locked()
            bridge = self._bridge_factory(config)
            self._bridge = bridge
            self._fingerprint = fingerprint
            if not await bridge.start():
                await self._stop_locked()
                raise BridgeStartError(f"clangd failed to initialize ({config.path})")
            logger.info("clangd bridge ready (%s)", " ".join(config.command))
            return True

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        bridge = self._bridge
        self._bridge = None
        self._fingerprint = None
        if bridge is None:
            return
        await bridge.stop()
        if self._on_stopped is not None:
            self._on_stopped()
