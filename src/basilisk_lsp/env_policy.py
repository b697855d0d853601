from __future__ import annotations

import os

from basilisk_lsp.invariants import never

QCC_TIMEOUT_ENV = "BASILISK_LSP_QCC_TIMEOUT_MS"
CLANGD_WAIT_ENV = "BASILISK_LSP_CLANGD_WAIT_MS"
LOG_LEVEL_ENV = "BASILISK_LSP_LOG_LEVEL"

DEFAULT_QCC_TIMEOUT_MS = 30_000
DEFAULT_QCC_PROBE_TIMEOUT_MS = 5_000
DEFAULT_CLANGD_WAIT_MS = 4_000


def env_text(name: str, *, default: str = "") -> str:
    return os.getenv(name, default).strip()


def timeout_seconds_from_env(name: str, *, default_ms: int) -> float:
    raw = env_text(name)
    if not raw:
        return default_ms / 1000
    try:
        value = int(raw)
    except ValueError:
        never("invalid timeout override", name=name, value=raw)
    if value <= 0:
        never("timeout override must be positive", name=name, value=raw)
    return value / 1000


def qcc_timeout_seconds() -> float:
    return timeout_seconds_from_env(QCC_TIMEOUT_ENV, default_ms=DEFAULT_QCC_TIMEOUT_MS)


def clangd_wait_seconds() -> float:
    return timeout_seconds_from_env(CLANGD_WAIT_ENV, default_ms=DEFAULT_CLANGD_WAIT_MS)


def log_level_name(*, default: str = "INFO") -> str:
    return env_text(LOG_LEVEL_ENV, default=default).upper() or default
