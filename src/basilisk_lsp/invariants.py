"""Invariant markers."""

from __future__ import annotations

from typing import NoReturn

from basilisk_lsp.exceptions import NeverThrown


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as unreachable.

    The keyword payload is attached to the raised exception for diagnosis; it
    is not interpreted.
    """
    detail = ", ".join(f"{key}={value!r}" for key, value in env.items())
    message = reason or "never() reached"
    if detail:
        message = f"{message} ({detail})"
    raise NeverThrown(message, env=env)

