"""Basilisk C language server package root."""

from basilisk_lsp.exceptions import BasiliskLspError, NeverThrown
from basilisk_lsp.invariants import never

__all__ = ["__version__", "BasiliskLspError", "NeverThrown", "never"]

__version__ = "0.1.0"
