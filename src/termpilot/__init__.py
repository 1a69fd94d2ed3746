"""Terminal-embedded AI agent with sandboxed tools."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
