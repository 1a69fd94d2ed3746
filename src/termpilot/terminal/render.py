"""ANSI rendering helpers for text the agent writes into a raw terminal."""

from __future__ import annotations

from rich.color import ColorSystem
from rich.style import Style

ERASE_CHAR = "\b \b"

CONTENT = Style(color="green")
THOUGHT = Style(color="bright_black", dim=True)
PROMPT_MARK = Style(color="cyan")
PROMPT_TEXT = Style(color="white")
CONFIRM = Style(color="yellow")
HINT = Style(color="bright_black")
COMMAND_OUTPUT = Style(dim=True)
ERROR = Style(color="red")


def crlf(text: str) -> str:
    """Translate bare ``\\n`` to ``\\r\\n``; the terminal is in raw mode."""
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


def paint(text: str, style: Style) -> str:
    if not text:
        return ""
    return style.render(text, color_system=ColorSystem.STANDARD)


def encode(text: str) -> bytes:
    return text.encode("utf-8", errors="replace")
