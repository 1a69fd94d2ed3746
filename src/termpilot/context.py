"""Recent terminal output kept for prompt context."""

from __future__ import annotations

import os
import re
from collections import deque
from dataclasses import dataclass

ANSI_RE = re.compile(
    r"\x1b\[[0-9;?]*[a-zA-Z]"  # CSI
    r"|\x1b\].*?(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[()][0-9A-B]"  # charset
    r"|\x1b[>=<]"
)
LINE_SPLIT_RE = re.compile(r"\r?\n")
SNAPSHOT_LINES = 50


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def default_shell() -> str:
    return os.environ.get("SHELL") or os.environ.get("COMSPEC") or "unknown"


@dataclass(frozen=True)
class ContextSnapshot:
    cwd: str
    scrollback: str
    shell: str


class ContextBuffer:
    """Bounded ring of ANSI-stripped output lines plus the last reported cwd.

    ``total_lines`` only ever grows; callers remember it as a checkpoint and
    later ask for what arrived since.
    """

    def __init__(self, max_lines: int = 100) -> None:
        self.max_lines = max(1, max_lines)
        self._lines: deque[str] = deque(maxlen=self.max_lines)
        self.total_lines = 0
        self.cwd = ""

    def push_output(self, data: bytes | str) -> None:
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        lines = LINE_SPLIT_RE.split(strip_ansi(text))
        self.total_lines += len(lines)
        self._lines.extend(lines)

    def lines(self) -> list[str]:
        return list(self._lines)

    def output_since(self, checkpoint: int) -> tuple[str, int]:
        """Return ``(text, new_checkpoint)`` for lines pushed after ``checkpoint``."""
        new_lines = self.total_lines - checkpoint
        if new_lines <= 0:
            return "", self.total_lines
        available = min(new_lines, len(self._lines))
        recent = list(self._lines)[-available:]
        return "\n".join(recent), self.total_lines

    def snapshot(self) -> ContextSnapshot:
        recent = list(self._lines)[-SNAPSHOT_LINES:]
        return ContextSnapshot(cwd=self.cwd, scrollback="\n".join(recent), shell=default_shell())

    def to_prompt(self) -> str:
        snap = self.snapshot()
        parts = ["<terminal_context>", f"cwd: {snap.cwd}", f"shell: {snap.shell}"]
        if snap.scrollback:
            parts.extend(["", "Recent terminal output:", snap.scrollback])
        parts.append("</terminal_context>")
        return "\n".join(parts)
