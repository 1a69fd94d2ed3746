from __future__ import annotations

import difflib

from termpilot.agent.tools.sandbox import PathDenied, ToolContext

MAX_DIFF_CHARS = 4000


async def write_file(ctx: ToolContext, path: str, content: str) -> dict:
    """Create or overwrite a file with ``content`` after approval."""
    try:
        resolved = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}
    if resolved.is_dir():
        return {"content": None, "error": f"Path '{path}' is a directory"}

    existed = resolved.exists()
    if not await ctx.confirm(f"{'Overwrite' if existed else 'Create'} file: {path} ({len(content)} chars)"):
        return {"content": "User declined to write this file.", "error": None}

    old_text = ""
    if existed:
        try:
            old_text = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            old_text = ""

    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
    except OSError as exc:
        return {"content": None, "error": f"Error writing file: {exc}"}

    summary = f"Wrote {len(content.encode('utf-8'))} bytes to {path}"
    diff = unified_diff(old_text, content, path)
    return {"content": f"{summary}\n{diff}" if diff else summary, "error": None}


def unified_diff(old_text: str, new_text: str, path: str) -> str:
    diff = "".join(
        difflib.unified_diff(
            old_text.splitlines(keepends=True),
            new_text.splitlines(keepends=True),
            fromfile=path,
            tofile=path,
        )
    )
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
    return diff
