from __future__ import annotations

from termpilot.agent.tools.sandbox import PathDenied, ToolContext

DEFAULT_LINE_LIMIT = 2000
MAX_LINE_CHARS = 2000


async def read_file(ctx: ToolContext, path: str, offset: int = 1, limit: int = DEFAULT_LINE_LIMIT) -> dict:
    """Read a file with line numbers.

    Args:
        path: File path, relative to the session cwd or absolute inside it.
        offset: 1-based first line to return.
        limit: Maximum number of lines to return.

    Returns:
        dict with 'content' (numbered lines, plus a truncation notice when
        lines were left out) and 'error'.
    """
    try:
        resolved = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}

    if not await ctx.confirm(f"Read file: {path}"):
        return {"content": "User declined to read this file.", "error": None}

    if not resolved.exists():
        return {"content": None, "error": f"File '{path}' does not exist."}
    if not resolved.is_file():
        return {"content": None, "error": f"'{path}' is not a file."}

    try:
        lines = resolved.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        return {"content": None, "error": f"Error reading file: {exc}"}

    total = len(lines)
    start = max(offset, 1) - 1
    if total and start >= total:
        return {"content": None, "error": f"Offset {offset} is beyond the end of the file ({total} lines)."}
    selected = lines[start : start + max(limit, 1)]
    width = len(str(start + len(selected))) if selected else 1
    numbered = []
    for number, line in enumerate(selected, start=start + 1):
        if len(line) > MAX_LINE_CHARS:
            line = line[:MAX_LINE_CHARS] + "... (line truncated)"
        numbered.append(f"{number:>{width}}\t{line}")
    content = "\n".join(numbered)

    shown_end = start + len(selected)
    if start > 0 or shown_end < total:
        content += (
            f"\n\n[Showing lines {start + 1}-{shown_end} of {total}. "
            f"Use offset={shown_end + 1} to read more.]"
            if shown_end < total
            else f"\n\n[Showing lines {start + 1}-{shown_end} of {total}.]"
        )
    return {"content": content or "(empty file)", "error": None, "total_lines": total}
