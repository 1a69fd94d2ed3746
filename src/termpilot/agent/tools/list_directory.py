from __future__ import annotations

from termpilot.agent.tools.sandbox import PathDenied, ToolContext
from termpilot.agent.tools.search import is_default_ignored

MAX_ENTRIES = 500


async def list_directory(ctx: ToolContext, path: str = ".") -> dict:
    """List one directory, directories first, each tagged ``[dir]`` or ``[file]``."""
    try:
        resolved = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}
    if not resolved.exists():
        return {"content": None, "error": f"Directory '{path}' does not exist."}
    if not resolved.is_dir():
        return {"content": None, "error": f"'{path}' is not a directory."}

    try:
        entries = sorted(resolved.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    except OSError as exc:
        return {"content": None, "error": f"Error listing directory: {exc}"}

    items = [f"{entry.name} [{'dir' if entry.is_dir() else 'file'}]" for entry in entries if not is_default_ignored(entry.name)]
    truncated = len(items) > MAX_ENTRIES
    items = items[:MAX_ENTRIES]
    content = "\n".join(items) if items else "(empty directory)"
    if truncated:
        content += f"\n[truncated to {MAX_ENTRIES} entries]"
    return {"content": content, "error": None}
