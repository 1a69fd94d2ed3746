from __future__ import annotations

import re

from termpilot.agent.tools.sandbox import PathDenied, ToolContext
from termpilot.agent.tools.write_file import unified_diff

_INDENT_RE = re.compile(r"^[ \t]*")


def _indent_of(line: str) -> str:
    match = _INDENT_RE.match(line)
    return match.group(0) if match else ""


def flexible_replace(text: str, old_string: str, new_string: str) -> tuple[str, int]:
    """Replace line windows that equal ``old_string`` once whitespace is trimmed.

    Each replacement is re-indented with the indentation of the first matched
    line. Returns the new text and the number of windows replaced.
    """

    source_lines = text.splitlines(keepends=True)
    old_lines = old_string.strip("\n").splitlines()
    if not old_lines:
        return text, 0
    wanted = [line.strip() for line in old_lines]
    new_lines = new_string.strip("\n").splitlines()
    # Indentation of new lines relative to the first new line is preserved.
    base_new_indent = _indent_of(new_lines[0]) if new_lines else ""

    result: list[str] = []
    count = 0
    i = 0
    window = len(wanted)
    while i < len(source_lines):
        candidate = source_lines[i : i + window]
        if len(candidate) == window and [line.strip() for line in candidate] == wanted:
            indent = _indent_of(candidate[0])
            ending = "\n" if candidate[-1].endswith("\n") else ""
            for new_line in new_lines:
                stripped = new_line[len(base_new_indent) :] if new_line.startswith(base_new_indent) else new_line.lstrip()
                result.append(f"{indent}{stripped}\n" if stripped else "\n")
            if new_lines and not ending:
                result[-1] = result[-1].rstrip("\n")
            count += 1
            i += window
            continue
        result.append(source_lines[i])
        i += 1
    return "".join(result), count


async def replace_in_file(
    ctx: ToolContext,
    path: str,
    old_string: str,
    new_string: str,
    expected_replacements: int = 1,
) -> dict:
    """Replace exact text in a file, falling back to whitespace-insensitive line matching.

    A count that differs from ``expected_replacements`` fails without writing.
    """
    try:
        resolved = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}
    if not resolved.is_file():
        return {"content": None, "error": f"File '{path}' does not exist."}

    try:
        original = resolved.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return {"content": None, "error": f"Error reading file: {exc}"}

    occurrences = original.count(old_string)
    if occurrences:
        if occurrences != expected_replacements:
            return {
                "content": None,
                "error": (
                    f"Expected {expected_replacements} occurrence(s) of old_string in {path} but found "
                    f"{occurrences}. Add more surrounding context to make the match unique, or set "
                    f"expected_replacements to {occurrences}."
                ),
            }
        updated = original.replace(old_string, new_string)
        strategy = "exact"
    else:
        updated, occurrences = flexible_replace(original, old_string, new_string)
        if occurrences == 0:
            return {
                "content": None,
                "error": (
                    f"Could not find old_string in {path}. The file may have changed; "
                    "read it again and copy the text exactly."
                ),
            }
        if occurrences != expected_replacements:
            return {
                "content": None,
                "error": (
                    f"Expected {expected_replacements} occurrence(s) of old_string in {path} but found "
                    f"{occurrences} (ignoring whitespace). Add more context or set expected_replacements "
                    f"to {occurrences}."
                ),
            }
        strategy = "flexible"

    if not await ctx.confirm(f"Edit file: {path} ({occurrences} replacement(s))"):
        return {"content": "User declined to edit this file.", "error": None}

    try:
        resolved.write_text(updated, encoding="utf-8")
    except OSError as exc:
        return {"content": None, "error": f"Error writing file: {exc}"}

    summary = f"Replaced {occurrences} occurrence(s) in {path} ({strategy} match)"
    diff = unified_diff(original, updated, path)
    return {"content": f"{summary}\n{diff}" if diff else summary, "error": None, "replacements": occurrences}
