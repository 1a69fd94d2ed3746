"""glob/grep search: git-aware inside a work tree, a .gitignore-honoring walk elsewhere."""

from __future__ import annotations

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Callable, Iterator

import pathspec  # type: ignore

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.tools.sandbox import PathDenied, ToolContext, is_sensitive_path

MAX_GLOB_RESULTS = 200
MAX_GREP_RESULTS = 100
MAX_GREP_LINE_CHARS = 300
GIT_TIMEOUT_S = 15.0

_DEFAULT_IGNORES = {
    ".git",
    ".hg",
    ".svn",
    ".cache",
    ".pytest_cache",
    ".ruff_cache",
    ".mypy_cache",
    ".tox",
    ".nox",
    ".venv",
    "venv",
    "__pycache__",
    "node_modules",
}


def is_default_ignored(name: str) -> bool:
    return name in _DEFAULT_IGNORES


def _load_gitignore_patterns(root: Path) -> list[str]:
    gitignore_path = root / ".gitignore"
    if not gitignore_path.exists():
        return []
    try:
        with gitignore_path.open(encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip() and not line.strip().startswith("#")]
    except OSError:
        return []


def _build_matcher(patterns: list[str]) -> Callable[[str, bool], bool]:
    spec = pathspec.GitIgnoreSpec.from_lines(patterns) if patterns else None

    def _match(rel: str, is_dir: bool) -> bool:
        if spec is None:
            return False
        return spec.match_file(rel + ("/" if is_dir else ""))

    return _match


def walk_files(root: Path) -> Iterator[str]:
    """Yield POSIX-style relative file paths under ``root``, pruning ignored directories."""
    ignored = _build_matcher(_load_gitignore_patterns(root))
    for current, dirs, files in os.walk(root):
        rel_root = Path(current).relative_to(root)
        kept = []
        for d in sorted(dirs):
            rel_dir = (rel_root / d).as_posix()
            if is_default_ignored(d) or ignored(rel_dir, True):
                continue
            kept.append(d)
        dirs[:] = kept
        for f in sorted(files):
            rel_file = (rel_root / f).as_posix()
            if ignored(rel_file, False):
                continue
            yield rel_file


async def _run_git(args: list[str], cwd: Path, cancel: CancelToken) -> tuple[int, str] | None:
    """Run git and return (returncode, stdout); None when git is unavailable."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None
    try:
        stdout, _ = await cancel.guard(asyncio.wait_for(proc.communicate(), timeout=GIT_TIMEOUT_S))
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        return None
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
    return proc.returncode or 0, stdout.decode("utf-8", errors="replace")


async def _in_git_work_tree(root: Path, cancel: CancelToken) -> bool:
    result = await _run_git(["rev-parse", "--is-inside-work-tree"], root, cancel)
    return result is not None and result[0] == 0 and result[1].strip() == "true"


def _visible(ctx: ToolContext, root: Path, rel: str) -> bool:
    return not is_sensitive_path(root / rel, ctx.root)


async def _candidate_files(root: Path, cancel: CancelToken) -> list[str]:
    """Tracked plus untracked non-ignored files in a work tree, else the filtered walk."""
    if await _in_git_work_tree(root, cancel):
        # -z keeps non-ASCII names unquoted.
        listed = await _run_git(["ls-files", "-z", "--cached", "--others", "--exclude-standard"], root, cancel)
        if listed is not None and listed[0] == 0:
            return sorted({rel for rel in listed[1].split("\0") if rel})
    return sorted(set(walk_files(root)))


async def glob_search(ctx: ToolContext, pattern: str, path: str = ".") -> dict:
    """Find files whose path matches a glob pattern."""
    try:
        root = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}
    if not root.is_dir():
        return {"content": None, "error": f"'{path}' is not a directory."}

    spec = pathspec.GitIgnoreSpec.from_lines([pattern])
    matches: list[str] = []
    truncated = False
    for rel in await _candidate_files(root, ctx.cancel):
        if not (spec.match_file(rel) or fnmatch.fnmatch(rel, pattern)):
            continue
        if not _visible(ctx, root, rel):
            continue
        if len(matches) >= MAX_GLOB_RESULTS:
            truncated = True
            break
        matches.append(rel)

    if not matches:
        return {"content": f"No files matched '{pattern}'.", "error": None}
    content = "\n".join(matches)
    if truncated:
        content += f"\n[truncated to {MAX_GLOB_RESULTS} results]"
    return {"content": content, "error": None}


def _grep_files(root: Path, files: list[str], regex: re.Pattern[str], include: str | None) -> Iterator[str]:
    for rel in files:
        if include and not fnmatch.fnmatch(os.path.basename(rel), include) and not fnmatch.fnmatch(rel, include):
            continue
        try:
            text = (root / rel).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            # Binary, or deleted since git listed it.
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                yield f"{rel}:{number}:{line}"


async def grep_search(
    ctx: ToolContext,
    pattern: str,
    path: str = ".",
    include: str | None = None,
    case_sensitive: bool = True,
) -> dict:
    """Search file contents for a regular expression; output is ``path:line:text``.

    The pattern is always Python ``re`` syntax. Inside a git work tree git only
    picks the files to read.
    """
    try:
        root = ctx.resolve(path)
    except PathDenied as exc:
        return {"content": None, "error": str(exc)}
    if not root.is_dir():
        return {"content": None, "error": f"'{path}' is not a directory."}
    try:
        regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as exc:
        return {"content": None, "error": f"Invalid regular expression: {exc}"}

    files = [rel for rel in await _candidate_files(root, ctx.cancel) if _visible(ctx, root, rel)]
    hits: list[str] = []
    for hit in _grep_files(root, files, regex, include):
        hits.append(hit)
        if len(hits) > MAX_GREP_RESULTS:
            break

    if not hits:
        return {"content": f"No matches for '{pattern}'.", "error": None}
    shown = [
        line if len(line) <= MAX_GREP_LINE_CHARS else line[:MAX_GREP_LINE_CHARS] + "..."
        for line in hits[:MAX_GREP_RESULTS]
    ]
    content = "\n".join(shown)
    if len(hits) > MAX_GREP_RESULTS:
        content += f"\n[truncated to {MAX_GREP_RESULTS} matches]"
    return {"content": content, "error": None}
