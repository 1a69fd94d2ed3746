from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from termpilot.agent.tools import ToolContext
from termpilot.agent.tools.search import glob_search, grep_search, walk_files


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("needle = 1\n")
    (tmp_path / "src" / "b.txt").write_text("a needle here\nnothing\n")
    (tmp_path / "top.py").write_text("print('hi')\n")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "out.py").write_text("needle\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.py").write_text("needle\n")
    (tmp_path / ".gitignore").write_text("# generated\nbuild/\n")
    (tmp_path / ".env").write_text("SECRET_TOKEN=needle\n")
    return tmp_path


def test_walk_files_prunes_ignored_directories(project: Path):
    files = list(walk_files(project))

    assert "src/a.py" in files
    assert "top.py" in files
    assert not any(f.startswith(("build/", "node_modules/")) for f in files)


@pytest.mark.asyncio
async def test_glob_outside_git_honors_gitignore(project: Path):
    result = await glob_search(ToolContext(cwd=str(project)), "**/*.py")

    assert result["content"] == "src/a.py\ntop.py"


@pytest.mark.asyncio
async def test_glob_hides_sensitive_files(project: Path):
    result = await glob_search(ToolContext(cwd=str(project)), ".env*")

    assert result["content"] == "No files matched '.env*'."


@pytest.mark.asyncio
async def test_grep_outside_git(project: Path):
    result = await grep_search(ToolContext(cwd=str(project)), "needle")

    assert result["content"].splitlines() == ["src/a.py:1:needle = 1", "src/b.txt:1:a needle here"]


@pytest.mark.asyncio
async def test_grep_include_and_case(project: Path):
    ctx = ToolContext(cwd=str(project))

    only_py = await grep_search(ctx, "needle", include="*.py")
    assert only_py["content"] == "src/a.py:1:needle = 1"

    assert (await grep_search(ctx, "NEEDLE"))["content"] == "No matches for 'NEEDLE'."
    insensitive = await grep_search(ctx, "NEEDLE", case_sensitive=False)
    assert len(insensitive["content"].splitlines()) == 2


@pytest.mark.asyncio
async def test_grep_invalid_regex(project: Path):
    result = await grep_search(ToolContext(cwd=str(project)), "(unclosed")

    assert result["error"].startswith("Invalid regular expression")


@pytest.mark.asyncio
async def test_search_path_must_stay_inside_cwd(project: Path):
    ctx = ToolContext(cwd=str(project / "src"))

    assert "Access denied" in (await glob_search(ctx, "*", path=".."))["error"]
    assert "Access denied" in (await grep_search(ctx, "x", path=".."))["error"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_search_inside_git_work_tree(tmp_path: Path):
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    (tmp_path / ".gitignore").write_text("ignored.py\n")
    (tmp_path / "a.py").write_text("needle\n")
    (tmp_path / "ignored.py").write_text("needle\n")
    ctx = ToolContext(cwd=str(tmp_path))

    assert (await glob_search(ctx, "*.py"))["content"] == "a.py"
    assert (await grep_search(ctx, "needle"))["content"] == "a.py:1:needle"


def _git_repo(tmp_path: Path) -> Path:
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    return tmp_path


@pytest.mark.asyncio
async def test_grep_uses_python_regex_syntax_outside_git(tmp_path: Path):
    (tmp_path / "a.txt").write_text("port = 8080\n")

    result = await grep_search(ToolContext(cwd=str(tmp_path)), r"port = \d+")

    assert result["content"] == "a.txt:1:port = 8080"


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_grep_uses_python_regex_syntax_inside_git(tmp_path: Path):
    root = _git_repo(tmp_path)
    (root / "a.txt").write_text("port = 8080\n")
    ctx = ToolContext(cwd=str(root))

    assert (await grep_search(ctx, r"port = \d+"))["content"] == "a.txt:1:port = 8080"
    assert (await grep_search(ctx, r"(?i)PORT\s=\s\d{4}"))["content"] == "a.txt:1:port = 8080"
    assert (await grep_search(ctx, "(unclosed"))["error"].startswith("Invalid regular expression")


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_search_inside_git_finds_non_ascii_file_names(tmp_path: Path):
    root = _git_repo(tmp_path)
    (root / "café.py").write_text("needle\n")
    (root / "plain.py").write_text("other\n")
    ctx = ToolContext(cwd=str(root))

    assert (await glob_search(ctx, "*.py"))["content"] == "café.py\nplain.py"
    assert (await grep_search(ctx, "needle"))["content"] == "café.py:1:needle"
