"""Tool registry: the closed set of tools, their argument models and risk tiers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Type

from pydantic import BaseModel

from .args import (
    GlobSearchArgs,
    GrepSearchArgs,
    ListDirectoryArgs,
    ReadFileArgs,
    ReplaceInFileArgs,
    RunShellCommandArgs,
    WriteFileArgs,
)
from .list_directory import list_directory
from .read_file import read_file
from .replace_in_file import replace_in_file
from .run_shell_command import run_shell_command
from .search import glob_search, grep_search
from .write_file import write_file

ToolHandler = Callable[..., Awaitable[dict]]


class ToolName(str, Enum):
    RUN_SHELL_COMMAND = "run_shell_command"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    REPLACE_IN_FILE = "replace_in_file"
    LIST_DIRECTORY = "list_directory"
    GLOB_SEARCH = "glob_search"
    GREP_SEARCH = "grep_search"

    @classmethod
    def lookup(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    handler: ToolHandler
    args_model: Type[BaseModel]
    description: str
    requires_confirmation: bool


TOOL_SPECS: Mapping[ToolName, ToolSpec] = MappingProxyType(
    {
        ToolName.RUN_SHELL_COMMAND: ToolSpec(
            ToolName.RUN_SHELL_COMMAND,
            run_shell_command,
            RunShellCommandArgs,
            "Execute a shell command in the current working directory and return its output. "
            "Use this for system operations, checking status, installing packages, running builds, etc.",
            True,
        ),
        ToolName.READ_FILE: ToolSpec(
            ToolName.READ_FILE,
            read_file,
            ReadFileArgs,
            "Read a text file with line numbers. Use offset and limit to page through large files.",
            True,
        ),
        ToolName.WRITE_FILE: ToolSpec(
            ToolName.WRITE_FILE,
            write_file,
            WriteFileArgs,
            "Create a file or overwrite it with the given content. Parent directories are created.",
            True,
        ),
        ToolName.REPLACE_IN_FILE: ToolSpec(
            ToolName.REPLACE_IN_FILE,
            replace_in_file,
            ReplaceInFileArgs,
            "Replace exact text in a file. old_string must match the file contents, including "
            "indentation, and occur exactly expected_replacements times.",
            True,
        ),
        ToolName.LIST_DIRECTORY: ToolSpec(
            ToolName.LIST_DIRECTORY,
            list_directory,
            ListDirectoryArgs,
            "List the entries of a directory, marking each as [dir] or [file].",
            False,
        ),
        ToolName.GLOB_SEARCH: ToolSpec(
            ToolName.GLOB_SEARCH,
            glob_search,
            GlobSearchArgs,
            "Find files by glob pattern, respecting .gitignore.",
            False,
        ),
        ToolName.GREP_SEARCH: ToolSpec(
            ToolName.GREP_SEARCH,
            grep_search,
            GrepSearchArgs,
            "Search file contents with a regular expression; returns path:line:text matches.",
            False,
        ),
    }
)

READ_ONLY_TOOLS = frozenset(name for name, spec in TOOL_SPECS.items() if not spec.requires_confirmation)


def _strip_titles(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _strip_titles(value) for key, value in node.items() if key != "title"}
    if isinstance(node, list):
        return [_strip_titles(item) for item in node]
    return node


def parameters_schema(model: Type[BaseModel]) -> dict[str, Any]:
    schema = _strip_titles(model.model_json_schema())
    return {
        "type": "object",
        "properties": schema.get("properties", {}),
        "required": schema.get("required", []),
    }


def tool_definitions(names: "list[ToolName] | None" = None) -> list[dict[str, Any]]:
    """Return OpenAI-style function definitions for the given tools (default: all)."""
    selected = names if names is not None else list(TOOL_SPECS)
    return [
        {
            "type": "function",
            "function": {
                "name": spec.name.value,
                "description": spec.description,
                "parameters": parameters_schema(spec.args_model),
            },
        }
        for spec in (TOOL_SPECS[name] for name in selected)
    ]


__all__ = [
    "READ_ONLY_TOOLS",
    "TOOL_SPECS",
    "ToolHandler",
    "ToolName",
    "ToolSpec",
    "parameters_schema",
    "tool_definitions",
]
