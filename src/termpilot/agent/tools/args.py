"""Pydantic argument models for the agent's tools.

These models validate the JSON arguments a model sends and generate the
``parameters`` schema advertised in each tool definition.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RunShellCommandArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str = Field(
        ...,
        min_length=1,
        description="The shell command to execute",
    )


class ReadFileArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = Field(
        ...,
        min_length=1,
        description="File path (absolute or relative to the working directory)",
    )
    offset: int = Field(
        1,
        ge=1,
        description="1-based line number to start reading from",
    )
    limit: int = Field(
        2000,
        ge=1,
        description="Maximum number of lines to return",
    )


class WriteFileArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = Field(
        ...,
        min_length=1,
        description="File path to create or overwrite",
    )
    content: str = Field(
        ...,
        description="Complete new content of the file",
    )


class ReplaceInFileArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = Field(
        ...,
        min_length=1,
        description="File to edit",
    )
    old_string: str = Field(
        ...,
        min_length=1,
        description="Exact text to replace, including surrounding context to make it unique",
    )
    new_string: str = Field(
        ...,
        description="Replacement text",
    )
    expected_replacements: int = Field(
        1,
        ge=1,
        description="Number of occurrences expected to be replaced (default 1)",
    )


class ListDirectoryArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = Field(
        ".",
        description="Directory to list, default '.'",
    )


class GlobSearchArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pattern: str = Field(
        ...,
        min_length=1,
        description="Glob pattern such as '**/*.py' or 'src/*.ts'",
    )
    path: str = Field(
        ".",
        description="Directory to search from",
    )


class GrepSearchArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pattern: str = Field(
        ...,
        min_length=1,
        description="Regular expression to search for",
    )
    path: str = Field(
        ".",
        description="Directory to search from",
    )
    include: str | None = Field(
        None,
        description="Optional glob restricting which files are searched, e.g. '*.py'",
    )
    case_sensitive: bool = Field(
        True,
        description="Case sensitive search",
    )
