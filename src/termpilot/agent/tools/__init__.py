"""Tool registry, sandbox context, and execution helpers."""

from __future__ import annotations

from termpilot.agent.tools.executor import format_result, run_tool
from termpilot.agent.tools.registry import (
    READ_ONLY_TOOLS,
    TOOL_SPECS,
    ToolHandler,
    ToolName,
    ToolSpec,
    tool_definitions,
)
from termpilot.agent.tools.sandbox import BLOCKED_NAMES, PathDenied, ToolContext

__all__ = [
    "BLOCKED_NAMES",
    "READ_ONLY_TOOLS",
    "TOOL_SPECS",
    "PathDenied",
    "ToolContext",
    "ToolHandler",
    "ToolName",
    "ToolSpec",
    "format_result",
    "run_tool",
    "tool_definitions",
]
