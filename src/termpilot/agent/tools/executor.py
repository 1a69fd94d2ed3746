"""Run a model-issued tool call and render its result as tool-message text."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from pydantic import ValidationError

from termpilot.agent.messages import ToolCallRequest
from termpilot.agent.tools.registry import TOOL_SPECS, ToolName
from termpilot.agent.tools.sandbox import ToolContext
from termpilot.errors import RunCancelled
from termpilot.log_utils import log_context, log_event

logger = logging.getLogger(__name__)


def format_result(result: dict) -> str:
    error = result.get("error")
    if error:
        return f"Error: {error}"
    content = result.get("content")
    return "" if content is None else str(content)


async def run_tool(call: ToolCallRequest, ctx: ToolContext) -> str:
    """Validate and dispatch one tool call; failures become ``Error: ...`` text.

    Only cancellation propagates, as ``RunCancelled``.
    """
    name = call.function.name
    raw = call.function.arguments or "{}"
    try:
        kwargs: Any = json.loads(raw)
    except json.JSONDecodeError:
        return f"Error: Invalid tool arguments: {raw}"
    if not isinstance(kwargs, dict):
        return f"Error: Invalid tool arguments: {raw}"

    tool = ToolName.lookup(name)
    if tool is None:
        return f"Unknown tool: {name}"
    spec = TOOL_SPECS[tool]

    try:
        parsed = spec.args_model.model_validate(kwargs)
    except ValidationError as exc:
        log_event(logger, "agent.tool.invalid_args", level=logging.WARNING, tool=name, error=str(exc))
        return f"Error: Invalid arguments for {name}: {exc}"

    started = time.monotonic()
    with log_context(tool_call_id=call.id):
        try:
            result = await spec.handler(ctx, **parsed.model_dump())
        except RunCancelled:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            result = {"content": None, "error": str(exc)}
        log_event(
            logger,
            "agent.tool",
            tool=name,
            ok=not result.get("error"),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    return format_result(result)
