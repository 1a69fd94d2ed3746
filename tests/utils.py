from __future__ import annotations

import json
from typing import Any, Sequence

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.events import Content, Finished, StreamEvent, ToolCall
from termpilot.agent.messages import FunctionCall, Message, ToolCallRequest


class ScriptedTransport:
    """Stand-in for ``ChatTransport`` that replays one event script per turn.

    The last script repeats once the list is exhausted.
    """

    def __init__(self, turns: Sequence[Sequence[StreamEvent]]) -> None:
        self.turns = [list(turn) for turn in turns] or [[Finished()]]
        self.calls: list[list[Message]] = []
        self.tools_seen: list[Any] = []

    async def stream_with_tools(self, messages, tools, cancel: CancelToken):
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        script = self.turns[min(len(self.calls), len(self.turns)) - 1]
        for event in script:
            yield event


def tool_call(call_id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(ToolCallRequest(id=call_id, function=FunctionCall(name=name, arguments=json.dumps(arguments))))


def reply(text: str) -> list[StreamEvent]:
    return [Content(text), Finished()]


def sse(*payloads: Any, done: bool = True) -> str:
    """Build an SSE body from JSON payloads (strings are sent verbatim)."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def delta(**fields: Any) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": fields}]}
