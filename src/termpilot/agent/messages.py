"""Conversation messages and tool-call requests in OpenAI chat shape."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from termpilot.usage import TokensSummary

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class FunctionCall:
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCallRequest:
    id: str = ""
    function: FunctionCall = field(default_factory=FunctionCall)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ToolCallRequest":
        fn = data.get("function") or {}
        return cls(
            id=str(data.get("id") or ""),
            function=FunctionCall(name=str(fn.get("name") or ""), arguments=str(fn.get("arguments") or "")),
        )


@dataclass
class Message:
    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def tool(cls, call_id: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=call_id)


@dataclass
class AgentResult:
    """Messages appended during one run (not the full history) and its usage."""

    messages: list[Message]
    usage: TokensSummary


def cap_history(messages: list[Message], keep: int) -> list[Message]:
    """Keep the pinned system message (if first) plus the last ``keep`` messages.

    Tool results left at the front of the kept window have lost their
    assistant call and are dropped as well.
    """

    head = messages[:1] if messages and messages[0].role == "system" else []
    body = messages[len(head) :]
    body = body[-keep:] if keep > 0 else []
    start = 0
    while start < len(body) and body[start].role == "tool":
        start += 1
    return [*head, *body[start:]]
