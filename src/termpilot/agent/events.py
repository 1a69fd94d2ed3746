"""Typed events produced by the streaming transport."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from termpilot.agent.messages import ToolCallRequest
from termpilot.usage import TokensSummary


@dataclass(frozen=True)
class Content:
    text: str


@dataclass(frozen=True)
class Thought:
    text: str


@dataclass(frozen=True)
class ToolCall:
    request: ToolCallRequest


@dataclass(frozen=True)
class Usage:
    summary: TokensSummary


@dataclass(frozen=True)
class Retry:
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class Finished:
    pass


StreamEvent = Union[Content, Thought, ToolCall, Usage, Retry, Error, Finished]

__all__ = ["Content", "Error", "Finished", "Retry", "StreamEvent", "Thought", "ToolCall", "Usage"]
