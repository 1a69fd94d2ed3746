"""Multi-turn tool-calling loop: stream, collect tool calls, run them, repeat."""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.confirmation import ConfirmationChannel
from termpilot.agent.events import Content, Error, Finished, Retry, Thought, ToolCall, Usage
from termpilot.agent.messages import AgentResult, Message, ToolCallRequest, cap_history
from termpilot.agent.prompt import build_system_prompt
from termpilot.agent.tools import ToolContext, run_tool, tool_definitions
from termpilot.context import ContextBuffer
from termpilot.errors import RunCancelled
from termpilot.log_utils import log_context, log_event
from termpilot.shell import DEFAULT_TIMEOUT_S, ShellResult
from termpilot.usage import TokensSummary

logger = logging.getLogger(__name__)

MAX_TURNS = 20
TRIM_THRESHOLD = 50
TRIM_KEEP = 40
ABORTED_NOTICE = "\r\n(aborted)\r\n"
SKIPPED_TOOL_RESULT = "Tool call cancelled by user."


def _noop(*_: object) -> None:
    return None


@dataclass
class AgentCallbacks:
    """Presentation hooks; every one is optional."""

    on_content: Callable[[str], None] = _noop
    on_thinking: Callable[[str], None] = _noop
    on_retry: Callable[[int, int], None] = _noop
    on_confirm: Callable[[str], None] = _noop
    on_command_start: Callable[[str], None] = _noop
    on_command_output: Callable[[str], None] = _noop
    on_command_done: Callable[[ShellResult], None] = _noop
    on_done: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop


class AgentLoop:
    """Drives one run over a message list.

    ``transport`` is anything with ``stream_with_tools(messages, tools, cancel)``.
    The system message, when first, is rebuilt each turn from ``context`` so
    the model sees current terminal output.
    """

    def __init__(
        self,
        transport: Any,
        context: ContextBuffer,
        callbacks: AgentCallbacks | None = None,
        cancel: CancelToken | None = None,
        *,
        confirmations: ConfirmationChannel | None = None,
        auto_approve: bool = False,
        command_timeout: float = DEFAULT_TIMEOUT_S,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_turns: int = MAX_TURNS,
    ) -> None:
        self.transport = transport
        self.context = context
        self.callbacks = callbacks or AgentCallbacks()
        self.cancel = cancel or CancelToken()
        self.confirmations = confirmations
        self.auto_approve = auto_approve
        self.command_timeout = command_timeout
        self.tools = list(tools) if tools is not None else tool_definitions()
        self.max_turns = max_turns
        self.messages: list[Message] = []
        self.usage = TokensSummary()
        self._produced: list[Message] = []

    def _append(self, message: Message) -> None:
        self.messages.append(message)
        self._produced.append(message)

    def _result(self) -> AgentResult:
        return AgentResult(messages=list(self._produced), usage=self.usage.copy())

    def _tool_context(self) -> ToolContext:
        return ToolContext(
            cwd=self.context.cwd or os.getcwd(),
            cancel=self.cancel,
            confirmations=self.confirmations,
            auto_approve=self.auto_approve,
            command_timeout=self.command_timeout,
            on_confirm=self.callbacks.on_confirm,
            on_command_start=self.callbacks.on_command_start,
            on_command_output=self.callbacks.on_command_output,
            on_command_done=self.callbacks.on_command_done,
        )

    def _prepare_turn(self) -> None:
        if len(self.messages) > TRIM_THRESHOLD:
            self.messages = cap_history(self.messages, TRIM_KEEP)
        if self.messages and self.messages[0].role == "system":
            self.messages[0] = Message.system(build_system_prompt(self.context))

    def _aborted(self, turn: int) -> AgentResult:
        log_event(logger, "agent.aborted", turn=turn, reason=self.cancel.reason)
        self.callbacks.on_content(ABORTED_NOTICE)
        self.callbacks.on_done()
        return self._result()

    async def run(self, messages: Sequence[Message]) -> AgentResult:
        """Run until the model stops calling tools, an error, an abort or the turn limit.

        Returns only the messages produced during this run.
        """
        self.messages = list(messages)
        self._produced = []
        self.usage = TokensSummary()

        with log_context(run_id=uuid.uuid4().hex[:12]):
            try:
                return await self._run()
            except RunCancelled:
                return self._aborted(turn=-1)
            except Exception as exc:
                logger.exception("Agent run failed")
                self.callbacks.on_error(str(exc) or type(exc).__name__)
                return self._result()

    async def _run(self) -> AgentResult:
        for turn in range(1, self.max_turns + 1):
            if self.cancel.cancelled:
                return self._aborted(turn)
            self._prepare_turn()
            log_event(logger, "agent.turn", turn=turn, messages=len(self.messages))

            text_parts: list[str] = []
            requests: list[ToolCallRequest] = []
            stream = self.transport.stream_with_tools(self.messages, self.tools, self.cancel)
            async with contextlib.aclosing(stream) as events:
                async for event in events:
                    match event:
                        case Content(text=text):
                            text_parts.append(text)
                            self.callbacks.on_content(text)
                        case Thought(text=text):
                            self.callbacks.on_thinking(text)
                        case ToolCall(request=request):
                            requests.append(request)
                        case Usage(summary=summary):
                            self.usage.add(summary)
                        case Retry(attempt=attempt, max_attempts=max_attempts):
                            self.callbacks.on_retry(attempt, max_attempts)
                        case Error(message=message):
                            log_event(logger, "agent.error", level=logging.WARNING, turn=turn, error=message)
                            self.callbacks.on_error(message)
                            return self._result()
                        case Finished():
                            pass
                    if self.cancel.cancelled:
                        break

            if self.cancel.cancelled:
                return self._aborted(turn)
            if not requests:
                if text_parts:
                    self._append(Message(role="assistant", content="".join(text_parts)))
                break

            self._append(Message(role="assistant", content="".join(text_parts) or None, tool_calls=requests))
            await self._run_tools(requests)
        else:
            log_event(logger, "agent.turn_limit", max_turns=self.max_turns)

        if self.cancel.cancelled:
            return self._aborted(self.max_turns)
        log_event(
            logger,
            "agent.done",
            produced=len(self._produced),
            total_tokens=self.usage.total_tokens,
        )
        self.callbacks.on_done()
        return self._result()

    async def _run_tools(self, requests: list[ToolCallRequest]) -> None:
        """Execute in request order; after an abort the rest get a placeholder result."""
        for index, request in enumerate(requests):
            if self.cancel.cancelled:
                self._skip(requests[index:])
                return
            try:
                result = await run_tool(request, self._tool_context())
            except RunCancelled:
                self._skip(requests[index:])
                raise
            self._append(Message.tool(request.id, result))

    def _skip(self, requests: list[ToolCallRequest]) -> None:
        for request in requests:
            self._append(Message.tool(request.id, SKIPPED_TOOL_RESULT))
