"""Byte-level input state machine that shares one terminal between the shell and the agent.

``@ `` typed at the start of a line opens a prompt; Enter hands it to the
agent. While the agent runs, keystrokes become control actions (abort,
approve, decline) and never reach the shell.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, assert_never

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.confirmation import ConfirmationChannel
from termpilot.agent.loop import AgentCallbacks, AgentLoop
from termpilot.agent.messages import AgentResult, Message, cap_history
from termpilot.agent.prompt import build_system_prompt, build_user_message
from termpilot.agent.transport import ChatTransport
from termpilot.config import AgentConfig
from termpilot.context import ContextBuffer
from termpilot.log_utils import log_event
from termpilot.shell import ShellResult
from termpilot.terminal import render
from termpilot.usage import TokensSummary, UsageStore

logger = logging.getLogger(__name__)

AT = 0x40
SPACE = 0x20
CR = 0x0D
BACKSPACE = 0x08
DELETE = 0x7F
CTRL_C = 0x03
ESCAPE = 0x1B

HISTORY_KEEP = 40

BANNER = (
    "\r\n"
    + render.paint("  [AI Ready] ", render.PROMPT_MARK)
    + render.paint('Type "@ " + prompt + Enter to chat with AI', render.HINT)
    + "\r\n"
)

ByteSink = Callable[[bytes], None]


class TerminalInputState(enum.Enum):
    NORMAL = "normal"
    PENDING = "pending"
    CAPTURING = "capturing"
    AGENT_STREAMING = "agent_streaming"
    AGENT_CONFIRMING = "agent_confirming"
    AGENT_EXECUTING = "agent_executing"


class TerminalMultiplexer:
    """Sits between the user's keyboard, the shell and the terminal display.

    ``write_to_terminal`` receives display bytes; ``write_to_shell`` receives
    bytes destined for the shell's input.
    """

    def __init__(
        self,
        write_to_terminal: ByteSink,
        write_to_shell: ByteSink,
        context: ContextBuffer,
        config: AgentConfig,
        *,
        transport: Any = None,
        usage_store: UsageStore | None = None,
    ) -> None:
        self._to_terminal = write_to_terminal
        self._to_shell = write_to_shell
        self.context = context
        self.config = config
        self.transport = transport if transport is not None else ChatTransport(config)
        self.usage_store = usage_store if usage_store is not None else UsageStore()

        self.state = TerminalInputState.NORMAL
        self.prompt_buffer = ""
        self.at_line_start = True
        self.banner_shown = False
        self.confirmations = ConfirmationChannel()
        self.cancel: CancelToken | None = None
        self.run_task: asyncio.Task[AgentResult | None] | None = None
        self.history: list[Message] = []
        self.session_usage = TokensSummary()
        self._checkpoint = 0

    # -- output helpers ---------------------------------------------------

    def _show(self, text: str) -> None:
        if text:
            self._to_terminal(render.encode(text))

    def _send(self, data: bytes) -> None:
        self._to_shell(data)

    def _set_state(self, state: TerminalInputState) -> None:
        if state is not self.state:
            log_event(logger, "multiplexer.state", level=logging.DEBUG, old=self.state.value, new=state.value)
            self.state = state

    def _return_to_shell(self) -> None:
        self._set_state(TerminalInputState.NORMAL)
        self.at_line_start = True
        self.cancel = None
        # Make the shell redraw its prompt.
        self._send(b"\r")

    # -- session side -----------------------------------------------------

    def feed_from_session(self, data: bytes) -> None:
        """Shell output on its way to the display."""
        if not self.banner_shown:
            self.banner_shown = True
            self._show(BANNER)
        self.at_line_start = True
        self._to_terminal(data)

    # -- keyboard side ----------------------------------------------------

    def feed_from_terminal(self, data: bytes) -> None:
        """Keyboard input on its way to the shell."""
        if not data:
            return
        if len(data) != 1:
            self._feed_chunk(data)
            return

        byte = data[0]
        state = self.state
        match state:
            case TerminalInputState.NORMAL:
                self._on_normal(byte, data)
            case TerminalInputState.PENDING:
                self._on_pending(byte, data)
            case TerminalInputState.CAPTURING:
                self._on_capturing(byte)
            case TerminalInputState.AGENT_CONFIRMING:
                self._on_confirming(byte)
            case TerminalInputState.AGENT_STREAMING | TerminalInputState.AGENT_EXECUTING:
                if byte == CTRL_C:
                    self.abort()
            case _:
                assert_never(state)

    def _feed_chunk(self, data: bytes) -> None:
        match self.state:
            case TerminalInputState.CAPTURING:
                text = data.decode("utf-8", errors="replace")
                self.prompt_buffer += text
                self._show(render.paint(text, render.PROMPT_TEXT))
            case TerminalInputState.NORMAL:
                self.at_line_start = False
                self._send(data)
            case _:
                # Agent states and Pending drop pasted input.
                return

    def _on_normal(self, byte: int, data: bytes) -> None:
        if byte == AT and self.at_line_start:
            self._set_state(TerminalInputState.PENDING)
            self._show(render.paint("@", render.PROMPT_MARK))
            return
        self.at_line_start = byte == CR
        self._send(data)

    def _on_pending(self, byte: int, data: bytes) -> None:
        if byte == SPACE:
            self._set_state(TerminalInputState.CAPTURING)
            self.prompt_buffer = ""
            self._show(" ")
            return
        self._show(render.ERASE_CHAR)
        self._set_state(TerminalInputState.NORMAL)
        if byte in (BACKSPACE, DELETE):
            self.at_line_start = True
            return
        self.at_line_start = False
        self._send(b"@")
        self._send(data)

    def _on_capturing(self, byte: int) -> None:
        if byte == CR:
            self._submit()
            return
        if byte in (BACKSPACE, DELETE):
            if self.prompt_buffer:
                self.prompt_buffer = self.prompt_buffer[:-1]
                self._show(render.ERASE_CHAR)
            return
        if byte in (CTRL_C, ESCAPE):
            self._show("\r\n")
            self.prompt_buffer = ""
            self._set_state(TerminalInputState.NORMAL)
            self.at_line_start = True
            self._send(b"\r")
            return
        if byte < SPACE:
            return
        char = chr(byte)
        self.prompt_buffer += char
        self._show(render.paint(char, render.PROMPT_TEXT))

    def _on_confirming(self, byte: int) -> None:
        if byte == CR:
            self.confirmations.resolve(True)
        elif byte == CTRL_C:
            if not self.confirmations.resolve(False):
                self.abort()

    # -- agent run --------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.run_task is not None and not self.run_task.done()

    def abort(self) -> None:
        if self.cancel is not None:
            self.cancel.cancel("user interrupt")

    def _submit(self) -> None:
        query = self.prompt_buffer.strip()
        self.prompt_buffer = ""
        if not query:
            self._return_to_shell()
            return
        self._show("\r\n")
        self._set_state(TerminalInputState.AGENT_STREAMING)
        self.cancel = CancelToken()
        self.run_task = asyncio.get_running_loop().create_task(self._run_agent(query, self.cancel))

    def build_messages(self, query: str) -> list[Message]:
        """System prompt from the current context, carried history, then the new query."""
        activity = ""
        if self.history:
            activity, self._checkpoint = self.context.output_since(self._checkpoint)
        else:
            self._checkpoint = self.context.total_lines
        system = Message.system(build_system_prompt(self.context))
        user = Message.user(build_user_message(query, activity))
        return cap_history([system, *self.history, user], HISTORY_KEEP)

    def _callbacks(self) -> AgentCallbacks:
        def on_content(text: str) -> None:
            self._set_state(TerminalInputState.AGENT_STREAMING)
            self._show(render.paint(render.crlf(text), render.CONTENT))

        def on_thinking(text: str) -> None:
            self._show(render.paint(render.crlf(text), render.THOUGHT))

        def on_retry(attempt: int, max_attempts: int) -> None:
            self._show(render.paint(f"\r\n  retrying ({attempt}/{max_attempts})...\r\n", render.HINT))

        def on_confirm(description: str) -> None:
            self._set_state(TerminalInputState.AGENT_CONFIRMING)
            self._show(
                "\r\n"
                + render.paint(f"  > {render.crlf(description)}", render.CONFIRM)
                + render.paint("  [Enter=run / Ctrl+C=skip]", render.HINT)
            )

        def on_command_start(_command: str) -> None:
            self._set_state(TerminalInputState.AGENT_EXECUTING)
            self._show("\r\n")

        def on_command_output(chunk: str) -> None:
            self._show(render.paint(render.crlf(chunk), render.COMMAND_OUTPUT))

        def on_command_done(_result: ShellResult) -> None:
            self._set_state(TerminalInputState.AGENT_STREAMING)
            self._show("\r\n")

        def on_done() -> None:
            self._show("\r\n")
            self._return_to_shell()

        def on_error(message: str) -> None:
            self._show("\r\n" + render.paint(f"  Error: {message}", render.ERROR) + "\r\n")
            self._return_to_shell()

        return AgentCallbacks(
            on_content=on_content,
            on_thinking=on_thinking,
            on_retry=on_retry,
            on_confirm=on_confirm,
            on_command_start=on_command_start,
            on_command_output=on_command_output,
            on_command_done=on_command_done,
            on_done=on_done,
            on_error=on_error,
        )

    async def _run_agent(self, query: str, cancel: CancelToken) -> AgentResult | None:
        messages = self.build_messages(query)
        loop = AgentLoop(
            self.transport,
            self.context,
            self._callbacks(),
            cancel,
            confirmations=self.confirmations,
            command_timeout=self.config.command_timeout,
        )
        try:
            result = await loop.run(messages)
        except Exception as exc:
            logger.exception("Agent run crashed")
            self._show("\r\n" + render.paint(f"  Error: {exc}", render.ERROR) + "\r\n")
            self._return_to_shell()
            return None

        self._record(messages[-1], result)
        return result

    def _record(self, user_message: Message, result: AgentResult) -> None:
        self.history = cap_history([*self.history, user_message, *result.messages], HISTORY_KEEP)

        self.session_usage.add(result.usage)
        if result.usage.total_tokens:
            try:
                self.usage_store.record(self.config.provider.value, result.usage)
            except OSError as exc:
                logger.warning("Could not persist usage: %s", exc)
