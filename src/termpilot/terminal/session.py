"""Attach the agent multiplexer to a terminal tab whose session may appear late.

A tab's session can be created or replaced asynchronously, so attachment is
attempted immediately, on every session-changed notification, and again after
fixed delays.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from termpilot.context import ContextBuffer
from termpilot.log_utils import log_event
from termpilot.terminal.multiplexer import TerminalMultiplexer

logger = logging.getLogger(__name__)

ATTACH_RETRY_DELAYS_S: tuple[float, ...] = (0.2, 1.0, 3.0)

Unsubscribe = Callable[[], None]


class TerminalSession(Protocol):
    """The narrow slice of a terminal session the agent needs."""

    def subscribe_output(self, callback: Callable[[bytes], None]) -> Unsubscribe:
        """Raw shell output, as it is produced."""

    def subscribe_cwd(self, callback: Callable[[str], None]) -> Unsubscribe:
        """Working directory reports (e.g. from OSC 7)."""

    def install(self, multiplexer: TerminalMultiplexer) -> None:
        """Route keyboard input and shell output through ``multiplexer``."""


class TerminalTab(Protocol):
    session: Optional[TerminalSession]

    def subscribe_session_changed(self, callback: Callable[[], None]) -> Unsubscribe:
        """Notify when the tab's session is created or replaced."""


MultiplexerFactory = Callable[[TerminalSession, ContextBuffer], TerminalMultiplexer]


@dataclass
class Attachment:
    """Live attachment of one tab; ``detach`` drops every subscription and timer."""

    tab: TerminalTab
    factory: MultiplexerFactory
    max_context_lines: int = 100
    session: Optional[TerminalSession] = None
    multiplexer: Optional[TerminalMultiplexer] = None
    context: Optional[ContextBuffer] = None
    _subscriptions: list[Unsubscribe] = field(default_factory=list)
    _timers: list[asyncio.TimerHandle] = field(default_factory=list)

    def try_attach(self, source: str) -> bool:
        """Attach to the tab's current session unless it is absent or already attached."""
        session = self.tab.session
        if session is None or session is self.session:
            return False
        self.session = session
        context = ContextBuffer(self.max_context_lines)

        def _on_cwd(cwd: str) -> None:
            context.cwd = cwd

        self._subscriptions.append(session.subscribe_output(context.push_output))
        self._subscriptions.append(session.subscribe_cwd(_on_cwd))
        multiplexer = self.factory(session, context)
        session.install(multiplexer)
        self.context = context
        self.multiplexer = multiplexer
        log_event(logger, "session.attached", source=source)
        return True

    def detach(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()


def attach_agent(
    tab: TerminalTab,
    factory: MultiplexerFactory,
    *,
    max_context_lines: int = 100,
    retry_delays: Sequence[float] = ATTACH_RETRY_DELAYS_S,
) -> Attachment:
    """Attach now, on each session change, and after each of ``retry_delays`` seconds.

    Must be called from a running event loop.
    """
    attachment = Attachment(tab=tab, factory=factory, max_context_lines=max_context_lines)
    attachment._subscriptions.append(tab.subscribe_session_changed(lambda: attachment.try_attach("session_changed")))
    attachment.try_attach("immediate")

    loop = asyncio.get_running_loop()
    for delay in retry_delays:
        attachment._timers.append(loop.call_later(delay, attachment.try_attach, f"retry_{delay:g}s"))
    return attachment
