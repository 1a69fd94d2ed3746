"""Run the user's shell in a pseudo-terminal with the agent multiplexer in the byte path (POSIX only)."""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import re
import signal
import struct
import sys
import termios
import tty
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

from termpilot.log_utils import log_event
from termpilot.terminal.multiplexer import TerminalMultiplexer

logger = logging.getLogger(__name__)

READ_SIZE = 65536
OSC7_RE = re.compile(rb"\x1b\]7;([^\x07\x1b]*)(?:\x07|\x1b\\)")

Unsubscribe = Callable[[], None]


def parse_osc7(data: bytes) -> Optional[str]:
    """Return the last directory reported by an OSC 7 sequence in ``data``."""
    matches = OSC7_RE.findall(data)
    if not matches:
        return None
    url = urlparse(matches[-1].decode("utf-8", errors="replace"))
    return unquote(url.path) or None


def get_winsize(fd: int) -> tuple[int, int]:
    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * 8)
        rows, cols, _xp, _yp = struct.unpack("HHHH", packed)
        return rows or 24, cols or 80
    except OSError:
        return 24, 80


def set_winsize(fd: int, rows: int, cols: int) -> None:
    with contextlib.suppress(OSError):
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            continue
        view = view[written:]


class _Subscribers:
    def __init__(self) -> None:
        self._callbacks: list[Callable] = []

    def add(self, callback: Callable) -> Unsubscribe:
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def emit(self, *args: object) -> None:
        for callback in list(self._callbacks):
            callback(*args)


class PtySession:
    """A shell child on a PTY master; implements ``TerminalSession``."""

    def __init__(self, argv: list[str], *, cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        self.argv = argv
        self.cwd = cwd or os.getcwd()
        self.env = env if env is not None else dict(os.environ)
        self.pid: int | None = None
        self.master_fd: int | None = None
        self.multiplexer: TerminalMultiplexer | None = None
        self._output = _Subscribers()
        self._cwd = _Subscribers()
        self._last_cwd = ""

    def spawn(self) -> None:
        pid, master_fd = os.forkpty()
        if pid == 0:
            try:
                os.chdir(self.cwd)
                os.execvpe(self.argv[0], self.argv, self.env)
            finally:
                os._exit(127)
        self.pid = pid
        self.master_fd = master_fd
        log_event(logger, "pty.spawn", argv=self.argv, pid=pid)

    def subscribe_output(self, callback: Callable[[bytes], None]) -> Unsubscribe:
        return self._output.add(callback)

    def subscribe_cwd(self, callback: Callable[[str], None]) -> Unsubscribe:
        return self._cwd.add(callback)

    def install(self, multiplexer: TerminalMultiplexer) -> None:
        self.multiplexer = multiplexer

    def write_input(self, data: bytes) -> None:
        if self.master_fd is not None:
            _write_all(self.master_fd, data)

    def read_output(self) -> bytes:
        """Read what the shell wrote; empty bytes means the PTY closed."""
        if self.master_fd is None:
            return b""
        try:
            return os.read(self.master_fd, READ_SIZE)
        except OSError:
            # Linux reports EIO once the child side is gone.
            return b""

    def dispatch_output(self, data: bytes, display: Callable[[bytes], None]) -> None:
        self._output.emit(data)
        self._report_cwd(data)
        if self.multiplexer is not None:
            self.multiplexer.feed_from_session(data)
        else:
            display(data)

    def dispatch_input(self, data: bytes) -> None:
        if self.multiplexer is not None:
            self.multiplexer.feed_from_terminal(data)
        else:
            self.write_input(data)

    def _report_cwd(self, data: bytes) -> None:
        cwd = parse_osc7(data)
        if cwd is None and self.pid is not None:
            with contextlib.suppress(OSError):
                cwd = os.readlink(f"/proc/{self.pid}/cwd")
        if cwd and cwd != self._last_cwd:
            self._last_cwd = cwd
            self._cwd.emit(cwd)

    def wait(self) -> int:
        if self.pid is None:
            return 0
        try:
            _, status = os.waitpid(self.pid, 0)
        except ChildProcessError:
            return 0
        return os.waitstatus_to_exitcode(status)

    def close(self) -> None:
        if self.master_fd is not None:
            with contextlib.suppress(OSError):
                os.close(self.master_fd)
            self.master_fd = None


class PtyHost:
    """The terminal tab: owns stdin/stdout and one ``PtySession``."""

    def __init__(self, session: PtySession, *, stdin_fd: int | None = None, stdout_fd: int | None = None) -> None:
        self.session: Optional[PtySession] = None
        self._pending_session = session
        self._session_changed = _Subscribers()
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self._saved_attrs: list | None = None

    def subscribe_session_changed(self, callback: Callable[[], None]) -> Unsubscribe:
        return self._session_changed.add(callback)

    def write_to_terminal(self, data: bytes) -> None:
        _write_all(self.stdout_fd, data)

    def _enter_raw(self) -> None:
        if os.isatty(self.stdin_fd):
            self._saved_attrs = termios.tcgetattr(self.stdin_fd)
            tty.setraw(self.stdin_fd)

    def _restore(self) -> None:
        if self._saved_attrs is not None:
            termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    def _sync_winsize(self) -> None:
        if self.session is not None and self.session.master_fd is not None:
            rows, cols = get_winsize(self.stdin_fd)
            set_winsize(self.session.master_fd, rows, cols)

    async def run(self) -> int:
        """Spawn the shell, pump bytes until it exits, and return its exit code."""
        loop = asyncio.get_running_loop()
        session = self._pending_session
        session.spawn()
        self.session = session
        self._session_changed.emit()
        assert session.master_fd is not None
        self._sync_winsize()

        closed = loop.create_future()

        def _on_master() -> None:
            data = session.read_output()
            if not data:
                if not closed.done():
                    closed.set_result(None)
                return
            session.dispatch_output(data, self.write_to_terminal)

        def _on_stdin() -> None:
            try:
                data = os.read(self.stdin_fd, READ_SIZE)
            except OSError:
                data = b""
            if data:
                session.dispatch_input(data)

        self._enter_raw()
        loop.add_reader(session.master_fd, _on_master)
        loop.add_reader(self.stdin_fd, _on_stdin)
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGWINCH, self._sync_winsize)
        try:
            await closed
        finally:
            loop.remove_reader(self.stdin_fd)
            if session.master_fd is not None:
                loop.remove_reader(session.master_fd)
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGWINCH)
            self._restore()
            session.close()
        code = await asyncio.to_thread(session.wait)
        log_event(logger, "pty.exit", code=code)
        return code
