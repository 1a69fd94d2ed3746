"""Run shell commands with streamed output, timeout, cancellation and env redaction."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from termpilot.agent.cancellation import CancelToken
from termpilot.log_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
MAX_CAPTURE_CHARS = 512 * 1024
READ_SIZE = 4096
KILL_GRACE_S = 2.0
IS_WINDOWS = sys.platform == "win32"
_KILL_SIGNAL = signal.SIGTERM if IS_WINDOWS else signal.SIGKILL

SENSITIVE_ENV_RE = re.compile(
    r"(^|_)(KEY|APIKEY|TOKEN|PAT)$|SECRET|PASSWORD|PASSWD|CREDENTIAL",
    re.IGNORECASE,
)
ALWAYS_REDACTED = frozenset({"TERMPILOT_API_KEY", "OPENAI_API_KEY", "AZURE_OPENAI_API_KEY"})
FORCED_ENV = {"PAGER": "cat", "GIT_PAGER": "cat"}


@dataclass
class ShellResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


def is_sensitive_env(name: str) -> bool:
    return name.upper() in ALWAYS_REDACTED or bool(SENSITIVE_ENV_RE.search(name))


def redacted_env(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment without secret-looking variables, pagers disabled."""
    source = os.environ if base is None else base
    env = {name: value for name, value in source.items() if not is_sensitive_env(name)}
    env.update(FORCED_ENV)
    return env


def shell_argv(command: str) -> list[str]:
    if IS_WINDOWS:
        return [os.environ.get("COMSPEC") or "cmd.exe", "/c", command]
    shell = "/bin/bash" if os.path.exists("/bin/bash") else (shutil.which("sh") or "/bin/sh")
    return [shell, "-c", command]


def _terminate(proc: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if not IS_WINDOWS:
            os.killpg(proc.pid, sig)
        else:
            proc.kill()


async def _pump(
    stream: asyncio.StreamReader | None,
    sink: list[str],
    on_output: Callable[[str], None] | None,
) -> None:
    if stream is None:
        return
    size = 0
    while True:
        data = await stream.read(READ_SIZE)
        if not data:
            return
        text = data.decode("utf-8", errors="replace")
        if size < MAX_CAPTURE_CHARS:
            sink.append(text)
            size += len(text)
        if on_output is not None:
            on_output(text)


async def execute_command(
    command: str,
    cwd: str,
    cancel: CancelToken | None = None,
    on_output: Callable[[str], None] | None = None,
    timeout: float = DEFAULT_TIMEOUT_S,
    env: Mapping[str, str] | None = None,
) -> ShellResult:
    """Run ``command`` through the platform shell in ``cwd``.

    Never raises for process problems: spawn failures come back as
    ``exit_code=1`` with the error in ``stderr``. On timeout or cancellation
    the whole process group is terminated; ``exit_code`` is None when the
    process died from a signal.
    """

    cancel = cancel or CancelToken()
    log_event(logger, "shell.exec", command=command, cwd=cwd, timeout=timeout)
    try:
        proc = await asyncio.create_subprocess_exec(
            *shell_argv(command),
            cwd=cwd or None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=redacted_env(env),
            start_new_session=not IS_WINDOWS,
        )
    except (OSError, ValueError) as exc:
        log_event(logger, "shell.spawn_failed", level=logging.WARNING, command=command, error=str(exc))
        return ShellResult(stdout="", stderr=str(exc), exit_code=1, timed_out=False)

    stdout: list[str] = []
    stderr: list[str] = []
    timed_out = False

    loop = asyncio.get_running_loop()
    handles: list[asyncio.TimerHandle] = []

    def _stop() -> None:
        _terminate(proc)
        handles.append(loop.call_later(KILL_GRACE_S, _terminate, proc, _KILL_SIGNAL))

    def _on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        log_event(logger, "shell.timeout", level=logging.WARNING, command=command, timeout=timeout)
        _stop()

    handles.append(loop.call_later(timeout, _on_timeout))
    unregister = cancel.on_cancel(_stop)
    try:
        await asyncio.gather(
            _pump(proc.stdout, stdout, on_output),
            _pump(proc.stderr, stderr, on_output),
        )
        await proc.wait()
    finally:
        for handle in handles:
            handle.cancel()
        unregister()
        if proc.returncode is None:
            _terminate(proc, _KILL_SIGNAL)
            with contextlib.suppress(ProcessLookupError):
                await proc.wait()

    code = proc.returncode
    exit_code = code if code is not None and code >= 0 else None
    return ShellResult(stdout="".join(stdout), stderr="".join(stderr), exit_code=exit_code, timed_out=timed_out)
