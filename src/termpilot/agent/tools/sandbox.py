"""Working-directory jail, sensitive-path blocklist and approval gating."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.confirmation import ConfirmationChannel
from termpilot.log_utils import log_event
from termpilot.shell import DEFAULT_TIMEOUT_S, ShellResult

logger = logging.getLogger(__name__)

BLOCKED_NAMES = frozenset(
    {
        ".env",
        ".env.local",
        ".env.production",
        ".env.development",
        ".env.staging",
        ".ssh",
        ".gnupg",
        ".npmrc",
        ".pypirc",
        ".netrc",
        ".docker",
        ".aws",
        ".azure",
        ".gcloud",
        ".kube",
        ".git-credentials",
        ".bash_history",
        ".zsh_history",
    }
)


class PathDenied(Exception):
    """Raised when a tool path escapes the jail or names a sensitive file."""


def _noop(*_: object) -> None:
    return None


@dataclass
class ToolContext:
    """Everything a tool invocation may touch: cwd, approvals, cancellation, UI hooks."""

    cwd: str
    cancel: CancelToken = field(default_factory=CancelToken)
    confirmations: Optional[ConfirmationChannel] = None
    auto_approve: bool = False
    command_timeout: float = DEFAULT_TIMEOUT_S
    on_confirm: Callable[[str], None] = _noop
    on_command_start: Callable[[str], None] = _noop
    on_command_output: Callable[[str], None] = _noop
    on_command_done: Callable[[ShellResult], None] = _noop

    def __post_init__(self) -> None:
        self.cwd = os.path.abspath(self.cwd or os.getcwd())

    @property
    def root(self) -> Path:
        return Path(self.cwd)

    def resolve(self, target: str) -> Path:
        """Resolve ``target`` against cwd lexically and apply the jail and blocklist."""
        resolved = Path(os.path.normpath(os.path.join(self.cwd, os.path.expanduser(target or "."))))
        root = self.root
        if resolved != root and not resolved.is_relative_to(root):
            log_event(logger, "sandbox.denied", level=logging.WARNING, path=target, reason="outside_cwd")
            raise PathDenied(f'Access denied - "{target}" resolves to a path outside the working directory.')
        if is_sensitive_path(resolved, root):
            log_event(logger, "sandbox.denied", level=logging.WARNING, path=target, reason="sensitive")
            raise PathDenied(f'Access denied - "{target}" is a sensitive file or directory.')
        return resolved

    def relative(self, path: Path) -> str:
        rel = os.path.relpath(path, self.cwd)
        return "." if rel == "." else rel

    async def confirm(self, description: str) -> bool:
        """Show ``description`` and wait for the user's approval."""
        self.on_confirm(description)
        if self.confirmations is None:
            return self.auto_approve
        return await self.confirmations.ask(self.cancel)


def is_sensitive_path(resolved: Path, root: Path) -> bool:
    try:
        parts = resolved.relative_to(root).parts
    except ValueError:
        parts = resolved.parts
    return any(part.lower() in BLOCKED_NAMES for part in parts)
