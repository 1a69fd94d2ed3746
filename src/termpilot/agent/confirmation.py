"""Single-slot rendezvous between a gated tool and the terminal's approval keys."""

from __future__ import annotations

import asyncio
import logging

from termpilot.agent.cancellation import CancelToken
from termpilot.log_utils import log_event

logger = logging.getLogger(__name__)


class ConfirmationChannel:
    """Holds at most one outstanding approval request.

    A new request supersedes an unresolved one, which is resolved as declined
    so no awaiter is left hanging. There is no timeout.
    """

    def __init__(self) -> None:
        self._pending: asyncio.Future[bool] | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def request(self) -> asyncio.Future[bool]:
        if self.pending:
            log_event(logger, "confirmation.superseded")
            assert self._pending is not None
            self._pending.set_result(False)
        self._pending = asyncio.get_running_loop().create_future()
        return self._pending

    def resolve(self, approved: bool) -> bool:
        """Deliver the user's answer; returns False when nothing was waiting."""
        future = self._pending
        if future is None or future.done():
            return False
        self._pending = None
        future.set_result(approved)
        return True

    async def ask(self, cancel: CancelToken | None = None) -> bool:
        future = self.request()
        if cancel is None:
            return await future
        try:
            return await cancel.guard(future)
        finally:
            if self._pending is future and not future.done():
                future.set_result(False)
                self._pending = None
