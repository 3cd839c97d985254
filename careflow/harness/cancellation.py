"""
Deadlines and explicit cancellation for one turn.

A ``CancellationToken`` is created per turn and threaded through the
supervisor, the reasoning loop and every external call they make. Awaiting
through ``token.run()`` turns a passed deadline or an explicit ``cancel()``
into ``TurnCancelledError`` at the next suspension point, and cancels the
in-flight call instead of leaving it running in the background.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

import structlog

from careflow.errors import TurnCancelledError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self, timeout: Optional[float] = None):
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        if self._reason:
            return self._reason
        if self._deadline_passed():
            return "deadline exceeded"
        return None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self._deadline_passed()

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info("cancellation.requested", reason=reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelledError(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnCancelledError(self.reason or "cancelled")
