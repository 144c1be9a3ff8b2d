"""Cooperative cancellation for connect, fetch and device-flow operations."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from markread.errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Caller-owned cancellation signal.

    Cancelling unblocks every :func:`run_cancellable` call waiting on this token;
    those calls raise :class:`OperationCancelledError` instead of hanging.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
    *,
    shield: bool = False,
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    With ``shield=True`` the underlying task keeps running after cancellation
    (used for coalesced fetches that other callers may still be awaiting);
    otherwise it is cancelled so no further work happens for this caller.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(token.reason)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        if not shield:
            task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    if not shield:
        task.cancel()
    else:
        # Nobody else may await the task; consume its outcome so it is not reported as lost
        task.add_done_callback(_consume_result)
    logger.debug("Operation cancelled before completion")
    raise OperationCancelledError(token.reason)


def _consume_result(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


__all__ = ["CancellationToken", "run_cancellable"]
