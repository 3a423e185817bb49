"""
utils/cancellation.py
---------------------
Cooperative cancellation for asynchronous repository calls.

A CancellationToken is created by the caller and passed by reference
through the call chain. The repository checks it before every I/O
suspension point and races it against in-flight driver calls.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from exceptions import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation signal."""

    def __init__(self):
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation. Calling it more than once has no further effect."""
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel_after(self, seconds: float) -> None:
        """Schedule cancel() on the running event loop after `seconds`."""
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel)

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelled: If the token has been cancelled.
        """
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled")

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T], token: Optional[CancellationToken]
) -> T:
    """
    Await `awaitable`, aborting it if `token` fires first.

    The token is checked before the operation starts. If it fires while the
    operation is in flight, the operation's task is cancelled (asyncpg
    sends a cancel request to the server) and OperationCancelled is raised.

    Raises:
        OperationCancelled: The token fired before or during the operation.
    """
    if token is None:
        return await awaitable
    if token.is_cancelled:
        # the coroutine was never started; close it to avoid a warning
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        token.raise_if_cancelled()

    op = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({op, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        op.cancel()
        waiter.cancel()
        raise

    if op in done:
        waiter.cancel()
        return op.result()

    op.cancel()
    try:
        await op
    except asyncio.CancelledError:
        pass
    raise OperationCancelled("Operation was cancelled")
