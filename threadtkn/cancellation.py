"""Cooperative cancellation for in-flight requests.

A CancellationToken is passed alongside every async call that may block on
the network. Work guarded by the token is run as a task and raced against
the token; when the token fires, the task is cancelled (closing the HTTP
connection) and the caller gets RequestCancelledError.
"""

import asyncio
from typing import Awaitable, TypeVar

from threadtkn.errors import RequestCancelledError


T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(session.send_message("hi", cancel_token=token))
        >>> token.cancel("user pressed stop")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self._message())

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Run ``awaitable`` until it finishes or the token fires.

        Args:
            awaitable: Coroutine or future to run.

        Returns:
            The awaitable's result.

        Raises:
            RequestCancelledError: If the token fired first. The work is
                cancelled and awaited before this is raised.
        """
        self.raise_if_cancelled()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Also reached when the caller itself is cancelled (e.g. a timeout)
            waiter.cancel()
            if not work.done():
                work.cancel()
                await asyncio.wait({work})

        if work.cancelled():
            raise RequestCancelledError(self._message())
        return work.result()

    def _message(self) -> str:
        if self._reason:
            return f"Request was cancelled: {self._reason}"
        return "Request was cancelled"
