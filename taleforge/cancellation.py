"""Cancellation signal threaded through one pipeline run.

Every suspend point (LLM calls, streams, store I/O) goes through
CancelToken.run() or CancelToken.stream(), which race the awaited operation
against the cancel event. When the token fires, the in-flight task is
cancelled and awaited before OperationCancelled is raised, so no I/O is
left running behind the caller's back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """The run's cancel token fired while an operation was in flight."""


class OperationTimeout(Exception):
    """An operation exceeded its configured timeout."""

    def __init__(self, timeout: float | None) -> None:
        super().__init__(f"Operation timed out after {timeout}s")
        self.timeout = timeout


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("cancellation requested")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    async def run(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await `awaitable` unless the token fires or `timeout` elapses first."""
        if self._event.is_set():
            _discard(awaitable)
            raise OperationCancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
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
        if self._event.is_set():
            raise OperationCancelled()
        raise OperationTimeout(timeout)

    async def stream(
        self, source: AsyncIterator[T], timeout: float | None = None
    ) -> AsyncIterator[T]:
        """Yield from `source`; `timeout` bounds the whole stream, not each item."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        iterator = source.__aiter__()
        try:
            while True:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                has_item, item = await self.run(_next(iterator), timeout=remaining)
                if not has_item:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


async def _next(iterator: AsyncIterator[Any]) -> tuple[bool, Any]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


def _discard(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
