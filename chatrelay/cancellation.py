"""
Cooperative cancellation for in-flight upstream calls.

A CancelToken is created when a generation starts and registered under the
caller's session id. A separate "stop" request looks the token up and fires
it; whatever the generation is awaiting at that moment (connect, or the next
streamed line) unblocks and the generation winds down through its normal
path. The task itself is never killed from outside.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import AsyncIterator, Awaitable, TypeVar

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.state import KeyValueStore, LockedMap

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot cancel handle bound to a single generation."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.
        Raises ChatError(Cancelled) if it does; the pending work is cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            raise ChatError(ErrorKind.CANCELLED, "request cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise ChatError(ErrorKind.CANCELLED, "request cancelled")

    async def iterate(self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield from `source` until it is exhausted or the token fires."""
        iterator = source.__aiter__()
        while True:
            try:
                item = await self.run(iterator.__anext__())
            except StopAsyncIteration:
                return
            except ChatError as e:
                if e.kind is ErrorKind.CANCELLED:
                    return
                raise
            yield item


class CancellationRegistry:
    """
    session_id -> CancelToken. At most one live token per session; a second
    start for the same session replaces the first, which can then no longer
    be stopped but still runs to completion.
    """

    def __init__(self, store: KeyValueStore[str, CancelToken] | None = None):
        self._store = store if store is not None else LockedMap()

    def register(self, session_id: str) -> CancelToken:
        token = CancelToken()
        previous = self._store.get(session_id)
        if previous is not None:
            logger.debug("Session %s restarted, replacing its cancel handle", session_id)
        self._store.put(session_id, token)
        return token

    def cancel(self, session_id: str) -> bool:
        """Fire and drop the session's token. Safe to call for unknown sessions."""
        token = self._store.pop(session_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancelled generation for session %s", session_id)
        return True

    def release(self, session_id: str, token: CancelToken) -> bool:
        """Drop the entry at the end of a generation, if this token still owns it."""
        return self._store.pop_if(session_id, token)

    def has(self, session_id: str) -> bool:
        return self._store.has(session_id)

    def __len__(self) -> int:
        return len(self._store)
