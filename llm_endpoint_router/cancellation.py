"""A cancellation token that is the logical OR of its sources.

A token moves to the cancelled state exactly once. Whoever cancels it
supplies the error that pending I/O should raise: a caller cancellation, a
per-call timeout or an eviction by the request tracker's sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from llm_endpoint_router.errors import (
    RequestCancelledError,
    RequestTimeoutError,
    RouterError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[["CancellationToken"], None]


class CancellationToken:
    def __init__(self, name: str = "") -> None:
        self.name = name
        self._error: RouterError | None = None
        self._listeners: list[Listener] = []
        self._event: asyncio.Event | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._unlinks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> RouterError | None:
        return self._error

    def cancel(self, error: RouterError | None = None) -> bool:
        """Cancel the token; return False when it was already cancelled."""
        if self._error is not None:
            return False
        self._error = error or RequestCancelledError("Request cancelled by caller")
        self._dispose_timer()
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(self)
            except Exception as exc:
                logger.error(
                    "cancellation_listener_failed token=%s error=%s", self.name, exc
                )
        self._unlink_sources()
        return True

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; it runs at once if the token is already cancelled."""
        if self._error is not None:
            listener(self)
            return lambda: None
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def cancel_after(self, seconds: float, message: str | None = None) -> None:
        self._dispose_timer()
        if self._error is not None:
            return
        loop = asyncio.get_running_loop()
        error = RequestTimeoutError(
            message or f"Request timed out after {seconds:g}s",
            details={"timeout_seconds": seconds},
        )
        self._timer = loop.call_later(max(0.0, seconds), self.cancel, error)

    def clear_timeout(self) -> None:
        """Disarm a pending ``cancel_after`` timer; other sources stay linked."""
        self._dispose_timer()

    def raise_if_cancelled(self) -> None:
        if self._error is not None:
            raise self._error

    async def wait(self) -> RouterError:
        if self._error is None:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        assert self._error is not None
        return self._error

    def dispose(self) -> None:
        """Detach timers and parent links without cancelling."""
        self._dispose_timer()
        self._unlink_sources()
        self._listeners.clear()

    def _dispose_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _unlink_sources(self) -> None:
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()

    @classmethod
    def any(cls, *sources: CancellationToken | None, name: str = "") -> CancellationToken:
        """Return a token cancelled as soon as any of ``sources`` is."""
        combined = cls(name=name)
        for source in sources:
            if source is None:
                continue
            if source.cancelled:
                combined.cancel(source.error)
                break
            combined._unlinks.append(
                source.add_listener(lambda fired: combined.cancel(fired.error))
            )
        return combined


async def run_until_cancelled(
    awaitable: Awaitable[T],
    token: CancellationToken,
) -> T:
    """Await ``awaitable`` unless ``token`` fires first, then raise its error."""
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            # Let the cancellation land before the caller touches shared state.
            await asyncio.wait({task})
    if not task.cancelled():
        return task.result()
    token.raise_if_cancelled()
    raise RequestCancelledError("Request cancelled")
