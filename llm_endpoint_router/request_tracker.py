from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from llm_endpoint_router.cancellation import CancellationToken
from llm_endpoint_router.errors import RequestCancelledError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackedRequest:
    request_id: str
    token: CancellationToken
    created_at: float
    endpoint: str | None = None
    _release: Callable[[str], bool] | None = field(default=None, repr=False)

    def release(self) -> bool:
        """Remove this record from its tracker. Safe to call more than once."""
        release, self._release = self._release, None
        if release is None:
            return False
        return release(self.request_id)

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)


class RequestTracker:
    """Registry of in-flight requests with a background staleness sweep.

    Records leave the registry exactly once: through ``cleanup``, which
    cancels the record's token as a caller cancellation, or through
    ``sweep``, which cancels it with a timeout error.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout_seconds = max(0.0, float(timeout_seconds))
        self._sweep_interval_seconds = max(0.01, float(sweep_interval_seconds))
        self._clock = clock
        self._requests: dict[str, TrackedRequest] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @property
    def in_flight(self) -> int:
        return len(self._requests)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, endpoint: str | None = None) -> TrackedRequest:
        request_id = uuid.uuid4().hex
        tracked = TrackedRequest(
            request_id=request_id,
            token=CancellationToken(name=f"request:{request_id}"),
            created_at=self._clock(),
            endpoint=endpoint,
            _release=self.cleanup,
        )
        self._requests[request_id] = tracked
        if not self.running:
            self.start()
        return tracked

    def cleanup(self, request_id: str) -> bool:
        # pop first so a concurrent sweep can't evict the same record.
        tracked = self._requests.pop(request_id, None)
        if tracked is None:
            return False
        tracked.token.cancel(
            RequestCancelledError(
                "Request was cleaned up", details={"request_id": request_id}
            )
        )
        return True

    def sweep(self) -> list[str]:
        """Evict records older than the timeout and cancel their tokens."""
        if self._timeout_seconds <= 0:
            return []
        now = self._clock()
        stale = [
            request_id
            for request_id, tracked in self._requests.items()
            if tracked.age(now) > self._timeout_seconds
        ]
        evicted: list[str] = []
        for request_id in stale:
            tracked = self._requests.pop(request_id, None)
            if tracked is None:
                continue
            evicted.append(request_id)
            tracked.token.cancel(
                RequestTimeoutError(
                    f"Request exceeded {self._timeout_seconds:g}s and was evicted",
                    details={
                        "request_id": request_id,
                        "age_seconds": round(tracked.age(now), 3),
                    },
                )
            )
        if evicted:
            logger.warning(
                "request_tracker_evicted count=%d timeout_seconds=%s",
                len(evicted),
                self._timeout_seconds,
            )
        return evicted

    def cancel_all(self, reason: str = "Router is shutting down") -> int:
        requests, self._requests = self._requests, {}
        for tracked in requests.values():
            tracked.token.cancel(RequestCancelledError(reason))
        if requests:
            logger.info("request_tracker_cancelled_all count=%d", len(requests))
        return len(requests)

    def snapshot(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            {
                "request_id": tracked.request_id,
                "endpoint": tracked.endpoint,
                "age_seconds": round(tracked.age(now), 3),
                "cancelled": tracked.token.cancelled,
            }
            for tracked in self._requests.values()
        ]

    def start(self) -> bool:
        """Start the sweep task; returns False when no event loop is running."""
        if self.running:
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._task = loop.create_task(self._run(), name="request-tracker-sweep")
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.warning("request_tracker_sweep_failed error=%s", exc)
