"""In-process fan-out of job progress to observers.

Every subscriber owns an unbounded queue, so events are neither dropped nor
reordered; observers that need throttling apply it on their side.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol

import structlog

from backupchrono.backup.models import ProgressEvent

logger = structlog.get_logger(__name__)


class ProgressSink(Protocol):
    """Where the executor publishes progress."""

    async def publish(self, event: ProgressEvent) -> None: ...

    def forget(self, job_id: str) -> None: ...


class ProgressSubscription:
    """Async iterator over the events matching one subscriber's filter."""

    def __init__(self, broadcaster: ProgressBroadcaster, job_id: str | None):
        self._broadcaster = broadcaster
        self.job_id = job_id
        self.queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self.closed = False

    def matches(self, event: ProgressEvent) -> bool:
        return self.job_id is None or event.job_id == self.job_id

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self)
        self.queue.put_nowait(None)

    async def get(self) -> ProgressEvent | None:
        """Next event, or ``None`` once the subscription is closed."""
        return await self.queue.get()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class ProgressBroadcaster:
    """Publishes every event to every matching subscriber in order."""

    def __init__(self) -> None:
        self._subscriptions: list[ProgressSubscription] = []
        self._latest: dict[str, ProgressEvent] = {}

    def subscribe(self, job_id: str | None = None) -> ProgressSubscription:
        subscription = ProgressSubscription(self, job_id)
        self._subscriptions.append(subscription)
        logger.debug("Progress subscriber added", job_id=job_id)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ProgressEvent) -> None:
        self._latest[event.job_id] = event
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.queue.put_nowait(event)

    def latest(self, job_id: str) -> ProgressEvent | None:
        """Last event seen for ``job_id``, for polling status queries."""
        return self._latest.get(job_id)

    def forget(self, job_id: str) -> None:
        self._latest.pop(job_id, None)
