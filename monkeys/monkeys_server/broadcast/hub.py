"""
Live broadcast hub for the Infinite Monkeys server.

The hub owns the set of connected live subscribers and pushes every
committed record to all of them. It holds no history: late joiners get
their backfill from the query facade before subscribing.

Invariants:
    - Records are offered to subscribers in the order publish() is called,
      which is commit order
    - publish() never awaits and never raises; a failing subscriber is
      removed without affecting the others
    - Delivery is at-most-once; a subscriber that falls too far behind is
      dropped rather than slowing ingestion

How to change safely:
    - Keep offer() non-blocking for every Subscriber implementation
    - Always release subscriptions through unsubscribe() or subscription()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..store.event_store import Record

logger = logging.getLogger(__name__)

_subscriber_ids = itertools.count(1)


class SubscriberWriteFailed(Exception):
    """A live delivery channel could not accept a record."""

    pass


class DeliveryStatus(Enum):
    """Outcome of offering one record to one subscriber."""

    DELIVERED = "delivered"
    REMOVED = "removed"


@dataclass(frozen=True)
class DeliveryResult:
    """Result of a single delivery attempt.

    Attributes:
        subscriber_id: Subscriber the record was offered to
        status: Whether the record was queued or the subscriber removed
        error: Failure reason when removed
    """

    subscriber_id: int
    status: DeliveryStatus
    error: str | None = None


class Subscriber:
    """A live delivery channel.

    Subclasses implement offer(), which must not block. Raising
    SubscriberWriteFailed from offer() gets the subscriber removed.
    """

    def __init__(self) -> None:
        self.id = next(_subscriber_ids)
        self.closed = False

    def offer(self, record: Record) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True


class QueueSubscriber(Subscriber):
    """Subscriber backed by a bounded asyncio queue.

    The connection that owns it drains the queue with `async for` or
    get(); iteration ends once the subscriber is closed.

    Example:
        >>> async with hub.subscription() as sub:
        ...     async for record in sub:
        ...         await send(record)
    """

    def __init__(self, max_pending: int = 1000) -> None:
        super().__init__()
        self.max_pending = max_pending
        self._queue: asyncio.Queue[Record | None] = asyncio.Queue(maxsize=max_pending)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, record: Record) -> None:
        if self.closed:
            raise SubscriberWriteFailed(f"Subscriber {self.id} is closed")
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            raise SubscriberWriteFailed(
                f"Subscriber {self.id} has {self.max_pending} undelivered records"
            ) from None

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        # Pending records are dropped; the sentinel wakes a waiting reader
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> Record | None:
        """Wait for the next record; None once the subscriber is closed."""
        item = await self._queue.get()
        if item is None:
            # Keep the sentinel for any later reader
            self._queue.put_nowait(None)
        return item

    def __aiter__(self) -> QueueSubscriber:
        return self

    async def __anext__(self) -> Record:
        record = await self.get()
        if record is None:
            raise StopAsyncIteration
        return record


class BroadcastHub:
    """Fans committed records out to live subscribers.

    Thread safety:
        Not thread safe. All methods must be called from the event loop
        thread; none of them await, so each call is atomic with respect
        to other coroutines.

    Example:
        >>> hub = BroadcastHub()
        >>> sub = hub.subscribe()
        >>> hub.publish(record)
        >>> await sub.get()
        Record(id=1, char='a', ts=...)
    """

    def __init__(self, max_pending: int = 1000) -> None:
        """Initialize the hub.

        Args:
            max_pending: Queue bound for subscribers created by subscribe()
        """
        self.max_pending = max_pending
        self._subscribers: dict[int, Subscriber] = {}
        self._published = 0
        self._removed = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber | None = None) -> Subscriber:
        """Register a live delivery channel.

        Args:
            subscriber: Channel to register (a QueueSubscriber if not provided)

        Returns:
            The registered subscriber handle
        """
        if subscriber is None:
            subscriber = QueueSubscriber(max_pending=self.max_pending)
        self._subscribers[subscriber.id] = subscriber
        logger.debug(
            "Subscriber connected",
            extra={"subscriber_id": subscriber.id, "subscribers": len(self._subscribers)},
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove and close a subscriber. Safe to call more than once."""
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.debug(
                "Subscriber disconnected",
                extra={"subscriber_id": subscriber.id, "subscribers": len(self._subscribers)},
            )
        subscriber.close()

    def close(self) -> None:
        """Unsubscribe everyone, ending their streams."""
        for subscriber in list(self._subscribers.values()):
            self.unsubscribe(subscriber)

    @asynccontextmanager
    async def subscription(self, subscriber: Subscriber | None = None) -> AsyncIterator[Any]:
        """Subscribe for the duration of a block, unsubscribing on any exit."""
        handle = self.subscribe(subscriber)
        try:
            yield handle
        finally:
            self.unsubscribe(handle)

    def publish(self, record: Record) -> list[DeliveryResult]:
        """Offer a record to every registered subscriber.

        Args:
            record: Committed record

        Returns:
            One DeliveryResult per subscriber, in registration order
        """
        self._published += 1
        results = []

        for subscriber in list(self._subscribers.values()):
            try:
                subscriber.offer(record)
            except Exception as e:
                self._subscribers.pop(subscriber.id, None)
                subscriber.close()
                self._removed += 1
                logger.warning(
                    f"Dropped live subscriber: {e}",
                    extra={"subscriber_id": subscriber.id, "record_id": record.id},
                )
                results.append(
                    DeliveryResult(
                        subscriber_id=subscriber.id,
                        status=DeliveryStatus.REMOVED,
                        error=str(e),
                    )
                )
                continue

            results.append(
                DeliveryResult(subscriber_id=subscriber.id, status=DeliveryStatus.DELIVERED)
            )

        return results

    @property
    def stats(self) -> dict[str, Any]:
        """Get hub statistics."""
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
            "removed": self._removed,
        }
