"""
Unit tests for the broadcast hub.

Tests cover:
- Fan-out to every subscriber in commit order
- Removal of failing subscribers without affecting others
- Slow consumer overflow
- Subscription lifecycle and idempotent unsubscribe
"""

import asyncio

import pytest

from monkeys.monkeys_server.broadcast.hub import (
    BroadcastHub,
    DeliveryStatus,
    QueueSubscriber,
    Subscriber,
    SubscriberWriteFailed,
)
from monkeys.monkeys_server.store.event_store import Record


class RecordingSubscriber(Subscriber):
    """Subscriber that keeps everything offered to it."""

    def __init__(self):
        super().__init__()
        self.received = []

    def offer(self, record):
        self.received.append(record)


class FailingSubscriber(Subscriber):
    """Subscriber whose connection is gone."""

    def offer(self, record):
        raise SubscriberWriteFailed("client disconnected")


def make_record(record_id, char="a"):
    return Record(id=record_id, char=char, ts=1700000000000 + record_id)


class TestBroadcastHub:
    """Tests for BroadcastHub."""

    @pytest.fixture
    def hub(self):
        return BroadcastHub(max_pending=10)

    def test_publish_reaches_all_subscribers(self, hub):
        """Three subscribers each receive the published record."""
        subs = [hub.subscribe(RecordingSubscriber()) for _ in range(3)]
        record = make_record(1)

        results = hub.publish(record)

        assert all(s.received == [record] for s in subs)
        assert [r.status for r in results] == [DeliveryStatus.DELIVERED] * 3
        assert [r.subscriber_id for r in results] == [s.id for s in subs]

    def test_failed_subscriber_removed_others_still_receive(self, hub):
        """If subscriber 2 fails, 1 and 3 receive and 2 is removed."""
        first = hub.subscribe(RecordingSubscriber())
        second = hub.subscribe(FailingSubscriber())
        third = hub.subscribe(RecordingSubscriber())
        record = make_record(1)

        results = hub.publish(record)

        assert first.received == [record]
        assert third.received == [record]
        assert [r.status for r in results] == [
            DeliveryStatus.DELIVERED,
            DeliveryStatus.REMOVED,
            DeliveryStatus.DELIVERED,
        ]
        assert results[1].error == "client disconnected"
        assert hub.subscriber_count == 2
        assert second.closed

        hub.publish(make_record(2))
        assert [r.id for r in first.received] == [1, 2]
        assert hub.stats["removed"] == 1

    def test_unexpected_subscriber_error_is_contained(self, hub):
        """Any exception from offer() removes only that subscriber."""

        class BrokenSubscriber(Subscriber):
            def offer(self, record):
                raise RuntimeError("boom")

        good = hub.subscribe(RecordingSubscriber())
        hub.subscribe(BrokenSubscriber())

        results = hub.publish(make_record(1))

        assert len(good.received) == 1
        assert results[1].status == DeliveryStatus.REMOVED
        assert hub.subscriber_count == 1

    def test_all_subscribers_see_commit_order(self, hub):
        """Every subscriber observes the same order."""
        subs = [hub.subscribe(RecordingSubscriber()) for _ in range(3)]

        for record_id in range(1, 6):
            hub.publish(make_record(record_id))

        for sub in subs:
            assert [r.id for r in sub.received] == [1, 2, 3, 4, 5]

    def test_late_subscriber_gets_no_history(self, hub):
        """Records published before subscribing are not replayed."""
        hub.publish(make_record(1))
        late = hub.subscribe(RecordingSubscriber())
        hub.publish(make_record(2))

        assert [r.id for r in late.received] == [2]

    def test_publish_without_subscribers(self, hub):
        """Publishing to nobody is fine."""
        assert hub.publish(make_record(1)) == []
        assert hub.stats["published"] == 1

    def test_unsubscribe_is_idempotent(self, hub):
        """Unsubscribing twice is harmless."""
        sub = hub.subscribe(RecordingSubscriber())

        hub.unsubscribe(sub)
        hub.unsubscribe(sub)

        assert hub.subscriber_count == 0
        assert sub.closed

    def test_close_unsubscribes_everyone(self, hub):
        """close() ends every subscription."""
        subs = [hub.subscribe() for _ in range(3)]

        hub.close()

        assert hub.subscriber_count == 0
        assert all(s.closed for s in subs)

    @pytest.mark.asyncio
    async def test_queue_subscriber_receives_in_order(self, hub):
        """Default subscribers buffer records for the connection to drain."""
        sub = hub.subscribe()
        assert isinstance(sub, QueueSubscriber)

        hub.publish(make_record(1, "x"))
        hub.publish(make_record(2, "y"))

        assert sub.pending == 2
        assert await sub.get() == make_record(1, "x")
        assert await sub.get() == make_record(2, "y")

    @pytest.mark.asyncio
    async def test_slow_subscriber_dropped_on_overflow(self):
        """A subscriber that falls max_pending behind is removed."""
        hub = BroadcastHub(max_pending=2)
        slow = hub.subscribe()
        fast = hub.subscribe(RecordingSubscriber())

        hub.publish(make_record(1))
        hub.publish(make_record(2))
        results = hub.publish(make_record(3))

        assert results[0].status == DeliveryStatus.REMOVED
        assert results[1].status == DeliveryStatus.DELIVERED
        assert slow.closed
        assert await slow.get() is None
        assert [r.id for r in fast.received] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_iteration_ends_when_closed(self, hub):
        """async for over a subscriber stops after unsubscribe."""
        sub = hub.subscribe()
        hub.publish(make_record(1))
        received = []

        async def consume():
            async for record in sub:
                received.append(record.id)

        task = asyncio.create_task(consume())
        hub.publish(make_record(2))
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)
        hub.unsubscribe(sub)

        await asyncio.wait_for(task, timeout=1)
        assert received == [1, 2]

    @pytest.mark.asyncio
    async def test_closed_subscriber_rejects_offers(self):
        """offer() on a closed queue subscriber fails."""
        sub = QueueSubscriber(max_pending=5)
        sub.close()

        with pytest.raises(SubscriberWriteFailed):
            sub.offer(make_record(1))
        assert await sub.get() is None
        assert await sub.get() is None

    @pytest.mark.asyncio
    async def test_subscription_released_on_error(self, hub):
        """The subscription context unsubscribes on abnormal exit."""
        with pytest.raises(RuntimeError):
            async with hub.subscription() as sub:
                assert hub.subscriber_count == 1
                raise RuntimeError("connection dropped")

        assert hub.subscriber_count == 0
        assert sub.closed

    @pytest.mark.asyncio
    async def test_subscription_released_on_normal_exit(self, hub):
        async with hub.subscription(RecordingSubscriber()) as sub:
            hub.publish(make_record(1))

        assert hub.subscriber_count == 0
        assert len(sub.received) == 1
