"""
Broadcast module for the Infinite Monkeys server.

Pushes committed records to live subscribers in commit order.
"""

from .hub import (
    BroadcastHub,
    DeliveryResult,
    DeliveryStatus,
    QueueSubscriber,
    Subscriber,
    SubscriberWriteFailed,
)

__all__ = [
    "BroadcastHub",
    "DeliveryResult",
    "DeliveryStatus",
    "QueueSubscriber",
    "Subscriber",
    "SubscriberWriteFailed",
]
