"""Broker interfaces and the Redis Streams adapter."""

from __future__ import annotations

from .config import StreamBrokerConfig
from .protocols import (
    DeadLetterBroker,
    EntityCatalog,
    QueueDescription,
    SubscriptionDescription,
    TopicDescription,
)
from .redis_streams import RedisStreamBroker

__all__ = [
    "DeadLetterBroker",
    "EntityCatalog",
    "QueueDescription",
    "RedisStreamBroker",
    "StreamBrokerConfig",
    "SubscriptionDescription",
    "TopicDescription",
]
