"""Shared fixtures for sweep engine tests: an in-memory broker and catalog."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import timedelta
from itertools import count
from uuid import uuid4

import pytest

from dlqsweep.broker.protocols import QueueDescription, SubscriptionDescription, TopicDescription
from dlqsweep.core.errors import InvalidLockState, TransientBrokerError
from dlqsweep.resilience.config import RetryConfig
from dlqsweep.sweep.config import DrainConfig
from dlqsweep.sweep.domain import (
    REDRIVE_COUNT_PROPERTY,
    DeadLetterMessage,
    Entity,
    ResourceScope,
    subscription_path,
    utcnow,
)

type MessageFactory = Callable[..., DeadLetterMessage]


class FakeBroker:
    """In-memory stand-in for a namespace: catalog plus dead-letter data plane.

    Dead-letter messages live per entity path in one of three places:
    ``available`` (receivable), ``locked`` (held under a lock token) or
    ``parked`` (abandoned, hidden until ``expire_locks``). Redriven copies are
    appended to ``sent`` under the main entity (queue name or topic name).
    """

    def __init__(
        self,
        *,
        lock_duration: timedelta = timedelta(seconds=60),
        receive_delay: float = 0.0,
        redeliver_abandoned: bool = False,
    ) -> None:
        self.lock_duration = lock_duration
        self.receive_delay = receive_delay
        self.redeliver_abandoned = redeliver_abandoned

        self.queue_names: list[str] = []
        self.topics: dict[str, list[str]] = {}
        self.available: dict[str, list[DeadLetterMessage]] = {}
        self.locked: dict[str, tuple[str, DeadLetterMessage]] = {}
        self.parked: dict[str, list[DeadLetterMessage]] = {}
        self.sent: dict[str, list[DeadLetterMessage]] = {}
        self.reported_depth: dict[str, int] = {}

        self.receive_calls: list[tuple[str, int]] = []
        self.completed: list[str] = []
        self.abandoned: list[str] = []
        self.receive_errors: dict[str, list[Exception]] = {}
        self.resolve_errors: dict[str, Exception] = {}
        self.send_errors: dict[str, Exception] = {}
        self.catalog_errors: list[Exception] = []

        self.max_concurrent_receives = 0
        self._concurrent_receives = 0
        self._order: dict[tuple[str, str], int] = {}
        self._sequence = count()

    # -- setup helpers -------------------------------------------------------

    def add_queue(
        self,
        name: str,
        messages: Iterable[DeadLetterMessage] = (),
        *,
        reported_depth: int | None = None,
    ) -> Entity:
        self.queue_names.append(name)
        self._store(name, messages, reported_depth)
        return Entity.queue(name, self.reported(name))

    def add_subscription(
        self,
        topic_name: str,
        subscription_name: str,
        messages: Iterable[DeadLetterMessage] = (),
        *,
        reported_depth: int | None = None,
    ) -> Entity:
        self.topics.setdefault(topic_name, []).append(subscription_name)
        path = subscription_path(topic_name, subscription_name)
        self._store(path, messages, reported_depth)
        return Entity.subscription(topic_name, subscription_name, self.reported(path))

    def _store(self, path: str, messages: Iterable[DeadLetterMessage], reported_depth: int | None) -> None:
        stored = list(messages)
        for message in stored:
            self._order[(path, message.message_id)] = next(self._sequence)
        self.available[path] = stored
        if reported_depth is not None:
            self.reported_depth[path] = reported_depth

    def depth(self, path: str) -> int:
        locked = sum(1 for owner, _ in self.locked.values() if owner == path)
        return len(self.available.get(path, [])) + len(self.parked.get(path, [])) + locked

    def reported(self, path: str) -> int:
        return self.reported_depth.get(path, self.depth(path))

    def expire_locks(self) -> None:
        """Let every lock and parked abandon lapse, as if the lease ran out."""
        returned: dict[str, list[DeadLetterMessage]] = {}
        for path, message in self.locked.values():
            returned.setdefault(path, []).append(message)
        for path, messages in self.parked.items():
            returned.setdefault(path, []).extend(messages)
        self.locked.clear()
        self.parked.clear()
        for path, messages in returned.items():
            merged = self.available.get(path, []) + messages
            self.available[path] = sorted(merged, key=lambda m: self._order[(path, m.message_id)])

    # -- EntityCatalog -------------------------------------------------------

    def _maybe_fail_catalog(self) -> None:
        if self.catalog_errors:
            raise self.catalog_errors.pop(0)

    async def list_queues(self, scope: ResourceScope) -> list[QueueDescription]:
        self._maybe_fail_catalog()
        return [QueueDescription(name=name, dead_letter_message_count=self.reported(name)) for name in self.queue_names]

    async def list_topics(self, scope: ResourceScope) -> list[TopicDescription]:
        self._maybe_fail_catalog()
        return [TopicDescription(name=name) for name in self.topics]

    async def list_subscriptions(self, scope: ResourceScope, topic_name: str) -> list[SubscriptionDescription]:
        self._maybe_fail_catalog()
        return [
            SubscriptionDescription(
                name=name,
                dead_letter_message_count=self.reported(subscription_path(topic_name, name)),
            )
            for name in self.topics.get(topic_name, [])
        ]

    # -- DeadLetterBroker ----------------------------------------------------

    async def receive(self, entity: Entity, *, max_count: int, max_wait: float) -> list[DeadLetterMessage]:
        self.receive_calls.append((entity.path, max_count))
        pending_errors = self.receive_errors.get(entity.path)
        if pending_errors:
            raise pending_errors.pop(0)

        self._concurrent_receives += 1
        self.max_concurrent_receives = max(self.max_concurrent_receives, self._concurrent_receives)
        try:
            await asyncio.sleep(self.receive_delay)
        finally:
            self._concurrent_receives -= 1

        queue = self.available.get(entity.path, [])
        batch, self.available[entity.path] = queue[:max_count], queue[max_count:]

        locked_until = utcnow() + self.lock_duration
        received = []
        for stored in batch:
            token = uuid4().hex
            self.locked[token] = (entity.path, stored)
            received.append(stored.model_copy(update={"lock_token": token, "locked_until": locked_until}))
        return received

    def _take_lock(self, entity: Entity, message: DeadLetterMessage) -> DeadLetterMessage:
        error = self.resolve_errors.pop(message.message_id, None)
        if error is not None:
            raise error
        held = self.locked.get(message.lock_token)
        if held is None or held[0] != entity.path:
            raise InvalidLockState("lock token not held", entity_path=entity.path, message_id=message.message_id)
        del self.locked[message.lock_token]
        return held[1]

    async def complete(self, entity: Entity, message: DeadLetterMessage) -> None:
        self._take_lock(entity, message)
        self.completed.append(message.message_id)

    async def abandon(self, entity: Entity, message: DeadLetterMessage) -> None:
        stored = self._take_lock(entity, message)
        self.abandoned.append(message.message_id)
        if self.redeliver_abandoned:
            self.available[entity.path].insert(0, stored)
        else:
            self.parked.setdefault(entity.path, []).append(stored)

    async def send(self, entity: Entity, message: DeadLetterMessage) -> None:
        error = self.send_errors.get(entity.path)
        if error is not None:
            raise error
        properties = {**message.properties, REDRIVE_COUNT_PROPERTY: str(message.redrive_count + 1)}
        target = entity.topic_name or entity.path
        self.sent.setdefault(target, []).append(message.model_copy(update={"properties": properties}))


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_broker_factory() -> Callable[..., FakeBroker]:
    """Build a FakeBroker with non-default lock, delay or redelivery behaviour."""
    return FakeBroker


@pytest.fixture
def scope() -> ResourceScope:
    return ResourceScope(namespace="payments", resource_group="prod-rg")


@pytest.fixture
def make_message() -> MessageFactory:
    """Factory for stored dead-letter messages; receive assigns the real lock."""

    def factory(
        message_id: str | None = None,
        *,
        reason: str = "MaxDeliveryCountExceeded",
        description: str = "",
        delivery_count: int = 10,
        body: bytes = b"{}",
        properties: dict[str, str] | None = None,
    ) -> DeadLetterMessage:
        now = utcnow()
        return DeadLetterMessage(
            message_id=message_id or uuid4().hex,
            lock_token="unlocked",
            delivery_count=delivery_count,
            dead_letter_reason=reason,
            dead_letter_description=description,
            enqueued_at=now,
            locked_until=now,
            body=body,
            properties=properties or {},
        )

    return factory


@pytest.fixture
def make_messages(make_message: MessageFactory) -> Callable[..., list[DeadLetterMessage]]:
    def factory(n: int, prefix: str = "msg", **kwargs: object) -> list[DeadLetterMessage]:
        return [make_message(f"{prefix}-{i}", **kwargs) for i in range(n)]

    return factory


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        wait_min=0,
        wait_max=0,
        retry_on_exceptions=(TransientBrokerError,),
    )


@pytest.fixture
def drain_config(fast_retry: RetryConfig) -> DrainConfig:
    return DrainConfig(batch_size=10, receive_wait_seconds=0, retry=fast_retry)
