from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ..sweep.domain import DeadLetterMessage, Entity, ResourceScope


class QueueDescription(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    dead_letter_message_count: int = Field(default=0, ge=0)


class TopicDescription(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str


class SubscriptionDescription(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    dead_letter_message_count: int = Field(default=0, ge=0)


@runtime_checkable
class EntityCatalog(Protocol):
    """Control-plane enumeration of queues, topics and subscriptions."""

    async def list_queues(self, scope: ResourceScope) -> list[QueueDescription]: ...

    async def list_topics(self, scope: ResourceScope) -> list[TopicDescription]: ...

    async def list_subscriptions(self, scope: ResourceScope, topic_name: str) -> list[SubscriptionDescription]: ...


@runtime_checkable
class DeadLetterBroker(Protocol):
    """Data-plane primitives against an entity's dead-letter sub-queue.

    Every method may raise ``TransientBrokerError`` or ``FatalBrokerError``.
    ``complete`` and ``abandon`` additionally raise ``LockExpired`` when the
    lock was lost and ``InvalidLockState`` when the token was already resolved.
    """

    async def receive(self, entity: Entity, *, max_count: int, max_wait: float) -> list[DeadLetterMessage]:
        """Lock and return up to ``max_count`` messages, waiting at most ``max_wait`` seconds."""
        ...

    async def complete(self, entity: Entity, message: DeadLetterMessage) -> None:
        """Permanently remove a locked message."""
        ...

    async def abandon(self, entity: Entity, message: DeadLetterMessage) -> None:
        """Release a locked message back to the dead-letter sub-queue."""
        ...

    async def send(self, entity: Entity, message: DeadLetterMessage) -> None:
        """Send a copy of a dead-lettered message to the entity's main queue.

        For a subscription the target is its topic, which fans the copy out to
        every subscription of that topic.
        """
        ...
