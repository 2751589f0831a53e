from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import EntityKind
from ..sweep.domain import dead_letter_path

if TYPE_CHECKING:
    from ..sweep.domain import Entity, ResourceScope


class StreamBrokerConfig(BaseModel):
    """Configuration for the Redis Streams broker adapter.

    Keys are laid out under ``{key_prefix}:{resource_group}:{namespace}``::

        ...:queue:orders                                  main queue stream
        ...:queue:orders/$DeadLetterQueue                 its dead-letter stream
        ...:topic:billing                                 topic stream (subscriptions = consumer groups)
        ...:topic:billing/subscriptions/retry-sub/$DeadLetterQueue
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key_prefix: str = Field(
        default="sweep",
        min_length=1,
        description="Prefix for Redis keys",
    )
    consumer_group: str = Field(
        default="dlq-sweep",
        min_length=1,
        description="Consumer group created on every dead-letter stream",
    )
    parked_consumer: str = Field(
        default="released",
        min_length=1,
        description="Consumer that holds abandoned entries until their lock runs out",
    )

    lock_duration_ms: int = Field(
        default=60_000,
        ge=1000,
        description="Lock lease of a received entry; idle entries past it are re-claimable",
    )
    max_stream_length: int = Field(
        default=100_000,
        ge=1000,
        description="Approximate cap applied to main streams on redrive",
    )
    scan_count: int = Field(
        default=500,
        ge=10,
        le=10_000,
        description="SCAN COUNT hint used while enumerating entities",
    )

    def scope_prefix(self, scope: ResourceScope) -> str:
        return f"{self.key_prefix}:{scope.resource_group}:{scope.namespace}"

    def queue_key(self, scope: ResourceScope, queue_name: str) -> str:
        return f"{self.scope_prefix(scope)}:queue:{queue_name}"

    def topic_key(self, scope: ResourceScope, topic_name: str) -> str:
        return f"{self.scope_prefix(scope)}:topic:{topic_name}"

    def main_key(self, scope: ResourceScope, entity: Entity) -> str:
        """Stream a redriven message is sent to.

        A subscription has no stream of its own, so redrive targets its topic.
        """
        if entity.kind is EntityKind.QUEUE:
            return self.queue_key(scope, entity.path)
        return self.topic_key(scope, entity.topic_name or "")

    def dead_letter_key(self, scope: ResourceScope, entity: Entity) -> str:
        segment = "queue" if entity.kind is EntityKind.QUEUE else "topic"
        return f"{self.scope_prefix(scope)}:{segment}:{dead_letter_path(entity.path)}"
