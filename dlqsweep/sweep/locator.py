from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from pydantic import ValidationError

from ..core.errors import EntityNotFound
from ..logger import get_logger
from ..resilience.retry import retry
from .config import broker_retry_config
from .domain import Entity, subscription_path

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..broker.protocols import EntityCatalog
    from ..resilience.config import RetryConfig
    from .config import EntityTarget
    from .domain import ResourceScope

logger: BoundLogger = get_logger(__name__)


class EntityLocator:
    """Resolve the entities a sweep should look at.

    With an explicit target the locator answers with exactly one entity or
    raises ``EntityNotFound``. Without one it enumerates every queue, then
    every subscription of every topic, in catalog order. Depths are snapshots
    and zero-depth entities are included. Catalog names that cannot form an
    entity are logged and left out.
    """

    def __init__(
        self,
        catalog: EntityCatalog,
        scope: ResourceScope,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._scope = scope

        with_retry = retry(retry_config or broker_retry_config())
        self._list_queues = with_retry(catalog.list_queues)
        self._list_topics = with_retry(catalog.list_topics)
        self._list_subscriptions = with_retry(catalog.list_subscriptions)

    @property
    def scope(self) -> ResourceScope:
        return self._scope

    async def locate(self, target: EntityTarget | None = None) -> list[Entity]:
        if target is None:
            entities = await self._enumerate()
        elif target.queue_name is not None:
            entities = [await self._locate_queue(target.queue_name)]
        else:
            entities = [await self._locate_subscription(target.topic_name or "", target.subscription_name or "")]

        logger.info(
            "Located entities",
            namespace=self._scope.namespace,
            resource_group=self._scope.resource_group,
            count=len(entities),
            with_dead_letters=sum(1 for entity in entities if entity.dead_letter_depth > 0),
        )
        return entities

    async def _locate_queue(self, queue_name: str) -> Entity:
        for queue in await self._list_queues(self._scope):
            if queue.name == queue_name:
                return Entity.queue(queue.name, queue.dead_letter_message_count)
        raise EntityNotFound(f"queue {queue_name!r} not found in {self._describe_scope()}", entity_path=queue_name)

    async def _locate_subscription(self, topic_name: str, subscription_name: str) -> Entity:
        path = subscription_path(topic_name, subscription_name)
        topics = await self._list_topics(self._scope)
        if not any(topic.name == topic_name for topic in topics):
            raise EntityNotFound(f"topic {topic_name!r} not found in {self._describe_scope()}", entity_path=path)

        for subscription in await self._list_subscriptions(self._scope, topic_name):
            if subscription.name == subscription_name:
                return Entity.subscription(topic_name, subscription.name, subscription.dead_letter_message_count)
        raise EntityNotFound(
            f"subscription {subscription_name!r} not found on topic {topic_name!r}",
            entity_path=path,
        )

    async def _enumerate(self) -> list[Entity]:
        candidates: list[tuple[Callable[..., Entity], tuple[str | int, ...]]] = [
            (Entity.queue, (queue.name, queue.dead_letter_message_count))
            for queue in await self._list_queues(self._scope)
        ]
        for topic in await self._list_topics(self._scope):
            candidates.extend(
                (Entity.subscription, (topic.name, subscription.name, subscription.dead_letter_message_count))
                for subscription in await self._list_subscriptions(self._scope, topic.name)
            )

        entities: list[Entity] = []
        for factory, args in candidates:
            try:
                entities.append(factory(*args))
            except ValidationError as exc:
                # A stream name the engine cannot address, e.g. a queue named like a subscription path
                logger.warning(
                    "Skipping catalog entry with an unusable name",
                    names=[arg for arg in args if isinstance(arg, str)],
                    error=exc.errors()[0]["msg"],
                )
        return entities

    def _describe_scope(self) -> str:
        return f"namespace {self._scope.namespace!r} (resource group {self._scope.resource_group!r})"
