from __future__ import annotations

import base64
import binascii
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, cast

from redis.exceptions import (
    AuthenticationError,
    NoPermissionError,
    RedisError,
    ResponseError,
)
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
)
from redis.exceptions import (
    TimeoutError as RedisTimeoutError,
)

from ..core.errors import FatalBrokerError, InvalidLockState, LockExpired, TransientBrokerError
from ..logger import get_logger
from ..sweep.domain import (
    DEAD_LETTER_SUFFIX,
    REDRIVE_COUNT_PROPERTY,
    SUBSCRIPTIONS_SEGMENT,
    DeadLetterMessage,
    utcnow,
)
from .config import StreamBrokerConfig
from .protocols import QueueDescription, SubscriptionDescription, TopicDescription

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..infrastructure.redis import RedisClient, RedisCommands
    from ..sweep.domain import Entity, ResourceScope

logger: BoundLogger = get_logger(__name__)

_GLOB_SPECIAL = str.maketrans({c: f"\\{c}" for c in "*?[]\\"})


class RedisStreamBroker:
    """Dead-letter broker and entity catalog backed by Redis Streams.

    Every dead-letter stream gets one consumer group. A receive hands out
    entries through that group, so an entry's stream ID doubles as its lock
    token and its pending-entry idle time is the lock clock:

    - XAUTOCLAIM first takes back entries idle longer than the lock duration
      (abandoned, or left unresolved by a crashed sweep).
    - XREADGROUP then reads never-delivered entries.
    - Complete and abandon run one Lua script that checks ownership and lock
      age before XACK+XDEL (complete) or parking the entry (abandon). The
      script is safe to repeat: an entry already deleted (complete) or
      already parked (abandon) counts as resolved.
    - Send XADDs to the main stream. For a subscription that is the topic
      stream, so every consumer group on the topic gets the redriven copy,
      not only the subscription it was dead-lettered from.

    Usage Pattern
    -------------
    ```python
    broker = RedisStreamBroker(redis_client, ResourceScope(namespace="prod", resource_group="ops"))
    queues = await broker.list_queues(scope)
    messages = await broker.receive(Entity.queue("orders"), max_count=10, max_wait=5.0)
    for message in messages:
        await broker.complete(Entity.queue("orders"), message)
    ```
    """

    # Returns 1 on success, 2 when the entry is already in the requested end
    # state (a retried call whose first reply was lost), 0 when the entry is
    # not pending, -1 when another consumer owns it or its lock ran out.
    _RESOLVE_LUA_SCRIPT: str = """
local stream = KEYS[1]
local group = ARGV[1]
local consumer = ARGV[2]
local entry_id = ARGV[3]
local lock_ms = tonumber(ARGV[4])
local parked = ARGV[5]
local action = ARGV[6]

local pending = redis.call('XPENDING', stream, group, entry_id, entry_id, 1)
if #pending == 0 then
    if action == 'complete' and #redis.call('XRANGE', stream, entry_id, entry_id) == 0 then
        return 2
    end
    return 0
end

local owner = pending[1][2]
if owner == parked then
    if action == 'abandon' then
        return 2
    end
    return 0
end
if owner ~= consumer or tonumber(pending[1][3]) >= lock_ms then
    return -1
end

if action == 'complete' then
    redis.call('XACK', stream, group, entry_id)
    redis.call('XDEL', stream, entry_id)
else
    redis.call('XCLAIM', stream, group, parked, 0, entry_id, 'JUSTID')
end
return 1
"""

    def __init__(
        self,
        redis_client: RedisClient,
        scope: ResourceScope,
        config: StreamBrokerConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis_client = redis_client
        self._scope = scope
        self._config = config or StreamBrokerConfig()
        self._clock = clock
        self._consumer_id = f"sweeper_{uuid.uuid4().hex[:8]}"
        self._groups_ready: set[str] = set()

    @property
    def consumer_id(self) -> str:
        """Unique consumer name of this broker instance."""
        return self._consumer_id

    @property
    def scope(self) -> ResourceScope:
        return self._scope

    # ------------------------------------------------------------------
    # Entity catalog
    # ------------------------------------------------------------------

    async def list_queues(self, scope: ResourceScope) -> list[QueueDescription]:
        prefix = self._config.queue_key(scope, "")
        async with self._broker_call("list_queues"), self._redis_client.aget_client() as client:
            names = [
                name
                for name in await self._scan_names(client, prefix)
                if not name.endswith(DEAD_LETTER_SUFFIX)
            ]
            queues = [
                QueueDescription(
                    name=name,
                    dead_letter_message_count=await self._stream_length(
                        client, f"{prefix}{name}{DEAD_LETTER_SUFFIX}"
                    ),
                )
                for name in sorted(names)
            ]

        logger.debug("Listed queues", scope=self._config.scope_prefix(scope), count=len(queues))
        return queues

    async def list_topics(self, scope: ResourceScope) -> list[TopicDescription]:
        prefix = self._config.topic_key(scope, "")
        async with self._broker_call("list_topics"), self._redis_client.aget_client() as client:
            names = [name for name in await self._scan_names(client, prefix) if SUBSCRIPTIONS_SEGMENT not in name]

        logger.debug("Listed topics", scope=self._config.scope_prefix(scope), count=len(names))
        return [TopicDescription(name=name) for name in sorted(names)]

    async def list_subscriptions(self, scope: ResourceScope, topic_name: str) -> list[SubscriptionDescription]:
        topic_key = self._config.topic_key(scope, topic_name)
        async with self._broker_call("list_subscriptions", topic_name), self._redis_client.aget_client() as client:
            if not await client.exists(topic_key):
                return []

            groups = await client.xinfo_groups(topic_key)
            subscriptions = []
            for group in groups:
                name = self._decode(group["name"])
                depth = await self._stream_length(
                    client, f"{topic_key}{SUBSCRIPTIONS_SEGMENT}{name}{DEAD_LETTER_SUFFIX}"
                )
                subscriptions.append(SubscriptionDescription(name=name, dead_letter_message_count=depth))

        return sorted(subscriptions, key=lambda s: s.name)

    async def dead_letter_depth(self, entity: Entity) -> int:
        """Live number of entries in an entity's dead-letter stream, locked ones included."""
        key = self._config.dead_letter_key(self._scope, entity)
        async with self._broker_call("dead_letter_depth", entity.path), self._redis_client.aget_client() as client:
            return await self._stream_length(client, key)

    # ------------------------------------------------------------------
    # Dead-letter data plane
    # ------------------------------------------------------------------

    async def receive(self, entity: Entity, *, max_count: int, max_wait: float) -> list[DeadLetterMessage]:
        key = self._config.dead_letter_key(self._scope, entity)
        locked_until = self._clock() + timedelta(milliseconds=self._config.lock_duration_ms)
        raw_entries: list[tuple[str | bytes, dict[bytes | str, bytes | str]]] = []

        async with self._broker_call("receive", entity.path), self._redis_client.aget_client() as client:
            if not await self._ensure_group(client, key):
                return []

            claimed = await client.xautoclaim(
                name=key,
                groupname=self._config.consumer_group,
                consumername=self._consumer_id,
                min_idle_time=self._config.lock_duration_ms,
                start_id="0-0",
                count=max_count,
            )
            if claimed:
                # Entries deleted while pending come back without fields
                raw_entries.extend((sid, fields) for sid, fields in claimed[1] if sid is not None and fields)

            remaining = max_count - len(raw_entries)
            if remaining > 0:
                block_ms = int(max_wait * 1000)
                read = await client.xreadgroup(
                    groupname=self._config.consumer_group,
                    consumername=self._consumer_id,
                    streams={key: ">"},
                    count=remaining,
                    block=block_ms if block_ms > 0 and not raw_entries else None,
                )
                for _stream_name, stream_entries in read or []:
                    raw_entries.extend(stream_entries)

        messages = [
            self._parse_message(self._decode(sid), self._decode_fields(fields), locked_until)
            for sid, fields in raw_entries[:max_count]
        ]

        if messages:
            logger.debug(
                "Received dead-letter entries",
                entity=entity.path,
                count=len(messages),
                consumer_id=self._consumer_id,
            )
        return messages

    async def complete(self, entity: Entity, message: DeadLetterMessage) -> None:
        await self._resolve("complete", entity, message)

    async def abandon(self, entity: Entity, message: DeadLetterMessage) -> None:
        await self._resolve("abandon", entity, message)

    async def send(self, entity: Entity, message: DeadLetterMessage) -> None:
        """XADD a redrive copy to the entity's main stream.

        Subscriptions share their topic's stream, so a redriven subscription
        message is delivered to all sibling subscriptions as well.
        """
        main_key = self._config.main_key(self._scope, entity)
        properties = {**message.properties, REDRIVE_COUNT_PROPERTY: str(message.redrive_count + 1)}
        fields: dict[str, str] = {
            "message_id": message.message_id,
            "body": base64.b64encode(message.body).decode(),
            "enqueued_at": self._clock().isoformat(),
            **{f"meta_{name}": value for name, value in properties.items()},
        }

        async with self._broker_call("send", entity.path), self._redis_client.aget_client() as client:
            await client.xadd(
                name=main_key,
                fields=fields,
                maxlen=self._config.max_stream_length,
                approximate=True,
            )

        logger.debug("Sent redrive copy", entity=entity.path, message_id=message.message_id, target=main_key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve(self, action: str, entity: Entity, message: DeadLetterMessage) -> None:
        key = self._config.dead_letter_key(self._scope, entity)
        async with self._broker_call(action, entity.path), self._redis_client.aget_client() as client:
            result = await cast(
                Awaitable[int],
                client.eval(
                    self._RESOLVE_LUA_SCRIPT,
                    1,
                    key,
                    self._config.consumer_group,
                    self._consumer_id,
                    message.lock_token,
                    str(self._config.lock_duration_ms),
                    self._config.parked_consumer,
                    action,
                ),
            )

        if result == 2:
            logger.debug(
                "Entry already resolved, treating retried call as done",
                entity=entity.path,
                action=action,
                message_id=message.message_id,
            )
            return
        if result == 0:
            raise InvalidLockState(
                f"{action}: lock token {message.lock_token} is not held",
                entity_path=entity.path,
                message_id=message.message_id,
            )
        if result == -1:
            raise LockExpired(
                f"{action}: lock on {message.lock_token} expired",
                entity_path=entity.path,
                message_id=message.message_id,
            )

    @asynccontextmanager
    async def _broker_call(self, operation: str, entity_path: str | None = None) -> AsyncIterator[None]:
        """Translate redis-py failures into the sweep's broker error taxonomy."""
        try:
            yield
        except (AuthenticationError, NoPermissionError) as e:
            raise FatalBrokerError(f"{operation} rejected by Redis: {e}", entity_path=entity_path) from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientBrokerError(f"{operation} failed: {e}", entity_path=entity_path) from e
        except RedisError as e:
            raise FatalBrokerError(f"{operation} failed: {e}", entity_path=entity_path) from e

    async def _ensure_group(self, client: RedisCommands, key: str) -> bool:
        """Create the sweep consumer group on a dead-letter stream.

        Returns False when the stream does not exist, i.e. there is nothing to drain.
        """
        if key in self._groups_ready:
            return True

        if not await client.exists(key):
            return False

        try:
            await client.xgroup_create(
                name=key,
                groupname=self._config.consumer_group,
                id="0",
                mkstream=False,
            )
            logger.info("Created dead-letter consumer group", stream=key, group=self._config.consumer_group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

        self._groups_ready.add(key)
        return True

    async def _scan_names(self, client: RedisCommands, prefix: str) -> list[str]:
        pattern = f"{prefix.translate(_GLOB_SPECIAL)}*"
        names: list[str] = []
        async for key in client.scan_iter(match=pattern, count=self._config.scan_count, _type="STREAM"):
            names.append(self._decode(key)[len(prefix) :])
        return names

    async def _stream_length(self, client: RedisCommands, key: str) -> int:
        return int(await cast(Awaitable[int], client.xlen(key)))

    @staticmethod
    def _decode(value: bytes | str) -> str:
        return value.decode() if isinstance(value, bytes) else str(value)

    def _decode_fields(self, fields_raw: dict[bytes | str, bytes | str]) -> dict[str, str]:
        return {self._decode(key): self._decode(value) for key, value in fields_raw.items()}

    def _safe_int(self, value: str, default: int = 0) -> int:
        """Parse integer with fallback for corrupted data."""
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning("Invalid integer value, using default", value=value, default=default)
            return default

    def _parse_message(self, stream_id: str, fields: dict[str, str], locked_until: datetime) -> DeadLetterMessage:
        properties = {key[5:]: value for key, value in fields.items() if key.startswith("meta_")}
        message_id = fields.get("message_id") or stream_id

        enqueued_raw = fields.get("enqueued_at", "")
        try:
            enqueued_at = datetime.fromisoformat(enqueued_raw) if enqueued_raw else self._entry_time(stream_id)
        except ValueError:
            logger.warning("Invalid enqueued_at, using stream entry time", raw=enqueued_raw, message_id=message_id)
            enqueued_at = self._entry_time(stream_id)
        if enqueued_at.tzinfo is None:
            enqueued_at = enqueued_at.replace(tzinfo=UTC)

        body_raw = fields.get("body", "")
        try:
            body = base64.b64decode(body_raw, validate=True)
        except (binascii.Error, ValueError):
            # Opaque payload written by something other than a sweep producer
            logger.warning("Body is not base64, keeping raw bytes", message_id=message_id, stream_id=stream_id)
            body = body_raw.encode()

        return DeadLetterMessage(
            message_id=message_id,
            lock_token=stream_id,
            delivery_count=max(self._safe_int(fields.get("delivery_count", "0")), 0),
            dead_letter_reason=fields.get("dead_letter_reason", ""),
            dead_letter_description=fields.get("dead_letter_description", ""),
            enqueued_at=enqueued_at,
            locked_until=locked_until,
            body=body,
            properties=properties,
        )

    @staticmethod
    def _entry_time(stream_id: str) -> datetime:
        millis, _, _ = stream_id.partition("-")
        try:
            return datetime.fromtimestamp(int(millis) / 1000, tz=UTC)
        except ValueError:
            return utcnow()
