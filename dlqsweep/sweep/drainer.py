from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..core.enums import Disposition
from ..core.errors import BrokerError, FatalBrokerError, InvalidLockState, LockError, LockExpired, TransientBrokerError
from ..logger import get_logger
from ..resilience.retry import retry
from .config import DrainConfig
from .domain import DrainOutcome, ErrorRecord, utcnow
from .policy import discard_all

if TYPE_CHECKING:
    import asyncio
    from datetime import datetime

    from structlog.stdlib import BoundLogger

    from ..broker.protocols import DeadLetterBroker
    from .domain import DeadLetterMessage, Entity
    from .policy import DispositionPolicy

logger: BoundLogger = get_logger(__name__)

type ResolveCall = Callable[[Entity, DeadLetterMessage], Awaitable[None]]


@dataclass
class _DrainProgress:
    """Mutable tally of one drain, frozen into a DrainOutcome at the end."""

    entity: Entity
    inspected: int = 0
    removed: int = 0
    redriven: int = 0
    skipped: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)
    resolved_tokens: set[str] = field(default_factory=set)
    seen_message_ids: set[str] = field(default_factory=set)
    fatal: bool = False
    cancelled: bool = False

    def record(self, exc: BaseException, message: DeadLetterMessage | None = None) -> None:
        self.errors.append(
            ErrorRecord.from_exception(
                exc,
                entity_path=self.entity.path,
                message_id=message.message_id if message else None,
            )
        )

    def outcome(self) -> DrainOutcome:
        return DrainOutcome(
            entity=self.entity,
            messages_inspected=self.inspected,
            messages_removed=self.removed,
            messages_redriven=self.redriven,
            messages_skipped=self.skipped,
            errors=tuple(self.errors),
            fatal=self.fatal,
            cancelled=self.cancelled,
        )


class DeadLetterDrainer:
    """Drain one entity's dead-letter sub-queue under a per-entity budget.

    Messages are received in bounded batches and handled strictly one at a
    time: the policy verdict for a message is fully applied (complete, abandon,
    or send-then-complete) before the next one is looked at. The drain stops
    when the budget is spent, a receive comes back empty, a batch holds only
    messages already inspected in this drain, a broker call fails for good, or
    ``cancel`` is set.

    Failure handling:

    - Lock failures (``LockExpired``, ``InvalidLockState``) are recorded
      against the message and the drain goes on.
    - Broker failures that survive the retry policy are recorded and end the
      drain for this entity only (``DrainOutcome.fatal``).
    - A redrive whose send failed never completes the dead-letter copy; the
      copy is abandoned back to the sub-queue.

    A redrive of a topic subscription goes to the topic, so sibling
    subscriptions get the redriven copy too.
    """

    def __init__(
        self,
        broker: DeadLetterBroker,
        policy: DispositionPolicy = discard_all,
        config: DrainConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._broker = broker
        self._policy = policy
        self._config = config or DrainConfig()
        self._clock = clock

        with_retry = retry(self._config.retry)
        self._receive = with_retry(broker.receive)
        self._complete = with_retry(broker.complete)
        self._abandon = with_retry(broker.abandon)
        self._send = with_retry(broker.send)

    @property
    def config(self) -> DrainConfig:
        return self._config

    async def drain(self, entity: Entity, *, cancel: asyncio.Event | None = None) -> DrainOutcome:
        progress = _DrainProgress(entity=entity)
        budget = self._config.max_messages_per_entity
        log = logger.bind(entity=entity.path)
        log.info("Draining dead-letter queue", depth=entity.dead_letter_depth, budget=budget)

        while progress.inspected < budget and not progress.fatal:
            if cancel is not None and cancel.is_set():
                progress.cancelled = True
                break

            requested = min(self._config.batch_size, budget - progress.inspected)
            try:
                batch = await self._receive(
                    entity,
                    max_count=requested,
                    max_wait=self._config.receive_wait_seconds,
                )
            except BrokerError as exc:
                self._escalate(progress, exc)
                break

            if not batch:
                log.debug("Dead-letter queue observed empty")
                break

            new_messages = await self._process_batch(entity, batch, progress, cancel)
            log.info(
                "Processed dead-letter batch",
                received=len(batch),
                inspected=progress.inspected,
                removed=progress.removed,
                redriven=progress.redriven,
                skipped=progress.skipped,
            )
            if new_messages == 0:
                log.debug("Batch held only redelivered messages, stopping")
                break

        outcome = progress.outcome()
        log_method = log.error if outcome.fatal else log.info
        log_method(
            "Finished draining",
            inspected=outcome.messages_inspected,
            removed=outcome.messages_removed,
            redriven=outcome.messages_redriven,
            skipped=outcome.messages_skipped,
            errors=len(outcome.errors),
            fatal=outcome.fatal,
            cancelled=outcome.cancelled,
        )
        return outcome

    async def _process_batch(
        self,
        entity: Entity,
        batch: list[DeadLetterMessage],
        progress: _DrainProgress,
        cancel: asyncio.Event | None,
    ) -> int:
        budget = self._config.max_messages_per_entity
        new_messages = 0

        for index, message in enumerate(batch):
            if progress.fatal:
                return new_messages

            if cancel is not None and cancel.is_set():
                progress.cancelled = True
                # Received but never looked at: hand them back instead of letting the locks lapse
                for unprocessed in batch[index:]:
                    if unprocessed.message_id not in progress.seen_message_ids:
                        await self._resolve(self._abandon, entity, unprocessed, progress)
                return new_messages

            if message.message_id in progress.seen_message_ids:
                # Lock came back around within this drain; its lease will lapse again
                continue

            if progress.inspected >= budget:
                await self._resolve(self._abandon, entity, message, progress)
                continue

            progress.seen_message_ids.add(message.message_id)
            progress.inspected += 1
            new_messages += 1
            await self._dispose(entity, message, progress)

        return new_messages

    async def _dispose(self, entity: Entity, message: DeadLetterMessage, progress: _DrainProgress) -> None:
        verdict = self._policy(message)

        if message.is_lock_expired(self._clock()):
            progress.record(
                LockExpired(
                    f"lock expired before {verdict} could be applied",
                    entity_path=entity.path,
                    message_id=message.message_id,
                ),
                message,
            )
            logger.warning("Lock already expired, leaving message", entity=entity.path, message_id=message.message_id)
            return

        match verdict:
            case Disposition.DISCARD:
                if await self._resolve(self._complete, entity, message, progress):
                    progress.removed += 1
            case Disposition.REDRIVE:
                if await self._redrive(entity, message, progress):
                    progress.redriven += 1
            case Disposition.SKIP:
                if await self._resolve(self._abandon, entity, message, progress):
                    progress.skipped += 1

    async def _redrive(self, entity: Entity, message: DeadLetterMessage, progress: _DrainProgress) -> bool:
        if message.lock_token in progress.resolved_tokens:
            self._record_double_resolution(entity, message, progress)
            return False

        try:
            await self._send(entity, message)
        except BrokerError as exc:
            logger.warning(
                "Redrive send failed, returning message to dead-letter queue",
                entity=entity.path,
                message_id=message.message_id,
                error=exc.detail,
            )
            # Send failure is recorded first so a failing abandon cannot replace it
            self._escalate(progress, exc, message)
            await self._resolve(self._abandon, entity, message, progress)
            return False

        if message.is_lock_expired(self._clock()):
            # The copy is out; the dead-letter original will be seen again next run
            progress.record(
                LockExpired(
                    "lock expired after redrive send, dead-letter copy kept",
                    entity_path=entity.path,
                    message_id=message.message_id,
                ),
                message,
            )
            return False

        return await self._resolve(self._complete, entity, message, progress)

    async def _resolve(
        self,
        operation: ResolveCall,
        entity: Entity,
        message: DeadLetterMessage,
        progress: _DrainProgress,
    ) -> bool:
        """Complete or abandon a message once. Returns True when the broker accepted it."""
        if message.lock_token in progress.resolved_tokens:
            self._record_double_resolution(entity, message, progress)
            return False
        progress.resolved_tokens.add(message.lock_token)

        try:
            await operation(entity, message)
        except LockError as exc:
            progress.record(exc, message)
            logger.warning(
                "Could not resolve message",
                entity=entity.path,
                message_id=message.message_id,
                error_kind=exc.kind,
                error=exc.detail,
            )
            return False
        except BrokerError as exc:
            self._escalate(progress, exc, message)
            return False
        return True

    def _record_double_resolution(self, entity: Entity, message: DeadLetterMessage, progress: _DrainProgress) -> None:
        progress.record(
            InvalidLockState(
                f"lock token {message.lock_token} already resolved",
                entity_path=entity.path,
                message_id=message.message_id,
            ),
            message,
        )
        logger.error("Lock token resolved twice", entity=entity.path, message_id=message.message_id)

    def _escalate(
        self,
        progress: _DrainProgress,
        exc: BrokerError,
        message: DeadLetterMessage | None = None,
    ) -> None:
        """Record a broker failure that outlived its retries and stop this entity."""
        if isinstance(exc, TransientBrokerError):
            exc = FatalBrokerError(
                f"gave up after {self._config.retry.max_attempts} attempts: {exc.detail}",
                entity_path=exc.entity_path or progress.entity.path,
                message_id=exc.message_id,
            )
        if not progress.fatal:
            progress.record(exc, message)
            logger.error("Broker failure, stopping drain", entity=progress.entity.path, error=exc.detail)
        progress.fatal = True
