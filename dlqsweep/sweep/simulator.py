from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import InvalidLockState
from ..logger import get_logger
from .domain import utcnow

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..broker.protocols import DeadLetterBroker
    from .domain import DeadLetterMessage, Entity

logger: BoundLogger = get_logger(__name__)

SimulatedOperation = Literal["complete", "abandon", "send"]


class SimulatedAction(BaseModel):
    """A mutating broker call that a dry run recorded instead of executing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    operation: SimulatedOperation
    entity_path: str
    message_id: str
    lock_token: str
    recorded_at: datetime = Field(default_factory=utcnow)


class DryRunBroker:
    """Broker wrapper that lets receives through and journals everything else.

    The drainer runs unchanged on top of it, so a dry run walks the exact
    receive and policy path of a real run. Resolve-once is still enforced so
    that a double resolution surfaces in a dry run as it would for real.
    Received messages stay locked until their lease runs out, like any
    unresolved receive.
    """

    def __init__(self, broker: DeadLetterBroker) -> None:
        self._broker = broker
        self._journal: list[SimulatedAction] = []
        self._resolved: set[tuple[str, str]] = set()

    @property
    def journal(self) -> tuple[SimulatedAction, ...]:
        return tuple(self._journal)

    def actions_for(self, entity_path: str) -> list[SimulatedAction]:
        return [action for action in self._journal if action.entity_path == entity_path]

    async def receive(self, entity: Entity, *, max_count: int, max_wait: float) -> list[DeadLetterMessage]:
        return await self._broker.receive(entity, max_count=max_count, max_wait=max_wait)

    async def complete(self, entity: Entity, message: DeadLetterMessage) -> None:
        self._mark_resolved(entity, message, "complete")
        self._record("complete", entity, message)

    async def abandon(self, entity: Entity, message: DeadLetterMessage) -> None:
        self._mark_resolved(entity, message, "abandon")
        self._record("abandon", entity, message)

    async def send(self, entity: Entity, message: DeadLetterMessage) -> None:
        self._record("send", entity, message)

    def _mark_resolved(self, entity: Entity, message: DeadLetterMessage, operation: str) -> None:
        key = (entity.path, message.lock_token)
        if key in self._resolved:
            raise InvalidLockState(
                f"{operation}: lock token {message.lock_token} already resolved",
                entity_path=entity.path,
                message_id=message.message_id,
            )
        self._resolved.add(key)

    def _record(self, operation: SimulatedOperation, entity: Entity, message: DeadLetterMessage) -> None:
        self._journal.append(
            SimulatedAction(
                operation=operation,
                entity_path=entity.path,
                message_id=message.message_id,
                lock_token=message.lock_token,
            )
        )
        logger.debug(
            "Dry run: skipped broker call",
            operation=operation,
            entity=entity.path,
            message_id=message.message_id,
        )
