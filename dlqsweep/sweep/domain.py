from __future__ import annotations

from datetime import UTC, datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from ..core.enums import EntityKind, ErrorKind, RunStatus
from ..core.errors import SweepError

DEAD_LETTER_SUFFIX = "/$DeadLetterQueue"
SUBSCRIPTIONS_SEGMENT = "/subscriptions/"
REDRIVE_COUNT_PROPERTY = "x-redrive-count"


def utcnow() -> datetime:
    return datetime.now(UTC)


def dead_letter_path(entity_path: str) -> str:
    """Address of the dead-letter sub-queue of an entity path."""
    return f"{entity_path}{DEAD_LETTER_SUFFIX}"


def subscription_path(topic_name: str, subscription_name: str) -> str:
    return f"{topic_name}{SUBSCRIPTIONS_SEGMENT}{subscription_name}"


class ResourceScope(BaseModel):
    """Namespace and resource group that every catalog call is scoped to."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = Field(min_length=1)
    resource_group: str = Field(min_length=1)


class Entity(BaseModel):
    """A drainable target: a queue or a topic subscription.

    ``dead_letter_depth`` is a snapshot taken when the entity was located and
    may already be stale when it is drained.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: EntityKind
    path: str = Field(min_length=1)
    dead_letter_depth: int = Field(default=0, ge=0)

    @classmethod
    def queue(cls, name: str, dead_letter_depth: int = 0) -> Self:
        return cls(kind=EntityKind.QUEUE, path=name, dead_letter_depth=dead_letter_depth)

    @classmethod
    def subscription(cls, topic_name: str, subscription_name: str, dead_letter_depth: int = 0) -> Self:
        return cls(
            kind=EntityKind.TOPIC_SUBSCRIPTION,
            path=subscription_path(topic_name, subscription_name),
            dead_letter_depth=dead_letter_depth,
        )

    @model_validator(mode="after")
    def _check_path_shape(self) -> Self:
        is_subscription_path = SUBSCRIPTIONS_SEGMENT in self.path
        if self.kind is EntityKind.TOPIC_SUBSCRIPTION and not is_subscription_path:
            raise ValueError(f"subscription path must look like 'topic/subscriptions/sub', got {self.path!r}")
        if self.kind is EntityKind.QUEUE and is_subscription_path:
            raise ValueError(f"queue path must not contain {SUBSCRIPTIONS_SEGMENT!r}, got {self.path!r}")
        return self

    @property
    def dead_letter_path(self) -> str:
        return dead_letter_path(self.path)

    @property
    def topic_name(self) -> str | None:
        if self.kind is not EntityKind.TOPIC_SUBSCRIPTION:
            return None
        return self.path.split(SUBSCRIPTIONS_SEGMENT, 1)[0]

    @property
    def subscription_name(self) -> str | None:
        if self.kind is not EntityKind.TOPIC_SUBSCRIPTION:
            return None
        return self.path.split(SUBSCRIPTIONS_SEGMENT, 1)[1]


class DeadLetterMessage(BaseModel):
    """A message received from a dead-letter sub-queue under a time-bounded lock."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message_id: str = Field(min_length=1, description="Broker-independent message identifier")
    lock_token: str = Field(min_length=1, description="Opaque handle used to complete or abandon")
    delivery_count: int = Field(default=0, ge=0, description="Deliveries attempted before dead-lettering")
    dead_letter_reason: str = Field(default="", description="Short machine-readable reason")
    dead_letter_description: str = Field(default="", description="Human-readable failure description")
    enqueued_at: datetime = Field(description="When the message was originally enqueued (UTC)")
    locked_until: datetime = Field(description="When the receive lock expires (UTC)")
    body: bytes = Field(default=b"", description="Opaque payload, never interpreted")
    properties: dict[str, str] = Field(default_factory=dict, description="Application properties")

    @property
    def redrive_count(self) -> int:
        """Times this message has already been redriven by a sweep."""
        try:
            return max(int(self.properties.get(REDRIVE_COUNT_PROPERTY, "0")), 0)
        except ValueError:
            return 0

    def is_lock_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.locked_until


class ErrorRecord(BaseModel):
    """One failure, attached to a drain outcome or to the run itself."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind
    detail: str
    entity_path: str | None = None
    message_id: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        entity_path: str | None = None,
        message_id: str | None = None,
    ) -> Self:
        if isinstance(exc, SweepError):
            return cls(
                kind=exc.kind,
                detail=exc.detail,
                entity_path=exc.entity_path or entity_path,
                message_id=exc.message_id or message_id,
            )
        return cls(
            kind=ErrorKind.UNEXPECTED,
            detail=f"{type(exc).__name__}: {exc}",
            entity_path=entity_path,
            message_id=message_id,
        )


class DrainOutcome(BaseModel):
    """Result of draining one entity."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    entity: Entity
    messages_inspected: int = Field(default=0, ge=0)
    messages_removed: int = Field(default=0, ge=0)
    messages_redriven: int = Field(default=0, ge=0)
    messages_skipped: int = Field(default=0, ge=0)
    errors: tuple[ErrorRecord, ...] = ()
    fatal: bool = Field(default=False, description="Drain stopped on a non-recoverable broker error")
    cancelled: bool = Field(default=False, description="Drain stopped on an external cancellation")

    @model_validator(mode="after")
    def _check_counts(self) -> Self:
        resolved = self.messages_removed + self.messages_redriven + self.messages_skipped
        if resolved > self.messages_inspected:
            raise ValueError(
                f"removed+redriven+skipped ({resolved}) exceeds inspected ({self.messages_inspected})"
            )
        return self


class RunTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    entities_drained: int = 0
    messages_inspected: int = 0
    messages_removed: int = 0
    messages_redriven: int = 0
    messages_skipped: int = 0
    errors: int = 0


class RunReport(BaseModel):
    """Aggregate of a whole sweep run, the only artifact a run exposes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    dry_run: bool
    started_at: datetime
    finished_at: datetime
    max_messages_per_entity: int = Field(ge=1)
    concurrency_limit: int = Field(default=1, ge=1)
    entities_located: int = Field(default=0, ge=0)
    outcomes: tuple[DrainOutcome, ...] = ()
    errors: tuple[ErrorRecord, ...] = Field(default=(), description="Run-level failures such as lookups")
    cancelled: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def totals(self) -> RunTotals:
        return RunTotals(
            entities_drained=len(self.outcomes),
            messages_inspected=sum(o.messages_inspected for o in self.outcomes),
            messages_removed=sum(o.messages_removed for o in self.outcomes),
            messages_redriven=sum(o.messages_redriven for o in self.outcomes),
            messages_skipped=sum(o.messages_skipped for o in self.outcomes),
            errors=len(self.errors) + sum(len(o.errors) for o in self.outcomes),
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> RunStatus:
        if self.errors or any(o.fatal for o in self.outcomes):
            return RunStatus.FAILED
        if self.cancelled:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return {RunStatus.SUCCEEDED: 0, RunStatus.FAILED: 1, RunStatus.CANCELLED: 130}[self.status]

    def outcome_for(self, entity_path: str) -> DrainOutcome | None:
        return next((o for o in self.outcomes if o.entity.path == entity_path), None)
