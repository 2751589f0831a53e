from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.errors import TransientBrokerError
from ..resilience.config import RetryConfig


def broker_retry_config() -> RetryConfig:
    """Retry only transient broker failures; everything else surfaces at once."""
    return RetryConfig(retry_on_exceptions=(TransientBrokerError,))


class DrainConfig(BaseModel):
    """Per-entity drain settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_messages_per_entity: int = Field(
        default=1000,
        ge=1,
        description="Upper bound of messages inspected per entity in one run",
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Messages requested per receive call (capped by the remaining budget)",
    )
    receive_wait_seconds: float = Field(
        default=5.0,
        ge=0,
        le=60,
        description="How long one receive waits for messages before reporting empty",
    )
    retry: RetryConfig = Field(
        default_factory=broker_retry_config,
        description="Backoff applied to transient broker failures",
    )


class SweepConfig(BaseModel):
    """Run-wide settings for the orchestrator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drain: DrainConfig = Field(default_factory=DrainConfig)
    concurrency_limit: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Entities drained simultaneously",
    )
    dry_run: bool = Field(default=False, description="Compute and report decisions without mutating the broker")

    @property
    def max_messages_per_entity(self) -> int:
        return self.drain.max_messages_per_entity


class EntityTarget(BaseModel):
    """Explicit entity filter: a queue name or a ``topic/subscription`` pair."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    queue_name: str | None = Field(default=None, min_length=1)
    topic_subscription: str | None = Field(default=None, description="Format 'topic/subscription'")

    @field_validator("topic_subscription")
    @classmethod
    def _validate_pair(cls, value: str | None) -> str | None:
        if value is None:
            return value
        topic, sep, subscription = value.partition("/")
        if not sep or not topic or not subscription or "/" in subscription:
            raise ValueError(f"topic_subscription must be 'topic/subscription', got {value!r}")
        return value

    @model_validator(mode="after")
    def _exactly_one(self) -> Self:
        if (self.queue_name is None) == (self.topic_subscription is None):
            raise ValueError("exactly one of queue_name or topic_subscription is required")
        return self

    @property
    def topic_name(self) -> str | None:
        return self.topic_subscription.split("/", 1)[0] if self.topic_subscription else None

    @property
    def subscription_name(self) -> str | None:
        return self.topic_subscription.split("/", 1)[1] if self.topic_subscription else None
