from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .broker.config import StreamBrokerConfig
from .infrastructure.redis.config import RedisConfig
from .sweep.config import DrainConfig, SweepConfig


class SweepSettings(BaseSettings):
    """Environment defaults for the ``dlq-sweep`` command.

    Nested models read double-underscore keys, e.g.
    ``DLQSWEEP_REDIS__CONNECTION__HOST`` or ``DLQSWEEP_BROKER__LOCK_DURATION_MS``.
    Command-line flags win over anything set here.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DLQSWEEP_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    namespace: str | None = Field(default=None, description="Namespace to sweep")
    resource_group: str | None = Field(default=None, description="Resource group the namespace belongs to")

    max_messages_per_entity: int = Field(default=1000, ge=1)
    batch_size: int = Field(default=100, ge=1, le=1000)
    receive_wait_seconds: float = Field(default=5.0, ge=0, le=60)
    concurrency_limit: int = Field(default=1, ge=1, le=64)
    policy: str = Field(default="discard", description="Built-in disposition policy name")

    redis: RedisConfig = Field(default_factory=RedisConfig)
    broker: StreamBrokerConfig = Field(default_factory=StreamBrokerConfig)

    def sweep_config(self, **overrides: object) -> SweepConfig:
        """Build a SweepConfig from these defaults; ``overrides`` skip ``None`` values.

        Raises
        ------
        ValueError
            If a value is out of range, or a receive would block longer than
            the Redis socket allows.
        """
        values: dict[str, Any] = {
            "max_messages_per_entity": self.max_messages_per_entity,
            "batch_size": self.batch_size,
            "receive_wait_seconds": self.receive_wait_seconds,
            "concurrency_limit": self.concurrency_limit,
            "dry_run": False,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})

        if values["receive_wait_seconds"] >= self.redis.driver.socket_timeout:
            raise ValueError(
                f"receive wait ({values['receive_wait_seconds']}s) must be shorter than the Redis socket timeout "
                f"({self.redis.driver.socket_timeout}s)"
            )

        drain = DrainConfig(
            max_messages_per_entity=values["max_messages_per_entity"],
            batch_size=values["batch_size"],
            receive_wait_seconds=values["receive_wait_seconds"],
        )
        return SweepConfig(
            drain=drain,
            concurrency_limit=values["concurrency_limit"],
            dry_run=values["dry_run"],
        )
