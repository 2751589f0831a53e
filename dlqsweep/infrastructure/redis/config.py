from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from redis.asyncio.connection import SSLConnection


class RedisConnectionSettings(BaseModel):
    """Where the broker lives and how the sweep authenticates to it."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="localhost")
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = Field(default=0, ge=0, le=15)
    username: str | None = Field(default=None, description="ACL user (Redis 6+)")
    password: SecretStr | None = Field(default=None)
    client_name: str = Field(default="dlq-sweep", min_length=1, description="Shown in CLIENT LIST")


class RedisSSLSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Connect with TLS (rediss://)")
    ssl_ca_certs: str | None = Field(default=None, description="CA bundle used to verify the server")


class RedisPoolSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # One receive or resolve per in-flight entity, plus catalog calls
    max_connections: int = Field(default=20, ge=1, le=1000)
    health_check_interval: int = Field(default=30, ge=1, le=300, description="Seconds between idle-connection PINGs")


class RedisDriverSettings(BaseModel):
    """redis-py socket options.

    ``socket_timeout`` must stay above the longest blocking receive wait,
    otherwise XREADGROUP BLOCK calls are cut off by the socket.
    """

    model_config = ConfigDict(extra="forbid")

    socket_keepalive: bool = Field(default=True)
    socket_timeout: float = Field(default=15.0, ge=0.1, le=120.0)
    socket_connect_timeout: float = Field(default=5.0, ge=0.1, le=60.0)
    retry_on_timeout: bool = Field(default=False, description="Off: broker calls are retried by the sweep itself")
    decode_responses: bool = Field(default=True)


class RedisConfig(BaseModel):
    """Connection pool settings for the Redis Streams broker."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    connection: RedisConnectionSettings = Field(default_factory=RedisConnectionSettings)
    ssl: RedisSSLSettings = Field(default_factory=RedisSSLSettings)
    pool: RedisPoolSettings = Field(default_factory=RedisPoolSettings)
    driver: RedisDriverSettings = Field(default_factory=RedisDriverSettings)

    @property
    def url(self) -> str:
        """Connection URL safe for logs: the password is always masked."""
        user = self.connection.username or ""
        secret = ":***" if self.connection.password else ""
        auth = f"{user}{secret}@" if user or secret else ""
        scheme = "rediss" if self.ssl.enabled else "redis"
        return f"{scheme}://{auth}{self.connection.host}:{self.connection.port}/{self.connection.db}"

    def get_connection_pool_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``redis.asyncio.ConnectionPool``."""
        secret = self.connection.password
        kwargs: dict[str, Any] = {
            **self.connection.model_dump(exclude={"password"}),
            "password": secret.get_secret_value() if secret else None,
            **self.pool.model_dump(),
            **self.driver.model_dump(),
        }
        if self.ssl.enabled:
            kwargs["connection_class"] = SSLConnection
            if self.ssl.ssl_ca_certs:
                kwargs["ssl_ca_certs"] = self.ssl.ssl_ca_certs
        return kwargs
