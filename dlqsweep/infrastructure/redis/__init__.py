"""Redis module exports."""

from __future__ import annotations

from .client import RedisClient, RedisCommands
from .config import (
    RedisConfig,
    RedisConnectionSettings,
    RedisDriverSettings,
    RedisPoolSettings,
    RedisSSLSettings,
)

__all__ = [
    "RedisClient",
    "RedisCommands",
    "RedisConfig",
    "RedisConnectionSettings",
    "RedisDriverSettings",
    "RedisPoolSettings",
    "RedisSSLSettings",
]
