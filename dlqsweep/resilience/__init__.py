from __future__ import annotations

from .config import RetryConfig
from .retry import AttemptHook, log_retry_attempt, retry

__all__ = [
    "AttemptHook",
    "RetryConfig",
    "log_retry_attempt",
    "retry",
]
