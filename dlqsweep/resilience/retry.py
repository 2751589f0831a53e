"""Backoff for broker calls.

``retry(config)`` turns a ``RetryConfig`` into a tenacity decorator for async
callables. The drainer and locator wrap their broker methods with it, so a
``TransientBrokerError`` is retried and everything else surfaces on the first
attempt.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import tenacity
from tenacity import RetryCallState

from ..core.types import P, R
from ..logger import get_logger
from .config import RetryConfig

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger
    from tenacity.retry import retry_base
    from tenacity.stop import stop_base
    from tenacity.wait import wait_base

logger: BoundLogger = get_logger(__name__)

type AttemptHook = Callable[[RetryCallState], Awaitable[None] | None]


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log a failed attempt right before tenacity sleeps."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying broker call",
        call=getattr(retry_state.fn, "__qualname__", repr(retry_state.fn)),
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


def _stop(config: RetryConfig) -> stop_base:
    stop: stop_base = tenacity.stop_after_attempt(config.max_attempts)
    if config.max_delay_seconds is not None:
        stop = stop | tenacity.stop_after_delay(config.max_delay_seconds)
    return stop


def _wait(config: RetryConfig) -> wait_base:
    if config.use_jitter:
        return tenacity.wait_random_exponential(min=config.wait_min, max=config.wait_max)
    return tenacity.wait_exponential(multiplier=config.wait_multiplier, min=config.wait_min, max=config.wait_max)


def _condition(config: RetryConfig) -> retry_base:
    if config.retry_on_exceptions:
        return tenacity.retry_if_exception_type(config.retry_on_exceptions)
    return tenacity.retry_if_exception_type()


def retry(
    config: RetryConfig | None = None,
    before: AttemptHook | None = None,
    after: AttemptHook | None = None,
    before_sleep: AttemptHook | None = log_retry_attempt,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Build a retry decorator for async broker calls.

    Parameters
    ----------
    config
        Attempts, backoff and retryable exception types. Defaults to ``RetryConfig()``.
    before, after
        Called around every attempt.
    before_sleep
        Called after a failed attempt that will be retried. Logs by default.

    Examples
    --------
    >>> receive = retry(RetryConfig(retry_on_exceptions=(TransientBrokerError,)))(broker.receive)
    >>> await receive(entity, max_count=10, max_wait=5.0)
    """
    config = config or RetryConfig()
    return tenacity.retry(
        stop=_stop(config),
        wait=_wait(config),
        retry=_condition(config),
        before=before or tenacity.before_nothing,
        after=after or tenacity.after_nothing,
        before_sleep=before_sleep,
        reraise=config.reraise,
    )
