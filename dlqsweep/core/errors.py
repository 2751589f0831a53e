from __future__ import annotations

from typing import ClassVar

from .enums import ErrorKind


class SweepError(Exception):
    """Base class for every error the sweep engine records in a report."""

    kind: ClassVar[ErrorKind] = ErrorKind.UNEXPECTED

    def __init__(
        self,
        detail: str,
        *,
        entity_path: str | None = None,
        message_id: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.entity_path = entity_path
        self.message_id = message_id


class EntityNotFound(SweepError):
    kind = ErrorKind.ENTITY_NOT_FOUND


class LockError(SweepError):
    """A message lock could not be used to resolve the message."""


class InvalidLockState(LockError):
    kind = ErrorKind.INVALID_LOCK_STATE


class LockExpired(LockError):
    kind = ErrorKind.LOCK_EXPIRED


class BrokerError(SweepError):
    """A broker call failed."""


class TransientBrokerError(BrokerError):
    kind = ErrorKind.TRANSIENT_BROKER_ERROR


class FatalBrokerError(BrokerError):
    kind = ErrorKind.FATAL_BROKER_ERROR
