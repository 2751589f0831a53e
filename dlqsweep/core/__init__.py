"""Core module exports."""

from __future__ import annotations

from .enums import Disposition, EntityKind, ErrorKind, FailureCategory, HealthCheckStatus, RunStatus
from .errors import (
    BrokerError,
    EntityNotFound,
    FatalBrokerError,
    InvalidLockState,
    LockError,
    LockExpired,
    SweepError,
    TransientBrokerError,
)

__all__ = [
    "BrokerError",
    "Disposition",
    "EntityKind",
    "EntityNotFound",
    "ErrorKind",
    "FailureCategory",
    "FatalBrokerError",
    "HealthCheckStatus",
    "InvalidLockState",
    "LockError",
    "LockExpired",
    "RunStatus",
    "SweepError",
    "TransientBrokerError",
]
