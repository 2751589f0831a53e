from __future__ import annotations

from enum import StrEnum


class HealthCheckStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INITIALIZING = "initializing"


class EntityKind(StrEnum):
    QUEUE = "queue"
    TOPIC_SUBSCRIPTION = "topic_subscription"


class Disposition(StrEnum):
    """Verdict a policy returns for one dead-lettered message."""

    DISCARD = "discard"
    REDRIVE = "redrive"
    SKIP = "skip"


class FailureCategory(StrEnum):
    """Categorization of dead-letter causes for disposition decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    POISON = "poison"
    UNCLASSIFIED = "unclassified"


class ErrorKind(StrEnum):
    ENTITY_NOT_FOUND = "entity_not_found"
    INVALID_LOCK_STATE = "invalid_lock_state"
    LOCK_EXPIRED = "lock_expired"
    TRANSIENT_BROKER_ERROR = "transient_broker_error"
    FATAL_BROKER_ERROR = "fatal_broker_error"
    UNEXPECTED = "unexpected"


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
