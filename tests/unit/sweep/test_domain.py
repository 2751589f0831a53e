"""Unit tests for sweep domain models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from dlqsweep.core.enums import EntityKind, ErrorKind, RunStatus
from dlqsweep.core.errors import EntityNotFound, LockExpired
from dlqsweep.sweep.domain import (
    REDRIVE_COUNT_PROPERTY,
    DrainOutcome,
    Entity,
    ErrorRecord,
    RunReport,
)

STARTED = datetime(2026, 1, 1, tzinfo=UTC)


def _report(**kwargs) -> RunReport:
    return RunReport(
        dry_run=False,
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=3),
        max_messages_per_entity=100,
        **kwargs,
    )


class TestEntity:
    """Tests for Entity construction and derived paths."""

    def test_queue(self) -> None:
        entity = Entity.queue("orders-queue", 5)
        assert entity.kind is EntityKind.QUEUE
        assert entity.dead_letter_path == "orders-queue/$DeadLetterQueue"
        assert entity.topic_name is None

    def test_subscription(self) -> None:
        entity = Entity.subscription("billing", "retry-sub", 2)
        assert entity.path == "billing/subscriptions/retry-sub"
        assert entity.topic_name == "billing"
        assert entity.subscription_name == "retry-sub"

    def test_negative_depth_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Entity.queue("orders-queue", -1)

    @pytest.mark.parametrize(
        ("kind", "path"),
        [
            (EntityKind.TOPIC_SUBSCRIPTION, "billing"),
            (EntityKind.QUEUE, "billing/subscriptions/retry-sub"),
        ],
    )
    def test_path_must_match_kind(self, kind: EntityKind, path: str) -> None:
        with pytest.raises(ValidationError):
            Entity(kind=kind, path=path)

    def test_is_immutable(self) -> None:
        entity = Entity.queue("orders-queue")
        with pytest.raises(ValidationError):
            entity.dead_letter_depth = 3  # type: ignore[misc]


class TestDeadLetterMessage:
    """Tests for DeadLetterMessage helpers."""

    @pytest.mark.parametrize(("raw", "expected"), [("2", 2), ("garbage", 0), ("-4", 0)])
    def test_redrive_count(self, make_message, raw: str, expected: int) -> None:
        message = make_message(properties={REDRIVE_COUNT_PROPERTY: raw})
        assert message.redrive_count == expected

    def test_redrive_count_defaults_to_zero(self, make_message) -> None:
        assert make_message().redrive_count == 0

    def test_lock_expiry(self, make_message) -> None:
        message = make_message().model_copy(update={"locked_until": STARTED})
        assert message.is_lock_expired(STARTED)
        assert not message.is_lock_expired(STARTED - timedelta(seconds=1))


class TestErrorRecord:
    """Tests for converting exceptions into records."""

    def test_from_sweep_error(self) -> None:
        record = ErrorRecord.from_exception(LockExpired("lock lost", message_id="m-1"), entity_path="orders-queue")
        assert record.kind is ErrorKind.LOCK_EXPIRED
        assert record.detail == "lock lost"
        assert record.entity_path == "orders-queue"
        assert record.message_id == "m-1"

    def test_error_path_wins_over_fallback(self) -> None:
        record = ErrorRecord.from_exception(EntityNotFound("gone", entity_path="a"), entity_path="b")
        assert record.entity_path == "a"

    def test_from_unexpected_exception(self) -> None:
        record = ErrorRecord.from_exception(RuntimeError("boom"))
        assert record.kind is ErrorKind.UNEXPECTED
        assert record.detail == "RuntimeError: boom"


class TestDrainOutcome:
    """Tests for the outcome count invariant."""

    def test_resolved_cannot_exceed_inspected(self) -> None:
        with pytest.raises(ValidationError, match="exceeds inspected"):
            DrainOutcome(
                entity=Entity.queue("orders-queue"),
                messages_inspected=2,
                messages_removed=2,
                messages_skipped=1,
            )

    def test_unresolved_messages_are_allowed(self) -> None:
        outcome = DrainOutcome(entity=Entity.queue("orders-queue"), messages_inspected=3, messages_removed=1)
        assert outcome.messages_inspected == 3


class TestRunReport:
    """Tests for report totals, status and exit code."""

    def test_totals(self) -> None:
        outcomes = (
            DrainOutcome(entity=Entity.queue("a"), messages_inspected=3, messages_removed=3),
            DrainOutcome(
                entity=Entity.subscription("t", "s"),
                messages_inspected=4,
                messages_redriven=2,
                messages_skipped=1,
                errors=(ErrorRecord(kind=ErrorKind.LOCK_EXPIRED, detail="late"),),
            ),
        )
        totals = _report(outcomes=outcomes).totals
        assert totals.entities_drained == 2
        assert totals.messages_inspected == 7
        assert totals.messages_removed == 3
        assert totals.messages_redriven == 2
        assert totals.messages_skipped == 1
        assert totals.errors == 1

    def test_lock_errors_alone_still_succeed(self) -> None:
        outcome = DrainOutcome(
            entity=Entity.queue("a"),
            messages_inspected=1,
            errors=(ErrorRecord(kind=ErrorKind.LOCK_EXPIRED, detail="late"),),
        )
        report = _report(outcomes=(outcome,))
        assert report.status is RunStatus.SUCCEEDED
        assert report.exit_code == 0

    @pytest.mark.parametrize(
        ("kwargs", "status", "exit_code"),
        [
            ({}, RunStatus.SUCCEEDED, 0),
            ({"cancelled": True}, RunStatus.CANCELLED, 130),
            ({"errors": (ErrorRecord(kind=ErrorKind.ENTITY_NOT_FOUND, detail="x"),)}, RunStatus.FAILED, 1),
            (
                {"outcomes": (DrainOutcome(entity=Entity.queue("a"), fatal=True),), "cancelled": True},
                RunStatus.FAILED,
                1,
            ),
        ],
    )
    def test_status(self, kwargs: dict, status: RunStatus, exit_code: int) -> None:
        report = _report(**kwargs)
        assert report.status is status
        assert report.exit_code == exit_code

    def test_serializes_computed_fields(self) -> None:
        dumped = _report().model_dump(mode="json")
        assert dumped["status"] == "succeeded"
        assert dumped["totals"]["entities_drained"] == 0

    def test_outcome_for(self) -> None:
        outcome = DrainOutcome(entity=Entity.queue("a"))
        report = _report(outcomes=(outcome,))
        assert report.outcome_for("a") is outcome
        assert report.outcome_for("b") is None
