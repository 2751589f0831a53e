"""Disposition policies: pure decisions over a dead-lettered message.

A policy never touches the broker. The drainer applies its verdict.
"""

from __future__ import annotations

from collections.abc import Callable
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.enums import Disposition, FailureCategory
from .domain import DeadLetterMessage

type DispositionPolicy = Callable[[DeadLetterMessage], Disposition]


def discard_all(message: DeadLetterMessage) -> Disposition:
    """Default policy: every dead-lettered message is removed."""
    return Disposition.DISCARD


class ClassifyingPolicy(BaseModel):
    """Classify a message by its dead-letter metadata, then map the category to a verdict.

    Reasons are matched case-insensitively as substrings of
    ``dead_letter_reason``. Ceilings win over reasons: a message delivered
    ``max_delivery_count`` times or redriven ``max_redrives`` times is poison
    whatever its reason says.

    Redriving a subscription's message publishes it to the topic, so every
    subscription on that topic receives it again, not only the one it was
    dead-lettered from. Map ``TRANSIENT`` to ``SKIP`` where sibling
    subscribers must not see duplicates.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    transient_reasons: frozenset[str] = Field(
        default=frozenset({"timeout", "throttl", "unavailable", "lockexpired", "serverbusy"}),
        description="Reason fragments that mark a failure as worth another delivery",
    )
    permanent_reasons: frozenset[str] = Field(
        default=frozenset({"deserializ", "schema", "validation", "unauthorized", "ttlexpired"}),
        description="Reason fragments that mark a failure as never recoverable",
    )
    max_delivery_count: int = Field(default=10, ge=1)
    max_redrives: int = Field(default=3, ge=1)
    category_dispositions: dict[FailureCategory, Disposition] = Field(
        default_factory=lambda: {
            FailureCategory.TRANSIENT: Disposition.REDRIVE,
            FailureCategory.PERMANENT: Disposition.DISCARD,
            FailureCategory.POISON: Disposition.DISCARD,
            FailureCategory.UNCLASSIFIED: Disposition.SKIP,
        }
    )

    @field_validator("transient_reasons", "permanent_reasons")
    @classmethod
    def _lowercase(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(reason.lower() for reason in value if reason)

    @field_validator("category_dispositions")
    @classmethod
    def _covers_every_category(cls, value: dict[FailureCategory, Disposition]) -> dict[FailureCategory, Disposition]:
        missing = set(FailureCategory) - set(value)
        if missing:
            raise ValueError(f"no disposition for categories: {sorted(missing)}")
        return value

    def classify(self, message: DeadLetterMessage) -> FailureCategory:
        if message.delivery_count >= self.max_delivery_count or message.redrive_count >= self.max_redrives:
            return FailureCategory.POISON

        reason = message.dead_letter_reason.lower()
        if any(fragment in reason for fragment in self.permanent_reasons):
            return FailureCategory.PERMANENT
        if any(fragment in reason for fragment in self.transient_reasons):
            return FailureCategory.TRANSIENT
        return FailureCategory.UNCLASSIFIED

    def __call__(self, message: DeadLetterMessage) -> Disposition:
        return self.category_dispositions[self.classify(message)]


_POLICIES: MappingProxyType[str, Callable[[], DispositionPolicy]] = MappingProxyType(
    {
        "discard": lambda: discard_all,
        "classify": ClassifyingPolicy,
    }
)

POLICY_NAMES: tuple[str, ...] = tuple(_POLICIES)


def build_policy(name: str) -> DispositionPolicy:
    """Look up a built-in policy by name.

    Raises
    ------
    ValueError
        If no policy is registered under ``name``.
    """
    try:
        factory = _POLICIES[name]
    except KeyError:
        raise ValueError(f"unknown policy {name!r}, expected one of {', '.join(POLICY_NAMES)}") from None
    return factory()
