from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one adapter call, as handed to the queue's complete()."""
    kind: OutcomeKind
    detail: str = ""
    retry_after: int | None = None

    @classmethod
    def success(cls, detail: str = "") -> "DeliveryOutcome":
        return cls(OutcomeKind.SUCCESS, detail)

    @classmethod
    def skipped(cls, detail: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.SKIPPED, detail)

    @classmethod
    def blocked(cls, detail: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.BLOCKED, detail)

    @classmethod
    def rate_limited(cls, retry_after: int | None = None, detail: str = "") -> "DeliveryOutcome":
        return cls(OutcomeKind.RATE_LIMITED, detail, retry_after)

    @classmethod
    def rejected(cls, detail: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.REJECTED, detail)

    @classmethod
    def transient(cls, detail: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.TRANSIENT, detail)
