"""Domain enums (pure, dependency-light)."""

from __future__ import annotations

from enum import IntEnum, StrEnum
from typing import Final


class SourceRole(StrEnum):
    """Participant that owns one independently written record collection."""

    ORIGINATOR = "originator"
    PROCESSOR = "processor"
    LABORATORY = "laboratory"
    REGULATOR = "regulator"

    @property
    def pipeline_order(self) -> int:
        return _ROLE_ORDER[self]


_ROLE_ORDER: Final[dict[SourceRole, int]] = {role: index for index, role in enumerate(SourceRole)}


class BatchStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    TESTING = "testing"
    TESTED = "tested"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_RANKS[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == TERMINAL_RANK

    @property
    def progress(self) -> int:
        """Percentage shown on progress bars; a rejected batch shows 0."""

        return _STATUS_PROGRESS[self]

    @property
    def next_status(self) -> BatchStatus | None:
        """Status the happy path expects after this one; ``None`` once the flow ended."""

        return _NEXT_STATUS.get(self)


TERMINAL_RANK: Final[int] = 10

_STATUS_RANKS: Final[dict[BatchStatus, int]] = {
    BatchStatus.PENDING: 0,
    BatchStatus.PROCESSING: 1,
    BatchStatus.PROCESSED: 2,
    BatchStatus.TESTING: 3,
    BatchStatus.TESTED: 4,
    BatchStatus.APPROVED: TERMINAL_RANK,
    BatchStatus.REJECTED: TERMINAL_RANK,
    BatchStatus.COMPLETED: TERMINAL_RANK,
}

_STATUS_PROGRESS: Final[dict[BatchStatus, int]] = {
    BatchStatus.PENDING: 10,
    BatchStatus.PROCESSING: 25,
    BatchStatus.PROCESSED: 50,
    BatchStatus.TESTING: 75,
    BatchStatus.TESTED: 85,
    BatchStatus.APPROVED: 100,
    BatchStatus.REJECTED: 0,
    BatchStatus.COMPLETED: 100,
}

# Tested batches may also end up rejected; the happy path continues to approved.
_NEXT_STATUS: Final[dict[BatchStatus, BatchStatus]] = {
    BatchStatus.PENDING: BatchStatus.PROCESSING,
    BatchStatus.PROCESSING: BatchStatus.PROCESSED,
    BatchStatus.PROCESSED: BatchStatus.TESTING,
    BatchStatus.TESTING: BatchStatus.TESTED,
    BatchStatus.TESTED: BatchStatus.APPROVED,
    BatchStatus.APPROVED: BatchStatus.COMPLETED,
}

# Earlier entries win when two different terminal statuses are reported.
TERMINAL_PRECEDENCE: Final[tuple[BatchStatus, ...]] = (
    BatchStatus.REJECTED,
    BatchStatus.APPROVED,
    BatchStatus.COMPLETED,
)


class ExternalNamespace(StrEnum):
    """Identifier kinds the participant portals generate locally."""

    QR_CODE = "qrCode"
    COLLECTION_ID = "collectionId"
    RECORD_ID = "id"


class StepState(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class LifecycleStage(IntEnum):
    """Timeline stages; the value is the fixed step ordinal."""

    COLLECTION = 1
    PROCESSING = 2
    LAB_TESTING = 3
    REGULATORY_REVIEW = 4
    FINAL = 5


class FieldCategory(StrEnum):
    """Attribute families used to pick the most trusted source on ties."""

    COLLECTION = "collection"
    PROCESSING = "processing"
    TESTING = "testing"
    DECISION = "decision"
    GENERAL = "general"


class MatchKind(StrEnum):
    """How an external id was linked to a canonical identity."""

    EXACT = "exact"
    FUZZY = "fuzzy"
