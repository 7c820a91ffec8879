"""Public domain model surface."""

from __future__ import annotations

from traceherb.domain.model.batch import (
    CanonicalBatch,
    MergedField,
    StatusConflict,
    StatusHistoryEntry,
)
from traceherb.domain.model.enums import (
    TERMINAL_PRECEDENCE,
    TERMINAL_RANK,
    BatchStatus,
    ExternalNamespace,
    FieldCategory,
    LifecycleStage,
    MatchKind,
    SourceRole,
    StepState,
)
from traceherb.domain.model.records import (
    BatchRecord,
    ExternalId,
    FieldValue,
    StatusChange,
    with_external_ids,
)
from traceherb.domain.model.timeline import LifecycleStep

__all__ = [  # noqa: RUF022
    # records
    "BatchRecord",
    "ExternalId",
    "FieldValue",
    "StatusChange",
    "with_external_ids",
    # merged state
    "CanonicalBatch",
    "MergedField",
    "StatusConflict",
    "StatusHistoryEntry",
    # timeline
    "LifecycleStep",
    # enums
    "BatchStatus",
    "ExternalNamespace",
    "FieldCategory",
    "LifecycleStage",
    "MatchKind",
    "SourceRole",
    "StepState",
    "TERMINAL_PRECEDENCE",
    "TERMINAL_RANK",
]
