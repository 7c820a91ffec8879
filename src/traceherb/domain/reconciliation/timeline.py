"""Lifecycle timeline synthesis.

A timeline always lists Collection, Processing, Lab Testing and Regulatory
Review, plus a final decision step once the batch is terminal. Ordinals are
fixed by ``LifecycleStage``. Where no source recorded when a step finished,
the synthesizer estimates a timestamp from neighbouring steps and marks the
step ``is_estimated``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Final

from traceherb.domain.model import BatchStatus, LifecycleStage, LifecycleStep, StepState
from traceherb.domain.timestamps import coerce_timestamp, ensure_aware

if TYPE_CHECKING:
    from datetime import datetime

    from traceherb.domain.model import CanonicalBatch, SourceRole


@dataclass(frozen=True, slots=True)
class StageDefinition:
    stage: LifecycleStage
    name: str
    active_status: BatchStatus | None
    done_rank: int
    signals: tuple[str, ...]
    timestamp_fields: tuple[str, ...]


STAGES: Final[tuple[StageDefinition, ...]] = (
    StageDefinition(
        stage=LifecycleStage.PROCESSING,
        name="Processing",
        active_status=BatchStatus.PROCESSING,
        done_rank=BatchStatus.PROCESSED.rank,
        signals=("processingCompleted", "processingDate", "processingTimestamp"),
        timestamp_fields=(
            "processingCompleted",
            "processingDate",
            "processingTimestamp",
            "processingStarted",
        ),
    ),
    StageDefinition(
        stage=LifecycleStage.LAB_TESTING,
        name="Lab Testing",
        active_status=BatchStatus.TESTING,
        done_rank=BatchStatus.TESTED.rank,
        signals=(
            "testingCompleted",
            "labTestingCompleted",
            "testingDate",
            "labTimestamp",
            "labResults",
            "testResults",
        ),
        timestamp_fields=("testingCompleted", "testingDate", "labTimestamp", "testingStarted"),
    ),
    StageDefinition(
        stage=LifecycleStage.REGULATORY_REVIEW,
        name="Regulatory Review",
        active_status=None,
        done_rank=BatchStatus.APPROVED.rank,
        signals=(
            "regulatoryReviewCompleted",
            "reviewDate",
            "regulatoryDecision",
            "regulatoryTimestamp",
            "approvedDate",
            "rejectedDate",
        ),
        timestamp_fields=(
            "regulatoryReviewCompleted",
            "reviewDate",
            "regulatoryTimestamp",
            "approvedDate",
            "rejectedDate",
            "regulatoryReviewStarted",
        ),
    ),
)

_STAGES_BY_KEY: Final[dict[LifecycleStage, StageDefinition]] = {
    definition.stage: definition for definition in STAGES
}

FINAL_TIMESTAMP_FIELDS: Final[dict[BatchStatus, tuple[str, ...]]] = {
    BatchStatus.APPROVED: ("approvedDate", "finalReviewDate"),
    BatchStatus.REJECTED: ("rejectedDate", "finalReviewDate"),
    BatchStatus.COMPLETED: ("completedDate", "finalReviewDate"),
}

_FINAL_STATES: Final[dict[BatchStatus, StepState]] = {
    BatchStatus.APPROVED: StepState.APPROVED,
    BatchStatus.REJECTED: StepState.REJECTED,
    BatchStatus.COMPLETED: StepState.COMPLETED,
}


def synthesize_timeline(batch: CanonicalBatch, *, now: datetime) -> tuple[LifecycleStep, ...]:
    """Derive the ordered lifecycle steps of ``batch``.

    Pure: the same batch and ``now`` always yield the same steps. ``now`` is
    only used for an in-progress step that carries no start time.
    """

    steps: list[LifecycleStep] = [
        LifecycleStep(
            ordinal=LifecycleStage.COLLECTION,
            stage=LifecycleStage.COLLECTION,
            name="Collection",
            state=StepState.COMPLETED,
            timestamp=batch.created_at,
            is_estimated=False,
            provenance=batch.created_by,
        )
    ]
    steps.extend(_stage_step(batch, definition, now=now) for definition in STAGES)
    steps = _infer_skipped_steps(batch, steps)
    steps = _fill_missing_timestamps(steps)
    if batch.status.is_terminal:
        steps.append(_final_step(batch, regulatory=steps[-1]))
    return tuple(steps)


def _stage_step(
    batch: CanonicalBatch, definition: StageDefinition, *, now: datetime
) -> LifecycleStep:
    signal = _first_signal(batch, definition.signals)
    stamp, stamp_source = _first_timestamp(batch, definition.timestamp_fields)
    base = LifecycleStep(
        ordinal=definition.stage,
        stage=definition.stage,
        name=definition.name,
        state=StepState.PENDING,
    )
    if signal is not None:
        return replace(
            base,
            state=StepState.COMPLETED,
            timestamp=stamp,
            is_estimated=stamp is None,
            provenance=signal,
        )
    if batch.status.rank >= definition.done_rank:
        return replace(base, state=StepState.COMPLETED, timestamp=stamp, is_estimated=True)
    if definition.active_status is not None and batch.status is definition.active_status:
        if stamp is None:
            return replace(base, state=StepState.IN_PROGRESS, timestamp=now, is_estimated=True)
        return replace(
            base, state=StepState.IN_PROGRESS, timestamp=stamp, provenance=stamp_source
        )
    return base


def _infer_skipped_steps(
    batch: CanonicalBatch, steps: list[LifecycleStep]
) -> list[LifecycleStep]:
    """Complete every step that precedes a completed one."""

    last_done = max(index for index, step in enumerate(steps) if step.is_done)
    inferred: list[LifecycleStep] = []
    for index, step in enumerate(steps):
        if index < last_done and not step.is_done:
            stamp, _source = _first_timestamp(batch, _STAGES_BY_KEY[step.stage].timestamp_fields)
            step = replace(
                step,
                state=StepState.COMPLETED,
                timestamp=stamp,
                is_estimated=True,
                provenance=None,
            )
        inferred.append(step)
    return inferred


def _fill_missing_timestamps(steps: list[LifecycleStep]) -> list[LifecycleStep]:
    # "now" placeholders of in-progress steps are never borrowed.
    known = [
        (index, step.timestamp)
        for index, step in enumerate(steps)
        if step.timestamp is not None
        and not (step.state is StepState.IN_PROGRESS and step.is_estimated)
    ]
    filled: list[LifecycleStep] = []
    for index, step in enumerate(steps):
        if step.is_done and step.timestamp is None:
            later = [stamp for position, stamp in known if position > index]
            earlier = [stamp for position, stamp in known if position < index]
            fallback = later[0] if later else (earlier[-1] if earlier else None)
            step = replace(step, timestamp=fallback, is_estimated=True)
        filled.append(step)
    return filled


def _final_step(batch: CanonicalBatch, *, regulatory: LifecycleStep) -> LifecycleStep:
    stamp, source = _first_timestamp(batch, FINAL_TIMESTAMP_FIELDS[batch.status])
    estimated = stamp is None
    if stamp is None:
        stamp = regulatory.timestamp or batch.last_updated or batch.created_at
    return LifecycleStep(
        ordinal=LifecycleStage.FINAL,
        stage=LifecycleStage.FINAL,
        name=batch.status.value.capitalize(),
        state=_FINAL_STATES[batch.status],
        timestamp=stamp,
        is_estimated=estimated,
        provenance=source,
    )


def _first_signal(batch: CanonicalBatch, names: tuple[str, ...]) -> SourceRole | None:
    for name in names:
        merged = batch.merged_fields.get(name)
        if merged is not None and merged.value:
            return merged.provenance
    return None


def _first_timestamp(
    batch: CanonicalBatch, names: tuple[str, ...]
) -> tuple[datetime | None, SourceRole | None]:
    for name in names:
        merged = batch.merged_fields.get(name)
        if merged is None:
            continue
        stamp = coerce_timestamp(merged.value)
        if stamp is not None:
            return ensure_aware(stamp), merged.provenance
    return None, None
