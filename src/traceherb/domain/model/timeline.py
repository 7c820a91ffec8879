"""Lifecycle steps derived from a canonical batch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from traceherb.domain.model.enums import StepState

if TYPE_CHECKING:
    from datetime import datetime

    from traceherb.domain.model.enums import LifecycleStage, SourceRole


@dataclass(frozen=True, slots=True)
class LifecycleStep:
    ordinal: int
    stage: LifecycleStage
    name: str
    state: StepState
    timestamp: datetime | None = None
    is_estimated: bool = False
    provenance: SourceRole | None = None

    @property
    def is_done(self) -> bool:
        return self.state in _DONE_STATES


_DONE_STATES = frozenset({StepState.COMPLETED, StepState.APPROVED, StepState.REJECTED})
