"""Merged, single-truth view of a batch."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from traceherb.domain.model.enums import BatchStatus, SourceRole


@dataclass(frozen=True, slots=True)
class MergedField:
    value: object
    provenance: SourceRole
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class StatusConflict:
    """Two or more different terminal statuses were reported for one batch."""

    chosen: BatchStatus
    overruled: tuple[tuple[BatchStatus, SourceRole], ...]


@dataclass(frozen=True, slots=True)
class StatusHistoryEntry:
    """One status a batch went through, as reported by ``source``."""

    status: BatchStatus
    timestamp: datetime | None
    source: SourceRole
    note: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class CanonicalBatch:
    identity: str
    status: BatchStatus
    merged_fields: Mapping[str, MergedField] = field(default_factory=lambda: MappingProxyType({}))
    created_at: datetime
    created_by: SourceRole | None = None
    last_updated: datetime | None = None
    contributing_sources: frozenset[SourceRole] = frozenset()
    aliases: frozenset[str] = frozenset()
    low_confidence_aliases: frozenset[str] = frozenset()
    status_conflicts: tuple[StatusConflict, ...] = ()
    status_history: tuple[StatusHistoryEntry, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "merged_fields", MappingProxyType(dict(self.merged_fields)))

    def value_of(self, attribute: str, default: object = None) -> object:
        merged = self.merged_fields.get(attribute)
        return default if merged is None else merged.value

    def field_values(self) -> dict[str, object]:
        return {name: merged.value for name, merged in self.merged_fields.items()}

    @property
    def has_conflicts(self) -> bool:
        return bool(self.status_conflicts)

    @property
    def progress(self) -> int:
        return self.status.progress

    @property
    def next_status(self) -> BatchStatus | None:
        return self.status.next_status
