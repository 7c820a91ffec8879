"""Ports for persisting records and per-identity reconciliation state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from traceherb.domain.model import BatchRecord, CanonicalBatch, LifecycleStep, SourceRole


@dataclass(frozen=True, slots=True)
class StoredRecord:
    """A persisted record with its insertion sequence number."""

    sequence: int
    record: BatchRecord


@runtime_checkable
class Repository[TEntity](Protocol):
    """Minimal repository contract for a persistent aggregate store."""

    def add(self, entity: TEntity) -> None: ...


@runtime_checkable
class BatchRecordRepository(Repository["BatchRecord"], Protocol):
    """Persistence contract for raw per-source batch records."""

    def exists(self, fingerprint: str) -> bool: ...

    def list_for_role(
        self, role: SourceRole, *, after: int | None = None
    ) -> list[StoredRecord]: ...


@dataclass(frozen=True, slots=True)
class PublishedState:
    """Last observable state published for one identity."""

    version: int
    signature: str
    batch: CanonicalBatch
    timeline: tuple[LifecycleStep, ...]


@runtime_checkable
class BatchStateStore(Protocol):
    """Per-identity record sets and published state.

    Identities are the opaque keys handed out by the identity resolver.
    """

    def add_record(self, identity: str, record: BatchRecord, *, seen_at: datetime) -> bool:
        """Store ``record``; returns ``False`` when its fingerprint is already present."""
        ...

    def records(self, identity: str) -> tuple[BatchRecord, ...]: ...

    def first_seen(self, identity: str) -> datetime | None: ...

    def move_records(self, source: str, target: str) -> None: ...

    def identities(self) -> Iterable[str]: ...

    def published(self, identity: str) -> PublishedState | None: ...

    def publish(self, identity: str, state: PublishedState) -> None: ...
