"""In-memory adapters for record sources and reconciliation state."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from traceherb.domain.errors import SourceUnavailableError
from traceherb.domain.ports.sources import SourceFetchResult

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from traceherb.domain.model import BatchRecord, SourceRole
    from traceherb.domain.ports.persistence import PublishedState
    from traceherb.domain.ports.sources import SourceCursor


class InMemoryRecordSource:
    """Fixed record collection for one role; can be switched unavailable."""

    def __init__(
        self,
        role: SourceRole,
        records: Iterable[BatchRecord] = (),
        *,
        name: str | None = None,
    ) -> None:
        self._role = role
        self._name = name or f"memory:{role}"
        self._records: list[BatchRecord] = list(records)
        self._available = True
        self._lock = threading.Lock()
        self.calls: list[SourceCursor | None] = []

    @property
    def role(self) -> SourceRole:
        return self._role

    @property
    def name(self) -> str:
        return self._name

    def add(self, *records: BatchRecord) -> None:
        with self._lock:
            self._records.extend(records)

    def set_available(self, available: bool) -> None:
        with self._lock:
            self._available = available

    def __call__(self, *, since: SourceCursor | None = None) -> SourceFetchResult:
        with self._lock:
            self.calls.append(since)
            if not self._available:
                raise SourceUnavailableError(self._name, "switched off")
            records = tuple(self._records)
        return SourceFetchResult(records=records, cursor=since)


class InMemoryBatchStateStore:
    """Per-identity record sets and published state held in dictionaries."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, BatchRecord]] = {}
        self._first_seen: dict[str, datetime] = {}
        self._published: dict[str, PublishedState] = {}
        self._lock = threading.Lock()

    def add_record(self, identity: str, record: BatchRecord, *, seen_at: datetime) -> bool:
        with self._lock:
            records = self._records.setdefault(identity, {})
            self._first_seen.setdefault(identity, seen_at)
            if record.fingerprint in records:
                return False
            records[record.fingerprint] = record
            return True

    def records(self, identity: str) -> tuple[BatchRecord, ...]:
        with self._lock:
            return tuple(self._records.get(identity, {}).values())

    def first_seen(self, identity: str) -> datetime | None:
        with self._lock:
            return self._first_seen.get(identity)

    def move_records(self, source: str, target: str) -> None:
        with self._lock:
            moved = self._records.pop(source, {})
            self._records.setdefault(target, {}).update(moved)
            source_seen = self._first_seen.pop(source, None)
            if source_seen is not None:
                target_seen = self._first_seen.get(target)
                self._first_seen[target] = (
                    source_seen if target_seen is None else min(source_seen, target_seen)
                )

    def identities(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._records))

    def published(self, identity: str) -> PublishedState | None:
        with self._lock:
            return self._published.get(identity)

    def publish(self, identity: str, state: PublishedState) -> None:
        with self._lock:
            self._published[identity] = state
