"""Orchestrator for the reconciliation subsystem.

The engine links incoming records to identities, recomputes the canonical
view of every identity a record touches and publishes a change event when
that view actually changed. Queries always read the last published view.

Locking: one registry lock guards identity resolution and the record store;
one lock per identity serialises recompute, version bump and publish, so
different identities reconcile in parallel.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from traceherb.domain.data_integration import (
    DEFAULT_RESYNC_TIMEOUT_SECONDS,
    ResyncResult,
    fetch_from_sources,
)
from traceherb.domain.errors import BatchNotFoundError, MalformedRecordError
from traceherb.domain.model import CanonicalBatch, StepState
from traceherb.domain.notifications import ChangeEvent, ChangeNotifier
from traceherb.domain.ports.persistence import PublishedState
from traceherb.domain.timestamps import coerce_timestamp, ensure_aware, utcnow

from .arbiter import arbitrate_status
from .history import merge_status_history
from .identity import DEFAULT_MIN_FUZZY_LENGTH, IdentityResolver
from .merge import merge_fields
from .timeline import synthesize_timeline

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from traceherb.domain.model import BatchRecord, BatchStatus, LifecycleStep, SourceRole
    from traceherb.domain.notifications import Subscription
    from traceherb.domain.ports.persistence import BatchStateStore
    from traceherb.domain.ports.sources import RecordSource, SourceCursor
    from traceherb.domain.timestamps import Clock

log = logging.getLogger(__name__)

CREATED_AT_FIELDS = ("createdAt", "collectionDate")


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    """What happened to one ingested record."""

    identity: str | None
    accepted: bool = False
    changed: bool = False
    version: int | None = None
    dropped: bool = False
    absorbed: tuple[str, ...] = ()
    reason: str | None = None


@dataclass(slots=True)
class IngestSummary:
    received: int = 0
    accepted: int = 0
    duplicates: int = 0
    dropped: int = 0
    failed: int = 0
    changed_identities: set[str] = field(default_factory=set)

    def record(self, outcome: IngestOutcome) -> None:
        self.received += 1
        if outcome.dropped:
            self.dropped += 1
        elif outcome.accepted:
            self.accepted += 1
        else:
            self.duplicates += 1
        if outcome.changed and outcome.identity is not None:
            self.changed_identities.add(outcome.identity)
            self.changed_identities.difference_update(outcome.absorbed)


@dataclass(frozen=True, slots=True)
class _IdentitySnapshot:
    identity: str
    records: tuple[BatchRecord, ...]
    first_seen: datetime | None
    aliases: frozenset[str]
    low_confidence: frozenset[str]


class ReconciliationEngine:
    """Merge independently written batch records into canonical batches."""

    def __init__(
        self,
        *,
        store: BatchStateStore,
        sources: Iterable[RecordSource] = (),
        notifier: ChangeNotifier | None = None,
        resolver: IdentityResolver | None = None,
        clock: Clock = utcnow,
        resync_timeout: float = DEFAULT_RESYNC_TIMEOUT_SECONDS,
        min_fuzzy_length: int = DEFAULT_MIN_FUZZY_LENGTH,
        key_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._sources: list[RecordSource] = list(sources)
        self._notifier = notifier or ChangeNotifier()
        self._resolver = resolver or IdentityResolver(
            min_fuzzy_length=min_fuzzy_length, key_factory=key_factory
        )
        self._clock = clock
        self._resync_timeout = resync_timeout
        self._registry_lock = threading.Lock()
        self._identity_locks: dict[str, threading.Lock] = {}
        self._cursors: dict[str, SourceCursor | None] = {}
        self._resync_lock = threading.Lock()

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    @property
    def sources(self) -> tuple[RecordSource, ...]:
        return tuple(self._sources)

    def add_source(self, source: RecordSource) -> None:
        if any(existing.name == source.name for existing in self._sources):
            raise ValueError(f"Record source {source.name!r} already registered")
        self._sources.append(source)

    # ----------------------------------------------------------------- ingest

    def ingest(self, record: BatchRecord) -> IngestOutcome:
        """Reconcile one record; idempotent for records already seen."""

        with self._registry_lock:
            try:
                link = self._resolver.link(record)
            except MalformedRecordError as exc:
                log.warning("Dropping malformed %s record: %s", record.source_role, exc)
                return IngestOutcome(identity=None, dropped=True, reason=str(exc))
            for loser in link.absorbed:
                self._store.move_records(loser, link.identity)
                self._identity_locks.pop(loser, None)
            accepted = self._store.add_record(link.identity, record, seen_at=self._clock())
        log.debug(
            "%s record %s -> %s (%s, accepted=%s)",
            record.source_role,
            record.fingerprint[:12],
            link.identity,
            link.resolution.reason,
            accepted,
        )

        if not accepted and not link.absorbed:
            published = self._store.published(link.identity)
            return IngestOutcome(
                identity=link.identity,
                version=None if published is None else published.version,
                reason="duplicate",
            )
        identity, state, changed = self._refresh(link.identity, absorbed=link.absorbed)
        return IngestOutcome(
            identity=identity,
            accepted=accepted,
            changed=changed,
            version=state.version,
            absorbed=link.absorbed,
            reason=link.resolution.reason,
        )

    def ingest_many(self, records: Iterable[BatchRecord]) -> IngestSummary:
        """Ingest ``records`` one by one; a failing record never stops the rest."""

        summary = IngestSummary()
        for record in records:
            try:
                outcome = self.ingest(record)
            except Exception:
                log.exception("Failed to reconcile %s record", record.source_role)
                summary.received += 1
                summary.failed += 1
                continue
            summary.record(outcome)
        return summary

    # ----------------------------------------------------------------- queries

    def get_canonical_batch(self, identifier: str) -> CanonicalBatch:
        return self._published_for(identifier).batch

    def get_timeline(self, identifier: str) -> tuple[LifecycleStep, ...]:
        """Timeline of the batch; in-progress estimates use the current time."""

        return synthesize_timeline(self._published_for(identifier).batch, now=self._clock())

    def get_version(self, identifier: str) -> int:
        return self._published_for(identifier).version

    def resolve_identity(self, identifier: str) -> str:
        with self._registry_lock:
            identity = self._resolver.lookup(identifier)
        if identity is None:
            raise BatchNotFoundError(identifier)
        return identity

    def identities(self) -> tuple[str, ...]:
        with self._registry_lock:
            return self._resolver.identities()

    def batches_by_status(self, status: BatchStatus) -> tuple[CanonicalBatch, ...]:
        """Published batches whose merged status is ``status``, ordered by identity."""

        batches: list[CanonicalBatch] = []
        for identity in self.identities():
            state = self._store.published(identity)
            if state is None or not state.batch.contributing_sources:
                continue
            if state.batch.status is status:
                batches.append(state.batch)
        return tuple(batches)

    def subscribe(
        self, identity: str | None = None, *, maxsize: int | None = None
    ) -> Subscription:
        """Subscribe to changes of one batch (any of its ids) or of all batches."""

        key = None if identity is None else self.resolve_identity(identity)
        return self._notifier.subscribe(key, maxsize=maxsize)

    # ------------------------------------------------------------------ resync

    def resync(self, *, cancel: threading.Event | None = None) -> int:
        """Poll every source once; returns the number of identities whose view changed."""

        return len(self.resync_report(cancel=cancel).changed_identities)

    def resync_report(self, *, cancel: threading.Event | None = None) -> ResyncResult:
        with self._resync_lock:
            polled = fetch_from_sources(
                self._sources,
                cursors=dict(self._cursors),
                timeout=self._resync_timeout,
                cancel=cancel,
            )
            if polled.cancelled:
                return ResyncResult(
                    unavailable_sources=tuple(polled.unavailable), cancelled=True
                )
            summary = IngestSummary()
            fetched = 0
            for name in sorted(polled.fetched):
                result = polled.fetched[name]
                fetched += len(result.records)
                for record in result.records:
                    try:
                        outcome = self.ingest(record)
                    except Exception:
                        log.exception("Failed to reconcile record from %s", name)
                        summary.received += 1
                        summary.failed += 1
                        continue
                    summary.record(outcome)
                if result.cursor is not None:
                    self._cursors[name] = result.cursor
        report = ResyncResult(
            fetched=fetched,
            ingested=summary.accepted,
            duplicates=summary.duplicates,
            dropped=summary.dropped,
            failed=summary.failed,
            changed_identities=frozenset(summary.changed_identities),
            unavailable_sources=tuple(polled.unavailable),
        )
        log.info(
            "Resync: fetched=%d ingested=%d changed=%d unavailable=%s",
            report.fetched,
            report.ingested,
            len(report.changed_identities),
            ", ".join(report.unavailable_sources) or "-",
        )
        return report

    # --------------------------------------------------------------- internals

    def _published_for(self, identifier: str) -> PublishedState:
        identity = self.resolve_identity(identifier)
        state = self._store.published(identity)
        if state is None or not state.batch.contributing_sources:
            raise BatchNotFoundError(identifier)
        return state

    def _lock_for(self, identity: str) -> threading.Lock:
        with self._registry_lock:
            return self._identity_locks.setdefault(identity, threading.Lock())

    def _refresh(
        self, identity: str, *, absorbed: tuple[str, ...]
    ) -> tuple[str, PublishedState, bool]:
        while True:
            with self._lock_for(identity):
                snapshot = self._snapshot(identity)
                if snapshot is not None:
                    state, changed = self._recompute(snapshot, absorbed=absorbed)
                    return identity, state, changed
            # Fused into another identity while waiting; reconcile the winner.
            identity = self.resolve_identity(identity)

    def _snapshot(self, identity: str) -> _IdentitySnapshot | None:
        with self._registry_lock:
            if self._resolver.canonical(identity) != identity:
                return None
            return _IdentitySnapshot(
                identity=identity,
                records=self._store.records(identity),
                first_seen=self._store.first_seen(identity),
                aliases=self._resolver.aliases(identity),
                low_confidence=self._resolver.low_confidence_aliases(identity),
            )

    def _recompute(
        self, snapshot: _IdentitySnapshot, *, absorbed: tuple[str, ...]
    ) -> tuple[PublishedState, bool]:
        identity = snapshot.identity
        records = snapshot.records
        decision = arbitrate_status(records)
        created_at, created_by = _creation(records, snapshot.first_seen or self._clock())
        batch = CanonicalBatch(
            identity=identity,
            status=decision.status,
            merged_fields=merge_fields(records, overruled=decision.overruled),
            created_at=created_at,
            created_by=created_by,
            last_updated=_last_updated(records),
            contributing_sources=frozenset(record.source_role for record in records),
            aliases=snapshot.aliases,
            low_confidence_aliases=snapshot.low_confidence,
            status_conflicts=() if decision.conflict is None else (decision.conflict,),
            status_history=merge_status_history(records),
        )
        timeline = synthesize_timeline(batch, now=self._clock())
        signature = view_signature(batch, timeline)

        previous = self._store.published(identity)
        if previous is not None and previous.signature == signature and not absorbed:
            return previous, False
        if decision.conflict is not None and (
            previous is None or previous.batch.status_conflicts != batch.status_conflicts
        ):
            log.warning(
                "Batch %s received conflicting terminal statuses; keeping %s over %s",
                identity,
                decision.status,
                ", ".join(f"{status} ({role})" for status, role in decision.conflict.overruled),
            )
        state = PublishedState(
            version=1 if previous is None else previous.version + 1,
            signature=signature,
            batch=batch,
            timeline=timeline,
        )
        self._store.publish(identity, state)
        self._notifier.publish(
            ChangeEvent(
                identity=identity,
                version=state.version,
                batch=batch,
                timeline=timeline,
                absorbed=absorbed,
            )
        )
        return state, True


def view_signature(batch: CanonicalBatch, timeline: Iterable[LifecycleStep]) -> str:
    """Digest of everything a reader can observe about a batch.

    Timestamps of in-progress steps estimated from the current time are
    excluded so that re-merging an unchanged record set is a no-op.
    """

    payload = {
        "status": batch.status.value,
        "fields": {
            name: [_jsonable(merged.value), merged.provenance.value, _jsonable(merged.updated_at)]
            for name, merged in sorted(batch.merged_fields.items())
        },
        "created": [_jsonable(batch.created_at), batch.created_by],
        "last_updated": _jsonable(batch.last_updated),
        "sources": sorted(batch.contributing_sources),
        "aliases": sorted(batch.aliases),
        "low_confidence": sorted(batch.low_confidence_aliases),
        "conflicts": [
            [conflict.chosen.value, [[status, role] for status, role in conflict.overruled]]
            for conflict in batch.status_conflicts
        ],
        "history": [
            [entry.status.value, _jsonable(entry.timestamp), entry.source.value, entry.note]
            for entry in batch.status_history
        ],
        "steps": [
            [
                step.ordinal,
                step.state.value,
                None
                if step.state is StepState.IN_PROGRESS and step.is_estimated
                else _jsonable(step.timestamp),
                step.is_estimated,
                step.provenance,
            ]
            for step in timeline
        ],
    }
    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _jsonable(value: object) -> object:
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value


def _creation(
    records: Iterable[BatchRecord], first_seen: datetime
) -> tuple[datetime, SourceRole | None]:
    declared: list[tuple[datetime, int, SourceRole]] = []
    updated: list[tuple[datetime, int, SourceRole]] = []
    for record in records:
        order = record.source_role.pipeline_order
        for name in CREATED_AT_FIELDS:
            field_value = record.fields.get(name)
            stamp = None if field_value is None else coerce_timestamp(field_value.value)
            if stamp is not None:
                declared.append((stamp, order, record.source_role))
        if record.last_updated is not None:
            updated.append((ensure_aware(record.last_updated), order, record.source_role))
    for candidates in (declared, updated):
        if candidates:
            stamp, _order, role = min(candidates)
            return stamp, role
    return ensure_aware(first_seen), None


def _last_updated(records: Iterable[BatchRecord]) -> datetime | None:
    stamps = [ensure_aware(record.last_updated) for record in records if record.last_updated]
    return max(stamps, default=None)
