from __future__ import annotations

import itertools
import logging
import threading
from typing import TYPE_CHECKING

import pytest

from traceherb.adapters.memory import InMemoryBatchStateStore, InMemoryRecordSource
from traceherb.domain.errors import BatchNotFoundError
from traceherb.domain.model import (
    BatchStatus,
    CanonicalBatch,
    LifecycleStep,
    SourceRole,
    StatusChange,
    StatusConflict,
    StepState,
)
from traceherb.domain.reconciliation import ReconciliationEngine
from tests.helpers.records import (
    T0,
    FakeClock,
    at,
    farmer_record,
    make_record,
    processor_record,
    regulator_record,
    sequential_keys,
)

if TYPE_CHECKING:
    from datetime import datetime

    from traceherb.domain.model import BatchRecord


def _fresh_engine(clock: FakeClock) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=InMemoryBatchStateStore(), clock=clock, key_factory=sequential_keys()
    )


def _observable(
    batch: CanonicalBatch, timeline: tuple[LifecycleStep, ...]
) -> tuple[object, ...]:
    """Everything a reader sees, minus the opaque identity key."""

    return (
        batch.status,
        sorted(
            (name, merged.value, merged.provenance, merged.updated_at)
            for name, merged in batch.merged_fields.items()
        ),
        batch.created_at,
        batch.created_by,
        batch.last_updated,
        sorted(batch.contributing_sources),
        sorted(batch.aliases),
        sorted(batch.low_confidence_aliases),
        batch.status_conflicts,
        batch.status_history,
        timeline,
    )


# --------------------------------------------------------------------- scenarios


def test_scenario_missing_processing_completion_is_inferred(
    engine: ReconciliationEngine,
) -> None:
    engine.ingest(make_record(qr_code="Q1", fields={"createdAt": T0.isoformat()}, last_updated=T0))
    engine.ingest(
        make_record(
            SourceRole.PROCESSOR,
            qr_code="Q1",
            status=BatchStatus.PROCESSING,
            fields={"processingStarted": at(1).isoformat()},
            last_updated=at(1),
        )
    )
    engine.ingest(
        make_record(
            SourceRole.LABORATORY,
            qr_code="Q1",
            status=BatchStatus.TESTED,
            fields={"labTimestamp": at(3).isoformat()},
            last_updated=at(3),
        )
    )

    batch = engine.get_canonical_batch("Q1")
    collection, processing, lab, regulatory = engine.get_timeline("Q1")

    assert batch.status is BatchStatus.TESTED
    assert (collection.state, collection.timestamp, collection.is_estimated) == (
        StepState.COMPLETED,
        T0,
        False,
    )
    assert (processing.state, processing.timestamp, processing.is_estimated) == (
        StepState.COMPLETED,
        at(1),
        True,
    )
    assert (lab.state, lab.timestamp, lab.is_estimated) == (StepState.COMPLETED, at(3), False)
    assert regulatory.state is StepState.PENDING


def test_scenario_stale_approval_never_overrides_rejection(
    engine: ReconciliationEngine, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.WARNING)
    engine.ingest(
        regulator_record(
            qr_code="Q1",
            status=BatchStatus.REJECTED,
            fields={"rejectionReason": "X"},
            last_updated=at(10),
        )
    )

    outcome = engine.ingest(
        regulator_record(
            qr_code="Q1",
            status=BatchStatus.APPROVED,
            fields={"approvedDate": at(5).isoformat(), "approvalReason": "cached"},
            last_updated=at(5),
        )
    )

    batch = engine.get_canonical_batch("Q1")
    assert outcome.changed is True
    assert batch.status is BatchStatus.REJECTED
    assert batch.value_of("rejectionReason") == "X"
    assert "approvalReason" not in batch.merged_fields
    assert "approvedDate" not in batch.merged_fields
    assert batch.status_conflicts == (
        StatusConflict(
            chosen=BatchStatus.REJECTED,
            overruled=((BatchStatus.APPROVED, SourceRole.REGULATOR),),
        ),
    )
    assert batch.has_conflicts
    assert engine.get_timeline("Q1")[-1].state is StepState.REJECTED
    assert "conflicting terminal statuses" in caplog.text


def test_terminal_conflict_is_logged_once(
    engine: ReconciliationEngine, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.WARNING)
    engine.ingest(regulator_record(qr_code="Q1", status=BatchStatus.REJECTED))
    engine.ingest(regulator_record(qr_code="Q1", status=BatchStatus.APPROVED, last_updated=at(1)))

    engine.ingest(farmer_record(qr_code="Q1"))

    warnings = [
        record for record in caplog.records if "conflicting terminal" in record.getMessage()
    ]
    assert len(warnings) == 1


def test_scenario_record_without_ids_is_dropped(
    engine: ReconciliationEngine, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.WARNING)
    engine.ingest(farmer_record())
    version = engine.get_version("HERB_QR001")

    outcome = engine.ingest(
        make_record(SourceRole.LABORATORY, qr_code=None, status=BatchStatus.TESTED)
    )

    assert outcome.dropped is True
    assert outcome.identity is None
    assert outcome.accepted is False
    assert engine.identities() == ("batch-1",)
    assert engine.get_version("HERB_QR001") == version
    assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.PENDING
    assert "Dropping malformed" in caplog.text


# -------------------------------------------------------------------- properties


def test_converges_for_every_arrival_order(clock: FakeClock) -> None:
    records: list[BatchRecord] = [
        farmer_record(qr_code="Q1", collection_id="COL-1"),
        processor_record(qr_code="Q1", record_id=None),
        make_record(
            SourceRole.LABORATORY,
            qr_code=None,
            record_id="COL-1",
            status=BatchStatus.TESTED,
            fields={"labTimestamp": at(30).isoformat(), "moistureContent": 7.9},
            last_updated=at(30),
        ),
        regulator_record(qr_code="Q1"),
    ]

    observed: list[tuple[object, ...]] = []
    for order in itertools.permutations(records):
        engine = _fresh_engine(clock)
        for record in order:
            engine.ingest(record)
        assert len(engine.identities()) == 1
        batch = engine.get_canonical_batch("Q1")
        observed.append(_observable(batch, engine.get_timeline("COL-1")))

    assert len(observed) == 24
    assert all(view == observed[0] for view in observed)


def test_terminal_status_is_monotonic(engine: ReconciliationEngine) -> None:
    engine.ingest(farmer_record())
    engine.ingest(regulator_record())

    for late in (
        processor_record(last_updated=at(90)),
        make_record(SourceRole.LABORATORY, status=BatchStatus.TESTING, last_updated=at(95)),
    ):
        engine.ingest(late)
        assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.APPROVED


def test_reingesting_a_record_is_idempotent(engine: ReconciliationEngine) -> None:
    record = farmer_record()
    first = engine.ingest(record)
    subscription = engine.subscribe("HERB_QR001")

    again = engine.ingest(record)

    assert first.accepted is True
    assert first.changed is True
    assert first.version == 1
    assert again.accepted is False
    assert again.changed is False
    assert again.reason == "duplicate"
    assert again.version == 1
    assert subscription.pending() == 0
    assert engine.get_version("HERB_QR001") == 1


def test_accepted_record_without_visible_change_publishes_nothing(
    engine: ReconciliationEngine,
) -> None:
    fields = {"location": "Jaipur", "createdAt": T0.isoformat()}
    stamps = {"location": T0}
    engine.ingest(farmer_record(fields=fields, field_timestamps=stamps, last_updated=at(1)))
    subscription = engine.subscribe()

    outcome = engine.ingest(
        farmer_record(fields=fields, field_timestamps=stamps, last_updated=at(0.5))
    )

    assert outcome.accepted is True
    assert outcome.changed is False
    assert outcome.version == 1
    assert subscription.pending() == 0


def test_versions_increase_by_one_per_change(engine: ReconciliationEngine) -> None:
    subscription = engine.subscribe()

    for record in (farmer_record(), processor_record(), regulator_record()):
        engine.ingest(record)

    versions = [event.version for event in iter(lambda: subscription.get(timeout=0), None)]
    assert versions == [1, 2, 3]
    assert engine.get_version("PROC-77") == 3


def test_identity_is_stable_across_all_known_ids(engine: ReconciliationEngine) -> None:
    first = engine.ingest(farmer_record())
    second = engine.ingest(processor_record())

    assert first.identity == second.identity
    identity = engine.resolve_identity("HERB_QR001")
    for identifier in ("HERB_QR001", "COL-1001", "PROC-77", identity):
        assert engine.get_canonical_batch(identifier).identity == identity
    assert engine.get_canonical_batch("PROC-77").aliases == {"HERB_QR001", "COL-1001", "PROC-77"}


def test_fuzzy_links_surface_as_low_confidence_aliases(engine: ReconciliationEngine) -> None:
    engine.ingest(farmer_record(qr_code="HERB_QR7781", collection_id=None))

    outcome = engine.ingest(processor_record(qr_code="QR7781", record_id=None))

    assert outcome.reason == "fuzzy_match"
    batch = engine.get_canonical_batch("QR7781")
    assert batch.low_confidence_aliases == {"QR7781"}
    assert batch.contributing_sources == {SourceRole.ORIGINATOR, SourceRole.PROCESSOR}


def test_fused_identities_notify_subscribers_of_the_absorbed_key(
    engine: ReconciliationEngine,
) -> None:
    engine.ingest(farmer_record(qr_code="AAAA1", collection_id=None))
    engine.ingest(make_record(SourceRole.LABORATORY, qr_code=None, record_id="BBBB2"))
    watcher = engine.subscribe("BBBB2")

    outcome = engine.ingest(processor_record(qr_code="AAAA1", record_id="BBBB2"))

    assert outcome.identity == "batch-1"
    assert outcome.absorbed == ("batch-2",)
    assert outcome.changed is True
    event = watcher.get(timeout=1)
    assert event is not None
    assert event.identity == "batch-1"
    assert event.absorbed == ("batch-2",)
    assert event.version == 2
    assert engine.identities() == ("batch-1",)
    merged = engine.get_canonical_batch("batch-2")
    assert merged.identity == "batch-1"
    assert merged.contributing_sources == {
        SourceRole.ORIGINATOR,
        SourceRole.PROCESSOR,
        SourceRole.LABORATORY,
    }
    # Later changes of the winner keep reaching the subscriber.
    engine.ingest(regulator_record(qr_code="AAAA1"))
    follow_up = watcher.get(timeout=1)
    assert follow_up is not None
    assert follow_up.version == 3



def test_fusion_releases_the_absorbed_identity_lock(engine: ReconciliationEngine) -> None:
    engine.ingest(farmer_record(qr_code="AAAA1", collection_id=None))
    engine.ingest(make_record(SourceRole.LABORATORY, qr_code=None, record_id="BBBB2"))
    assert set(engine._identity_locks) == {"batch-1", "batch-2"}  # noqa: SLF001

    engine.ingest(processor_record(qr_code="AAAA1", record_id="BBBB2"))

    assert set(engine._identity_locks) == {"batch-1"}  # noqa: SLF001
    assert engine.get_version("BBBB2") == engine.get_version("AAAA1")


# ----------------------------------------------------------------------- queries


def test_batches_by_status_lists_merged_views(engine: ReconciliationEngine) -> None:
    engine.ingest(farmer_record())
    engine.ingest(processor_record())
    engine.ingest(make_record(qr_code="HERB_QR900", collection_id="COL-9000"))
    engine.ingest(make_record(qr_code="HERB_QR800", collection_id="COL-8000"))

    pending = engine.batches_by_status(BatchStatus.PENDING)
    processing = engine.batches_by_status(BatchStatus.PROCESSING)

    assert [sorted(batch.aliases)[0] for batch in pending] == ["COL-9000", "COL-8000"]
    assert [batch.identity for batch in pending] == sorted(batch.identity for batch in pending)
    assert [batch.identity for batch in processing] == [engine.resolve_identity("HERB_QR001")]
    assert engine.batches_by_status(BatchStatus.APPROVED) == ()


def test_canonical_batch_carries_trail_and_progress(engine: ReconciliationEngine) -> None:
    engine.ingest(
        farmer_record(
            status_history=[StatusChange(BatchStatus.PENDING, T0, "Batch created and submitted")]
        )
    )
    engine.ingest(processor_record())

    batch = engine.get_canonical_batch("HERB_QR001")

    assert [(entry.status, entry.timestamp, entry.source) for entry in batch.status_history] == [
        (BatchStatus.PENDING, T0, SourceRole.ORIGINATOR),
        (BatchStatus.PROCESSING, at(2), SourceRole.PROCESSOR),
    ]
    assert batch.status_history[0].note == "Batch created and submitted"
    assert batch.progress == 25
    assert batch.next_status is BatchStatus.PROCESSED


def test_new_trail_entry_alone_publishes_a_new_version(engine: ReconciliationEngine) -> None:
    engine.ingest(farmer_record())
    before = engine.get_version("HERB_QR001")

    engine.ingest(
        farmer_record(status_history=[StatusChange(BatchStatus.PENDING, at(-1), "draft")])
    )

    assert engine.get_version("HERB_QR001") == before + 1
    assert engine.get_canonical_batch("HERB_QR001").status_history[0].timestamp == at(-1)


def test_unknown_identifier_raises_not_found(engine: ReconciliationEngine) -> None:
    with pytest.raises(BatchNotFoundError) as exc:
        engine.get_canonical_batch("nope")

    assert exc.value.identifier == "nope"
    with pytest.raises(BatchNotFoundError):
        engine.get_timeline("nope")
    with pytest.raises(BatchNotFoundError):
        engine.subscribe("nope")


def test_created_at_falls_back_to_earliest_update_then_first_seen(
    engine: ReconciliationEngine, clock: FakeClock
) -> None:
    engine.ingest(make_record(qr_code="Q1", last_updated=at(4)))
    engine.ingest(make_record(SourceRole.PROCESSOR, qr_code="Q1", last_updated=at(2)))
    engine.ingest(make_record(qr_code="Q2", last_updated=None))

    with_updates = engine.get_canonical_batch("Q1")
    undated = engine.get_canonical_batch("Q2")

    assert with_updates.created_at == at(2)
    assert with_updates.created_by is SourceRole.PROCESSOR
    assert undated.created_at == clock.now
    assert undated.created_by is None


def test_timeline_estimates_use_current_clock_without_new_version(
    engine: ReconciliationEngine, clock: FakeClock
) -> None:
    engine.ingest(processor_record(fields={"dryingMethod": "shade"}))
    before = engine.get_timeline("HERB_QR001")[1]

    later = clock.advance(hours=2)
    after = engine.get_timeline("HERB_QR001")[1]

    assert before.state is StepState.IN_PROGRESS
    assert after.timestamp == later
    assert before.timestamp != after.timestamp
    assert engine.get_version("HERB_QR001") == 1


# -------------------------------------------------------------------- batch ingest


class _FailingStore(InMemoryBatchStateStore):
    def add_record(self, identity: str, record: BatchRecord, *, seen_at: datetime) -> bool:
        if record.source_role is SourceRole.REGULATOR:
            raise RuntimeError("disk full")
        return super().add_record(identity, record, seen_at=seen_at)


def test_ingest_many_isolates_failures(clock: FakeClock) -> None:
    engine = ReconciliationEngine(store=_FailingStore(), clock=clock)

    summary = engine.ingest_many(
        [
            farmer_record(),
            regulator_record(),
            make_record(qr_code=None),
            processor_record(),
            processor_record(),
        ]
    )

    assert summary.received == 5
    assert summary.accepted == 2
    assert summary.failed == 1
    assert summary.dropped == 1
    assert summary.duplicates == 1
    assert len(summary.changed_identities) == 1
    assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.PROCESSING


def test_parallel_ingest_of_distinct_batches(clock: FakeClock) -> None:
    engine = _fresh_engine(clock)
    workers = 4
    per_worker = 20

    def feed(worker: int) -> None:
        for index in range(per_worker):
            qr = f"Q{worker}{index:03d}"
            engine.ingest(farmer_record(qr_code=qr, collection_id=None))
            engine.ingest(processor_record(qr_code=qr, record_id=None))

    threads = [threading.Thread(target=feed, args=(worker,)) for worker in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(engine.identities()) == workers * per_worker
    assert all(engine.get_version(key) == 2 for key in engine.identities())
    assert {engine.get_canonical_batch(key).status for key in engine.identities()} == {
        BatchStatus.PROCESSING
    }



def test_parallel_ingest_into_one_batch_publishes_contiguous_versions(
    clock: FakeClock,
) -> None:
    engine = _fresh_engine(clock)
    subscription = engine.subscribe()
    workers = 4
    per_worker = 10

    def feed(worker: int) -> None:
        for index in range(per_worker):
            reading = worker * per_worker + index
            engine.ingest(
                make_record(
                    SourceRole.PROCESSOR,
                    status=BatchStatus.PROCESSING,
                    fields={"reading": reading},
                    last_updated=at(reading),
                )
            )

    threads = [threading.Thread(target=feed, args=(worker,)) for worker in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    subscription.close()
    events = list(subscription)

    assert events
    assert {event.identity for event in events} == {"batch-1"}
    assert [event.version for event in events] == list(range(1, len(events) + 1))
    assert engine.get_version("HERB_QR001") == events[-1].version
    batch = engine.get_canonical_batch("HERB_QR001")
    assert batch.last_updated == at(workers * per_worker - 1)
    assert batch.value_of("reading") == workers * per_worker - 1


# ------------------------------------------------------------------------ resync


def test_resync_ingests_new_records_from_every_source(engine: ReconciliationEngine) -> None:
    farmer = InMemoryRecordSource(SourceRole.ORIGINATOR, [farmer_record()])
    processor = InMemoryRecordSource(SourceRole.PROCESSOR, [processor_record()])
    engine.add_source(farmer)
    engine.add_source(processor)

    first = engine.resync_report()
    assert (first.ingested, len(first.changed_identities)) == (2, 1)
    assert engine.resync() == 0

    processor.add(processor_record(status=BatchStatus.PROCESSED, last_updated=at(5)))
    report = engine.resync_report()

    assert report.ingested == 1
    assert report.duplicates == 2
    assert report.changed_identities == {engine.resolve_identity("HERB_QR001")}
    assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.PROCESSED
    assert len(farmer.calls) == 3


def test_resync_skips_unavailable_source(engine: ReconciliationEngine) -> None:
    farmer = InMemoryRecordSource(SourceRole.ORIGINATOR, [farmer_record()])
    regulator = InMemoryRecordSource(SourceRole.REGULATOR, [regulator_record()])
    regulator.set_available(False)
    engine.add_source(farmer)
    engine.add_source(regulator)

    report = engine.resync_report()

    assert report.ingested == 1
    assert report.unavailable_sources == ("memory:regulator",)
    assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.PENDING

    regulator.set_available(True)
    assert engine.resync() == 1
    assert engine.get_canonical_batch("HERB_QR001").status is BatchStatus.APPROVED


def test_resync_cancelled_before_start_ingests_nothing(engine: ReconciliationEngine) -> None:
    engine.add_source(InMemoryRecordSource(SourceRole.ORIGINATOR, [farmer_record()]))
    cancel = threading.Event()
    cancel.set()

    report = engine.resync_report(cancel=cancel)

    assert report.cancelled is True
    assert report.ingested == 0
    assert engine.identities() == ()


def test_add_source_rejects_duplicate_names(engine: ReconciliationEngine) -> None:
    engine.add_source(InMemoryRecordSource(SourceRole.ORIGINATOR))

    with pytest.raises(ValueError, match="already registered"):
        engine.add_source(InMemoryRecordSource(SourceRole.ORIGINATOR))


def test_resync_counts_changed_identities_not_records(engine: ReconciliationEngine) -> None:
    engine.add_source(
        InMemoryRecordSource(
            SourceRole.ORIGINATOR,
            [farmer_record(), make_record(qr_code="HERB_QR900", collection_id="COL-9000")],
        )
    )
    engine.add_source(InMemoryRecordSource(SourceRole.PROCESSOR, [processor_record()]))

    assert engine.resync() == 2
    assert len(engine.identities()) == 2
