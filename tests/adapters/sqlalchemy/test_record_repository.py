from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import inspect

from traceherb.adapters.sqlalchemy import SqlAlchemyBatchRecordRepository
from traceherb.domain.model import (
    BatchStatus,
    ExternalId,
    ExternalNamespace,
    SourceRole,
    StatusChange,
)
from traceherb.domain.ports.persistence import BatchRecordRepository
from tests.helpers.records import T0, at, farmer_record, make_record, processor_record

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session


def test_migrations_create_record_tables(sqlite_engine: Engine) -> None:
    tables = set(inspect(sqlite_engine).get_table_names())

    assert {"batch_record", "batch_record_external_id", "alembic_version"} <= tables
    columns = {column["name"] for column in inspect(sqlite_engine).get_columns("batch_record")}
    assert "status_history" in columns
    indexes = {index["name"] for index in inspect(sqlite_engine).get_indexes("batch_record")}
    assert "ix_batch_record_role_id" in indexes


def test_repository_satisfies_port(sqlite_session: Session) -> None:
    assert isinstance(SqlAlchemyBatchRecordRepository(sqlite_session), BatchRecordRepository)


def test_add_round_trips_record(sqlite_session: Session) -> None:
    repository = SqlAlchemyBatchRecordRepository(sqlite_session)
    record = farmer_record(
        field_timestamps={"quantity": at(1)},
        status_history=[
            StatusChange(BatchStatus.PENDING, T0, "Batch created and submitted"),
            StatusChange(BatchStatus.PROCESSING, None),
        ],
    )

    repository.add(record)
    sqlite_session.commit()

    (item,) = repository.list_for_role(SourceRole.ORIGINATOR)
    stored = item.record
    assert stored == record
    assert stored.fingerprint == record.fingerprint
    assert stored.external_ids == {
        ExternalId(ExternalNamespace.QR_CODE, "HERB_QR001"),
        ExternalId(ExternalNamespace.COLLECTION_ID, "COL-1001"),
    }
    assert stored.fields["quantity"].updated_at == at(1)
    assert stored.last_updated == T0
    assert stored.status is BatchStatus.PENDING
    assert stored.status_history == record.status_history


def test_add_is_idempotent_by_fingerprint(sqlite_session: Session) -> None:
    repository = SqlAlchemyBatchRecordRepository(sqlite_session)
    record = processor_record()

    repository.add(record)
    repository.add(record)
    sqlite_session.commit()

    assert repository.exists(record.fingerprint)
    assert repository.count() == 1


def test_list_for_role_filters_by_role_in_insertion_order(sqlite_session: Session) -> None:
    repository = SqlAlchemyBatchRecordRepository(sqlite_session)
    new = processor_record(status=BatchStatus.PROCESSED, last_updated=at(5))
    old = processor_record(last_updated=at(1))
    undated = processor_record(qr_code="HERB_QR002", last_updated=None)
    for record in (new, old, farmer_record(), undated):
        repository.add(record)
    sqlite_session.commit()

    listed = repository.list_for_role(SourceRole.PROCESSOR)

    assert [item.record for item in listed] == [new, old, undated]
    assert [item.sequence for item in listed] == sorted(item.sequence for item in listed)
    assert repository.list_for_role(SourceRole.LABORATORY) == []


def test_list_for_role_after_sequence_ignores_last_updated(sqlite_session: Session) -> None:
    repository = SqlAlchemyBatchRecordRepository(sqlite_session)
    repository.add(processor_record(last_updated=at(6)))
    sqlite_session.commit()
    (seen,) = repository.list_for_role(SourceRole.PROCESSOR)

    late = processor_record(qr_code="HERB_QR002", last_updated=at(1))
    repository.add(late)
    repository.add(make_record(SourceRole.LABORATORY, last_updated=None))
    sqlite_session.commit()

    (item,) = repository.list_for_role(SourceRole.PROCESSOR, after=seen.sequence)
    assert item.record == late
    assert item.sequence > seen.sequence
    assert repository.list_for_role(SourceRole.PROCESSOR, after=item.sequence) == []
