"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from sqlalchemy import func, insert, select

from traceherb.adapters.sqlalchemy.mappings import (
    batch_record_external_id_table,
    batch_record_table,
)
from traceherb.domain.model import BatchRecord, ExternalId
from traceherb.domain.ports.persistence import StoredRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import Row
    from sqlalchemy.orm import Session

    from traceherb.domain.model import SourceRole


class SqlAlchemyBatchRecordRepository:
    """Raw per-source records keyed by content fingerprint."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: BatchRecord) -> None:
        if self.exists(entity.fingerprint):
            return
        result = self.session.execute(
            insert(batch_record_table).values(
                fingerprint=entity.fingerprint,
                source_role=entity.source_role,
                status=entity.status,
                fields=dict(entity.fields),
                last_updated=entity.last_updated,
                status_history=entity.status_history,
            )
        )
        (record_pk,) = result.inserted_primary_key or (None,)
        if entity.external_ids:
            self.session.execute(
                insert(batch_record_external_id_table),
                [
                    {"record_id": record_pk, "namespace": eid.namespace, "value": eid.value}
                    for eid in sorted(entity.external_ids)
                ],
            )

    def exists(self, fingerprint: str) -> bool:
        stmt = select(batch_record_table.c.id).where(
            batch_record_table.c.fingerprint == fingerprint
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def list_for_role(
        self, role: SourceRole, *, after: int | None = None
    ) -> list[StoredRecord]:
        """Records of ``role`` in insertion order; ``after`` skips sequences up to it.

        The sequence is the row id, so a record stored late with an old
        ``lastUpdated`` still sorts after everything read before it.
        """

        stmt = select(batch_record_table).where(batch_record_table.c.source_role == role)
        if after is not None:
            stmt = stmt.where(batch_record_table.c.id > after)
        stmt = stmt.order_by(batch_record_table.c.id)
        rows = self.session.execute(stmt).all()
        return [
            StoredRecord(sequence=row.id, record=record)
            for row, record in zip(rows, self._hydrate(rows), strict=True)
        ]

    def count(self) -> int:
        return self.session.execute(select(func.count(batch_record_table.c.id))).scalar_one()

    def _hydrate(self, rows: Sequence[Row[tuple[object, ...]]]) -> list[BatchRecord]:
        if not rows:
            return []
        ids_by_record: defaultdict[int, list[ExternalId]] = defaultdict(list)
        stmt = select(batch_record_external_id_table).where(
            batch_record_external_id_table.c.record_id.in_([row.id for row in rows])
        )
        for id_row in self.session.execute(stmt):
            ids_by_record[id_row.record_id].append(ExternalId(id_row.namespace, id_row.value))
        return [
            BatchRecord(
                source_role=row.source_role,
                external_ids=frozenset(ids_by_record.get(row.id, ())),
                status=row.status,
                fields=row.fields,
                last_updated=row.last_updated,
                status_history=row.status_history or (),
            )
            for row in rows
        ]
