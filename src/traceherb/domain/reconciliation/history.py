"""Merged status trail of the records linked to one identity.

Every record contributes the entries of its own ``statusHistory`` plus its
current status at its ``last_updated`` time. Entries reported by several
participants collapse into one, credited to the most upstream role. The
trail is ordered by time, undated entries last, so the result depends only
on the set of records.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

from traceherb.domain.model import StatusHistoryEntry
from traceherb.domain.timestamps import ensure_aware

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from traceherb.domain.model import BatchRecord, BatchStatus

_UNDATED: Final[datetime] = datetime.max.replace(tzinfo=UTC)


def merge_status_history(records: Iterable[BatchRecord]) -> tuple[StatusHistoryEntry, ...]:
    merged: dict[tuple[BatchStatus, datetime | None], StatusHistoryEntry] = {}
    for entry in sorted(_entries(records), key=_credit_key):
        key = (entry.status, entry.timestamp)
        kept = merged.get(key)
        if kept is None:
            merged[key] = entry
        elif kept.note is None and entry.note is not None:
            merged[key] = StatusHistoryEntry(kept.status, kept.timestamp, kept.source, entry.note)

    dated = {status for status, timestamp in merged if timestamp is not None}
    trail = [
        entry
        for (status, timestamp), entry in merged.items()
        if timestamp is not None or status not in dated
    ]
    return tuple(sorted(trail, key=_trail_key))


def _entries(records: Iterable[BatchRecord]) -> Iterator[StatusHistoryEntry]:
    for record in records:
        reported: set[BatchStatus] = set()
        for change in record.status_history:
            reported.add(change.status)
            yield StatusHistoryEntry(
                status=change.status,
                timestamp=_aware(change.timestamp),
                source=record.source_role,
                note=change.note,
            )
        if record.status not in reported:
            yield StatusHistoryEntry(
                status=record.status,
                timestamp=_aware(record.last_updated),
                source=record.source_role,
            )


def _aware(value: datetime | None) -> datetime | None:
    return None if value is None else ensure_aware(value)


def _credit_key(entry: StatusHistoryEntry) -> tuple[int, str]:
    return entry.source.pipeline_order, entry.note or ""


def _trail_key(entry: StatusHistoryEntry) -> tuple[datetime, int, int, str]:
    return (
        entry.timestamp or _UNDATED,
        entry.status.rank,
        entry.source.pipeline_order,
        entry.status.value,
    )
