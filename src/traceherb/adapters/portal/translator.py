"""Translate portal payloads into batch records."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Final

from pydantic import ValidationError

from traceherb.domain.errors import MalformedRecordError
from traceherb.domain.model import BatchRecord, BatchStatus, SourceRole, StatusChange

from .schema import PortalBatchPayload

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    from .schema import PortalStatusChange

log = getLogger(__name__)

# Collection names the portals use in their local stores and exports.
PORTAL_COLLECTIONS: Final[dict[str, SourceRole]] = {
    "farmerBatches": SourceRole.ORIGINATOR,
    "processorBatches": SourceRole.PROCESSOR,
    "labBatches": SourceRole.LABORATORY,
    "regulatoryBatches": SourceRole.REGULATOR,
}


def parse_status(raw: str | None) -> BatchStatus:
    if raw is None:
        return BatchStatus.PENDING
    try:
        return BatchStatus(raw.strip().lower())
    except ValueError:
        log.warning("Unknown batch status %r, treating it as pending", raw)
        return BatchStatus.PENDING


def parse_batch_record(payload: object, *, role: SourceRole) -> BatchRecord:
    """Build a ``BatchRecord`` from one portal batch object.

    Raises ``MalformedRecordError`` when the payload is not a batch object at
    all. A payload without identifiers still translates; reconciliation
    decides what to do with it.
    """

    if isinstance(payload, PortalBatchPayload):
        model = payload
    else:
        try:
            model = PortalBatchPayload.model_validate(payload)
        except ValidationError as exc:
            raise MalformedRecordError(f"Invalid {role} batch payload: {exc}") from exc

    return BatchRecord.build(
        role,
        qr_code=model.qr_code,
        collection_id=model.collection_id,
        record_id=model.record_id,
        status=parse_status(model.status),
        fields=model.extra_fields,
        field_timestamps=model.field_timestamps,
        last_updated=model.last_updated,
        status_history=_status_history(model.status_history),
    )


def _status_history(entries: Iterable[PortalStatusChange]) -> tuple[StatusChange, ...]:
    changes: list[StatusChange] = []
    for entry in entries:
        try:
            status = BatchStatus(entry.status.strip().lower())
        except ValueError:
            log.debug("Ignoring status history entry with unknown status %r", entry.status)
            continue
        changes.append(StatusChange(status, entry.timestamp, entry.note))
    return tuple(changes)


def parse_batch_records(
    payloads: Iterable[object], *, role: SourceRole
) -> Iterator[BatchRecord]:
    """Translate ``payloads``, skipping (and logging) the ones that are not batches."""

    for index, payload in enumerate(payloads):
        try:
            yield parse_batch_record(payload, role=role)
        except MalformedRecordError as exc:
            log.warning("Skipping %s payload #%d: %s", role, index, exc)


def records_from_export(
    export: object, *, role: SourceRole | None = None
) -> dict[SourceRole, list[BatchRecord]]:
    """Translate a portal export.

    Accepts a bare list of batches (``role`` required), an API envelope
    (``role`` required) or an object keyed by portal collection name.
    """

    if isinstance(export, list):
        return {_require_role(role): list(parse_batch_records(export, role=_require_role(role)))}
    if not isinstance(export, dict):
        raise MalformedRecordError("Portal export must be a JSON array or object")
    collections = {
        PORTAL_COLLECTIONS[key]: value
        for key, value in export.items()
        if key in PORTAL_COLLECTIONS and isinstance(value, list)
    }
    if collections:
        if role is not None:
            collections = {key: value for key, value in collections.items() if key is role}
        return {
            collection_role: list(parse_batch_records(items, role=collection_role))
            for collection_role, items in collections.items()
        }
    if "data" in export:
        return {_require_role(role): _records_from_envelope(export, role=_require_role(role))}
    raise MalformedRecordError("Portal export holds no known batch collection")


def _records_from_envelope(export: Mapping[str, object], *, role: SourceRole) -> list[BatchRecord]:
    data = export.get("data")
    items = data.get("batches") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise MalformedRecordError("Portal envelope carries no batch list")
    return list(parse_batch_records(items, role=role))


def _require_role(role: SourceRole | None) -> SourceRole:
    if role is None:
        raise MalformedRecordError("A role is required for exports without collection names")
    return role
