"""Per-source batch records as written by one participant."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from traceherb.domain.model.enums import BatchStatus, ExternalNamespace, SourceRole

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclass(frozen=True, slots=True, order=True)
class ExternalId:
    namespace: ExternalNamespace
    value: str


@dataclass(frozen=True, slots=True)
class FieldValue:
    """One attribute value plus the optional time it was written."""

    value: object
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class StatusChange:
    """One entry of the status trail a portal keeps next to a batch."""

    status: BatchStatus
    timestamp: datetime | None = None
    note: str | None = None


def _canonical(value: object) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, FieldValue):
        return {"value": _canonical(value.value), "updated_at": _canonical(value.updated_at)}
    if isinstance(value, StatusChange):
        return [value.status.value, _canonical(value.timestamp), value.note]
    if isinstance(value, dict):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(item) for item in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    return value


@dataclass(frozen=True, slots=True, eq=False)
class BatchRecord:
    """One participant's partial, independently written view of a batch.

    Records are value objects: two records with the same content share a
    ``fingerprint`` and are treated as the same observation.
    """

    source_role: SourceRole
    external_ids: frozenset[ExternalId]
    status: BatchStatus = BatchStatus.PENDING
    fields: Mapping[str, FieldValue] = field(default_factory=lambda: MappingProxyType({}))
    last_updated: datetime | None = None
    status_history: tuple[StatusChange, ...] = ()
    _fingerprint: str = field(init=False, repr=False, default="")

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "status_history", tuple(self.status_history))
        object.__setattr__(self, "_fingerprint", self._compute_fingerprint())

    @classmethod
    def build(
        cls,
        source_role: SourceRole,
        *,
        qr_code: str | None = None,
        collection_id: str | None = None,
        record_id: str | None = None,
        status: BatchStatus = BatchStatus.PENDING,
        fields: Mapping[str, object] | None = None,
        field_timestamps: Mapping[str, datetime] | None = None,
        last_updated: datetime | None = None,
        status_history: Iterable[StatusChange] = (),
    ) -> BatchRecord:
        """Convenience constructor taking plain field values."""

        ids = [
            ExternalId(namespace, value)
            for namespace, value in (
                (ExternalNamespace.QR_CODE, qr_code),
                (ExternalNamespace.COLLECTION_ID, collection_id),
                (ExternalNamespace.RECORD_ID, record_id),
            )
            if value
        ]
        stamps = field_timestamps or {}
        values = {
            name: value if isinstance(value, FieldValue) else FieldValue(value, stamps.get(name))
            for name, value in (fields or {}).items()
        }
        return cls(
            source_role=source_role,
            external_ids=frozenset(ids),
            status=status,
            fields=values,
            last_updated=last_updated,
            status_history=tuple(status_history),
        )

    @property
    def id_values(self) -> frozenset[str]:
        return frozenset(external_id.value for external_id in self.external_ids)

    def timestamp_for(self, attribute: str) -> datetime | None:
        """Per-attribute timestamp, falling back to the record's ``last_updated``."""

        field_value = self.fields.get(attribute)
        if field_value is not None and field_value.updated_at is not None:
            return field_value.updated_at
        return self.last_updated

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def _compute_fingerprint(self) -> str:
        payload = {
            "role": self.source_role.value,
            "ids": [[eid.namespace.value, eid.value] for eid in sorted(self.external_ids)],
            "status": self.status.value,
            "fields": {name: _canonical(value) for name, value in sorted(self.fields.items())},
            "last_updated": _canonical(self.last_updated),
            "history": _canonical(self.status_history),
        }
        encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BatchRecord):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self) -> int:
        return hash(self.fingerprint)


def with_external_ids(record: BatchRecord, ids: Iterable[ExternalId]) -> BatchRecord:
    return BatchRecord(
        source_role=record.source_role,
        external_ids=frozenset(ids),
        status=record.status,
        fields=record.fields,
        last_updated=record.last_updated,
        status_history=record.status_history,
    )
