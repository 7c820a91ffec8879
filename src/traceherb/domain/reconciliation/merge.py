"""Per-attribute merge of the records linked to one identity.

Every attribute is decided on its own: the candidate carrying the most
recent timestamp wins, then the role most trusted for the attribute's
category, then a canonical "first seen" order. The result depends only on
the set of records, never on the order they arrived in.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from traceherb.domain.model import FieldCategory, MergedField, SourceRole
from traceherb.domain.timestamps import ensure_aware

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from traceherb.domain.model import BatchRecord, FieldValue


CATEGORY_OWNERS: Final[dict[FieldCategory, SourceRole]] = {
    FieldCategory.COLLECTION: SourceRole.ORIGINATOR,
    FieldCategory.PROCESSING: SourceRole.PROCESSOR,
    FieldCategory.TESTING: SourceRole.LABORATORY,
    FieldCategory.DECISION: SourceRole.REGULATOR,
}

_EXPLICIT_CATEGORIES: Final[dict[str, FieldCategory]] = {
    "createdAt": FieldCategory.COLLECTION,
    "quantity": FieldCategory.COLLECTION,
    "unit": FieldCategory.COLLECTION,
    "location": FieldCategory.COLLECTION,
    "latitude": FieldCategory.COLLECTION,
    "longitude": FieldCategory.COLLECTION,
    "species": FieldCategory.COLLECTION,
    "dryingMethod": FieldCategory.PROCESSING,
    "temperature": FieldCategory.PROCESSING,
    "duration": FieldCategory.PROCESSING,
    "yield": FieldCategory.PROCESSING,
    "moisture": FieldCategory.TESTING,
    "moistureContent": FieldCategory.TESTING,
    "pesticides": FieldCategory.TESTING,
    "heavyMetals": FieldCategory.TESTING,
    "purity": FieldCategory.TESTING,
    "qualityGrade": FieldCategory.TESTING,
    "approvalReason": FieldCategory.DECISION,
    "rejectionReason": FieldCategory.DECISION,
    "approvedDate": FieldCategory.DECISION,
    "rejectedDate": FieldCategory.DECISION,
    "completedDate": FieldCategory.DECISION,
    "reviewDate": FieldCategory.DECISION,
    "finalReviewDate": FieldCategory.DECISION,
    "certificateNumber": FieldCategory.DECISION,
    "complianceNotes": FieldCategory.DECISION,
}

# Checked in order; the first matching prefix decides.
_PREFIX_CATEGORIES: Final[tuple[tuple[str, FieldCategory], ...]] = (
    ("regulatory", FieldCategory.DECISION),
    ("approv", FieldCategory.DECISION),
    ("reject", FieldCategory.DECISION),
    ("processing", FieldCategory.PROCESSING),
    ("processor", FieldCategory.PROCESSING),
    ("lab", FieldCategory.TESTING),
    ("test", FieldCategory.TESTING),
    ("quality", FieldCategory.TESTING),
    ("collect", FieldCategory.COLLECTION),
    ("harvest", FieldCategory.COLLECTION),
    ("farmer", FieldCategory.COLLECTION),
    ("herb", FieldCategory.COLLECTION),
)


def field_category(attribute: str) -> FieldCategory:
    explicit = _EXPLICIT_CATEGORIES.get(attribute)
    if explicit is not None:
        return explicit
    lowered = attribute.lower()
    for prefix, category in _PREFIX_CATEGORIES:
        if lowered.startswith(prefix):
            return category
    return FieldCategory.GENERAL


def trust_rank(role: SourceRole, category: FieldCategory) -> int:
    """Higher is more trusted; the category owner outranks every other role."""

    owner = CATEGORY_OWNERS.get(category)
    if owner is role:
        return len(SourceRole)
    return role.pipeline_order


def merge_fields(
    records: Iterable[BatchRecord],
    *,
    overruled: frozenset[str] = frozenset(),
) -> dict[str, MergedField]:
    """Choose one value per attribute across ``records``.

    ``overruled`` holds fingerprints of records whose decision-category
    attributes must be ignored (their status lost terminal arbitration).
    ``None`` values count as absent.
    """

    candidates: dict[str, list[tuple[BatchRecord, FieldValue]]] = {}
    for record in records:
        for attribute, field_value in record.fields.items():
            if field_value.value is None:
                continue
            candidates.setdefault(attribute, []).append((record, field_value))

    merged: dict[str, MergedField] = {}
    for attribute in sorted(candidates):
        category = field_category(attribute)
        eligible = [
            (record, field_value)
            for record, field_value in candidates[attribute]
            if not (category is FieldCategory.DECISION and record.fingerprint in overruled)
        ]
        if not eligible:
            continue
        record, field_value = min(
            eligible, key=lambda item: _candidate_order(attribute, category, *item)
        )
        merged[attribute] = MergedField(
            value=field_value.value,
            provenance=record.source_role,
            updated_at=record.timestamp_for(attribute),
        )
    return merged


def _candidate_order(
    attribute: str,
    category: FieldCategory,
    record: BatchRecord,
    _field_value: FieldValue,
) -> tuple[int, float, int, int, str]:
    stamp = record.timestamp_for(attribute)
    return (
        0 if stamp is not None else 1,
        -_epoch(stamp),
        -trust_rank(record.source_role, category),
        record.source_role.pipeline_order,
        record.fingerprint,
    )


def _epoch(value: datetime | None) -> float:
    return 0.0 if value is None else ensure_aware(value).timestamp()


def merged_values(merged: Mapping[str, MergedField]) -> dict[str, object]:
    return {attribute: field.value for attribute, field in merged.items()}
