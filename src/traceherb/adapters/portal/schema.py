"""Pydantic models describing participant portal payloads."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Final, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from traceherb.domain.timestamps import coerce_timestamp

# Keys the portals keep for their own bookkeeping; never reconciled.
BOOKKEEPING_KEYS: Final[frozenset[str]] = frozenset({"synced", "statusHistory"})


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _identifier(value: object) -> object:
    # Portals generate some ids with Date.now(), so numbers show up here.
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    return _blank_to_none(value)


class PortalBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PortalStatusChange(PortalBaseModel):
    """One ``statusHistory`` entry: ``{status, timestamp, note}``."""

    status: str
    timestamp: datetime | None = None
    note: str | None = None

    _normalize_note = field_validator("note", mode="before")(_blank_to_none)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: object) -> datetime | None:
        return coerce_timestamp(value)


class PortalBatchPayload(PortalBaseModel):
    """One batch object as stored by a participant portal.

    Only identifiers, status and timestamps are modelled; every other key is
    kept in ``model_extra`` and becomes a record field.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    qr_code: str | None = Field(default=None, alias="qrCode")
    collection_id: str | None = Field(default=None, alias="collectionId")
    record_id: str | None = Field(default=None, alias="id")
    status: str | None = None
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")
    field_timestamps: dict[str, datetime] = Field(default_factory=dict, alias="fieldTimestamps")
    synced: bool | None = None
    status_history: list[PortalStatusChange] = Field(
        default_factory=list, alias="statusHistory"
    )

    _normalize_ids = field_validator("qr_code", "collection_id", "record_id", mode="before")(
        _identifier
    )
    _normalize_status = field_validator("status", mode="before")(_blank_to_none)

    @field_validator("last_updated", mode="before")
    @classmethod
    def _parse_last_updated(cls, value: object) -> datetime | None:
        return coerce_timestamp(value)

    @field_validator("status_history", mode="before")
    @classmethod
    def _keep_status_entries(cls, value: object) -> list[object]:
        # Entries without a readable status are portal noise, not a broken batch.
        if not isinstance(value, list):
            return []
        return [
            entry
            for entry in cast(list[object], value)
            if isinstance(entry, Mapping)
            and isinstance(cast(Mapping[str, object], entry).get("status"), str)
        ]

    @field_validator("field_timestamps", mode="before")
    @classmethod
    def _parse_field_timestamps(cls, value: object) -> dict[str, datetime]:
        if not isinstance(value, Mapping):
            return {}
        parsed: dict[str, datetime] = {}
        for name, raw in cast(Mapping[str, object], value).items():
            stamp = coerce_timestamp(raw)
            if stamp is not None:
                parsed[str(name)] = stamp
        return parsed

    @property
    def extra_fields(self) -> dict[str, object]:
        extra = self.model_extra or {}
        return {name: value for name, value in extra.items() if name not in BOOKKEEPING_KEYS}


class PortalEnvelope(PortalBaseModel):
    """Response envelope of the portal API: ``{success, data, message}``."""

    success: bool = True
    # Items stay raw; each one is validated on its own so a bad item only drops itself.
    data: list[object] = Field(default_factory=list)
    message: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_batches(cls, value: object) -> object:
        if isinstance(value, Mapping):
            mapping_value = cast(Mapping[str, object], value)
            data = mapping_value.get("data")
            if isinstance(data, Mapping) and "batches" in data:
                unwrapped = dict(mapping_value)
                unwrapped["data"] = cast(Mapping[str, object], data)["batches"]
                return unwrapped
            if data is None and "data" in mapping_value:
                unwrapped = dict(mapping_value)
                unwrapped["data"] = []
                return unwrapped
        return value

