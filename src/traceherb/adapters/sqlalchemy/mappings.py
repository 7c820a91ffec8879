"""SQLAlchemy table metadata for the raw record store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Dialect,
    Enum,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    UniqueConstraint,
)

from traceherb.domain.model import (
    BatchStatus,
    ExternalNamespace,
    FieldValue,
    SourceRole,
    StatusChange,
)
from traceherb.domain.timestamps import parse_iso_datetime

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.engine import Engine


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


class FieldValuesType(TypeDecorator[dict[str, FieldValue]]):
    """Record fields as JSON: ``{name: {"value": ..., "updated_at": iso | null}}``."""

    impl = JSON
    cache_ok = True

    def process_bind_param(
        self, value: Mapping[str, FieldValue] | None, dialect: Dialect
    ) -> dict[str, Any] | None:
        _ = dialect
        if value is None:
            return None
        return {
            name: {
                "value": _jsonable(field_value.value),
                "updated_at": None
                if field_value.updated_at is None
                else field_value.updated_at.astimezone(UTC).isoformat(),
            }
            for name, field_value in value.items()
        }

    def process_result_value(
        self, value: dict[str, Any] | None, dialect: Dialect
    ) -> dict[str, FieldValue]:
        _ = dialect
        if not value:
            return {}
        fields: dict[str, FieldValue] = {}
        for name, raw in value.items():
            entry = cast(dict[str, Any], raw) if isinstance(raw, dict) else {"value": raw}
            stamp = entry.get("updated_at")
            fields[name] = FieldValue(
                entry.get("value"),
                parse_iso_datetime(stamp) if isinstance(stamp, str) else None,
            )
        return fields


class StatusHistoryType(TypeDecorator[tuple[StatusChange, ...]]):
    """Status trail as JSON: ``[{"status": ..., "timestamp": iso | null, "note": ...}]``."""

    impl = JSON
    cache_ok = True

    def process_bind_param(
        self, value: tuple[StatusChange, ...] | None, dialect: Dialect
    ) -> list[dict[str, Any]] | None:
        _ = dialect
        if value is None:
            return None
        return [
            {
                "status": change.status.value,
                "timestamp": None
                if change.timestamp is None
                else change.timestamp.astimezone(UTC).isoformat(),
                "note": change.note,
            }
            for change in value
        ]

    def process_result_value(
        self, value: list[dict[str, Any]] | None, dialect: Dialect
    ) -> tuple[StatusChange, ...]:
        _ = dialect
        if not value:
            return ()
        return tuple(
            StatusChange(
                BatchStatus(entry["status"]),
                parse_iso_datetime(entry["timestamp"]) if entry.get("timestamp") else None,
                entry.get("note"),
            )
            for entry in value
        )


def _jsonable(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in cast(dict[Any, Any], value).items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in cast(list[Any], value)]
    return value


def _enum_values(enum_cls: type[Any]) -> list[str]:
    return [member.value for member in enum_cls]


metadata = MetaData(
    naming_convention={
        "ix": "ix_%(table_name)s_%(column_0_name)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)

batch_record_table = Table(
    "batch_record",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("fingerprint", String(64), nullable=False, unique=True),
    Column(
        "source_role",
        Enum(SourceRole, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    ),
    Column(
        "status",
        Enum(BatchStatus, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    ),
    Column("fields", FieldValuesType, nullable=False),
    Column("last_updated", UTCDateTime, nullable=True),
    Column("status_history", StatusHistoryType, nullable=True),
    Column("stored_at", UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)),
    Index("ix_batch_record_role_id", "source_role", "id"),
)

batch_record_external_id_table = Table(
    "batch_record_external_id",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "record_id",
        Integer,
        ForeignKey("batch_record.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "namespace",
        Enum(ExternalNamespace, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    ),
    Column("value", String, nullable=False, index=True),
    UniqueConstraint("record_id", "namespace", name="uq_batch_record_external_id_namespace"),
)


def create_all_tables(engine: Engine) -> None:
    """Create every table directly; migrations are the normal path."""

    metadata.create_all(engine)
