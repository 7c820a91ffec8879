"""SQLAlchemy adapter package for the raw record store."""

from __future__ import annotations

from .mappings import (
    batch_record_external_id_table,
    batch_record_table,
    create_all_tables,
    metadata,
)
from .repositories import SqlAlchemyBatchRecordRepository

__all__ = [
    "SqlAlchemyBatchRecordRepository",
    "batch_record_external_id_table",
    "batch_record_table",
    "create_all_tables",
    "metadata",
]
