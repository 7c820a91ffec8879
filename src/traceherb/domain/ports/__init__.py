"""Domain port definitions for adapters."""

from __future__ import annotations

from .persistence import (
    BatchRecordRepository,
    BatchStateStore,
    PublishedState,
    Repository,
    StoredRecord,
)
from .sources import RecordSource, SourceCursor, SourceFetchResult, SourceUnavailableError
from .unit_of_work import RecordRepositories, RecordUnitOfWork, RepositoryCollection, UnitOfWork

__all__ = [
    "BatchRecordRepository",
    "BatchStateStore",
    "PublishedState",
    "RecordRepositories",
    "RecordSource",
    "RecordUnitOfWork",
    "Repository",
    "RepositoryCollection",
    "SourceCursor",
    "SourceFetchResult",
    "SourceUnavailableError",
    "StoredRecord",
    "UnitOfWork",
]
