"""Ports for reading participant record collections."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from traceherb.domain.errors import SourceUnavailableError

if TYPE_CHECKING:
    from datetime import datetime

    from traceherb.domain.model import BatchRecord, SourceRole

# Portals page by ``lastUpdated``; the record store pages by insertion sequence.
type SourceCursor = datetime | int


@dataclass(slots=True)
class SourceFetchResult:
    """Records read from one source plus the cursor for the next poll."""

    records: tuple[BatchRecord, ...] = field(default_factory=tuple)
    cursor: SourceCursor | None = None


@runtime_checkable
class RecordSource(Protocol):
    """Callable port for one participant's record collection.

    Implementations raise ``SourceUnavailableError`` when the collection
    cannot be read; callers treat that as "no new records this cycle".
    ``since`` is the cursor returned by the previous call, opaque to the
    caller; sources that cannot filter may ignore it and return everything.
    """

    @property
    def role(self) -> SourceRole: ...

    @property
    def name(self) -> str: ...

    def __call__(self, *, since: SourceCursor | None = None) -> SourceFetchResult: ...


__all__ = ["RecordSource", "SourceCursor", "SourceFetchResult", "SourceUnavailableError"]
