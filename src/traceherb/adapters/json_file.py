"""Record source reading a portal export file."""

from __future__ import annotations

import json
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING

from traceherb.adapters.portal.translator import records_from_export
from traceherb.domain.errors import MalformedRecordError, SourceUnavailableError
from traceherb.domain.ports.sources import SourceFetchResult

if TYPE_CHECKING:
    from traceherb.domain.model import SourceRole
    from traceherb.domain.ports.sources import SourceCursor

log = getLogger(__name__)


@dataclass(slots=True)
class JsonFileRecordSource:
    """One role's batches from a JSON export (``farmerBatches`` and friends).

    The file is re-read on every call; the portals rewrite it wholesale, so
    ``since`` is ignored and reconciliation discards what it already holds.
    """

    path: Path
    role: SourceRole

    @property
    def name(self) -> str:
        return f"file:{self.role}:{self.path.name}"

    def __call__(self, *, since: SourceCursor | None = None) -> SourceFetchResult:
        try:
            export = json.loads(Path(self.path).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc
        try:
            records = tuple(records_from_export(export, role=self.role).get(self.role, ()))
        except MalformedRecordError as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc
        stamps = [record.last_updated for record in records if record.last_updated is not None]
        log.debug("Read %d record(s) from %s", len(records), self.path)
        return SourceFetchResult(records=records, cursor=max(stamps, default=since))
