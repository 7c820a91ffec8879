"""Error taxonomy raised by reconciliation, record sources and queries."""

from __future__ import annotations


class BatchNotFoundError(LookupError):
    """No canonical batch is known for the requested identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"No batch known for identifier {identifier!r}")
        self.identifier = identifier


class MalformedRecordError(ValueError):
    """A record cannot be reconciled (for example it carries no usable identifier)."""


class SourceUnavailableError(RuntimeError):
    """A record source could not be read during this sync cycle."""

    def __init__(self, source: str, message: str | None = None) -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"Record source {source!r} unavailable{detail}")
        self.source = source
