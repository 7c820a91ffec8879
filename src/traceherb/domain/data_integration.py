"""Application services feeding records into reconciliation.

``fetch_from_sources`` polls every record source concurrently for one sync
cycle; ``run_periodic_resync`` is the polling producer driving an engine;
``store_records`` persists fetched or imported records into a record store.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from traceherb.domain.errors import SourceUnavailableError

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Iterable, Mapping, Sequence
    from datetime import datetime

    from traceherb.domain.model import BatchRecord
    from traceherb.domain.ports.sources import RecordSource, SourceCursor, SourceFetchResult
    from traceherb.domain.ports.unit_of_work import RecordUnitOfWork
    from traceherb.domain.reconciliation.engine import ReconciliationEngine

log = logging.getLogger(__name__)

DEFAULT_RESYNC_TIMEOUT_SECONDS = 10.0
DEFAULT_RESYNC_INTERVAL_SECONDS = 3.0
_CANCEL_POLL_SECONDS = 0.1


@dataclass(slots=True)
class SourcePollResult:
    """Outcome of polling every source once."""

    fetched: dict[str, SourceFetchResult] = field(default_factory=dict)
    unavailable: list[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass(slots=True)
class ResyncResult:
    """Outcome of one resync cycle."""

    fetched: int = 0
    ingested: int = 0
    duplicates: int = 0
    dropped: int = 0
    failed: int = 0
    changed_identities: frozenset[str] = frozenset()
    unavailable_sources: tuple[str, ...] = ()
    cancelled: bool = False


@dataclass(slots=True)
class StoreRecordsResult:
    """Outcome of persisting records into a record store."""

    stored: int
    skipped: int
    latest_timestamp: datetime | None


def fetch_from_sources(
    sources: Sequence[RecordSource],
    *,
    cursors: Mapping[str, SourceCursor | None] | None = None,
    timeout: float = DEFAULT_RESYNC_TIMEOUT_SECONDS,
    cancel: threading.Event | None = None,
) -> SourcePollResult:
    """Poll ``sources`` concurrently, giving the whole cycle ``timeout`` seconds.

    A source that raises or misses the deadline is reported as unavailable
    and contributes nothing this cycle. Setting ``cancel`` abandons the
    cycle; results already collected are discarded.
    """

    result = SourcePollResult()
    if not sources:
        return result
    if cancel is not None and cancel.is_set():
        result.cancelled = True
        return result

    known = cursors or {}
    executor = ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="traceherb-resync")
    try:
        pending: dict[Future[SourceFetchResult], RecordSource] = {
            executor.submit(_poll_source, source, known.get(source.name)): source
            for source in sources
        }
        deadline = time.monotonic() + timeout
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                break
            done, _ = wait(
                pending, timeout=min(remaining, _CANCEL_POLL_SECONDS), return_when=FIRST_COMPLETED
            )
            for future in done:
                source = pending.pop(future)
                try:
                    result.fetched[source.name] = future.result()
                except SourceUnavailableError as exc:
                    log.warning("Skipping source %s this cycle: %s", source.name, exc)
                    result.unavailable.append(source.name)
                except Exception:
                    log.exception("Unexpected failure polling source %s", source.name)
                    result.unavailable.append(source.name)
        for future, source in pending.items():
            future.cancel()
            if not result.cancelled:
                log.warning("Source %s timed out after %.1fs", source.name, timeout)
                result.unavailable.append(source.name)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if result.cancelled:
        result.fetched.clear()
        log.info("Resync cycle cancelled")
    result.unavailable.sort()
    return result


def _poll_source(source: RecordSource, since: SourceCursor | None) -> SourceFetchResult:
    return source(since=since)


def run_periodic_resync(
    engine: ReconciliationEngine,
    *,
    interval: float = DEFAULT_RESYNC_INTERVAL_SECONDS,
    stop_event: threading.Event,
    on_cycle: Callable[[ResyncResult], None] | None = None,
) -> int:
    """Resync ``engine`` every ``interval`` seconds until ``stop_event`` is set.

    Returns the number of completed cycles. Errors inside one cycle are
    logged and do not stop the loop.
    """

    if interval <= 0:
        raise ValueError("interval must be positive")
    cycles = 0
    while not stop_event.is_set():
        try:
            result = engine.resync_report(cancel=stop_event)
        except Exception:
            log.exception("Resync cycle failed")
        else:
            if not result.cancelled:
                cycles += 1
                if on_cycle is not None:
                    on_cycle(result)
        stop_event.wait(interval)
    return cycles


def store_records(
    records: Iterable[BatchRecord],
    *,
    unit_of_work_factory: Callable[[], RecordUnitOfWork],
) -> StoreRecordsResult:
    """Persist ``records`` that the record store does not hold yet."""

    stored = 0
    skipped = 0
    latest: datetime | None = None
    seen: set[str] = set()
    with unit_of_work_factory() as uow:
        repository = uow.repositories.records
        for record in records:
            if record.fingerprint in seen or repository.exists(record.fingerprint):
                skipped += 1
                continue
            repository.add(record)
            seen.add(record.fingerprint)
            stored += 1
            if record.last_updated is not None:
                latest = max(latest or record.last_updated, record.last_updated)
        uow.commit()
    log.info("Stored %d record(s), skipped %d already known", stored, skipped)
    return StoreRecordsResult(stored=stored, skipped=skipped, latest_timestamp=latest)
