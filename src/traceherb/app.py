"""Application orchestration entry points."""

from __future__ import annotations

import json
from collections.abc import Callable
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING

from traceherb.adapters.memory import InMemoryBatchStateStore
from traceherb.adapters.portal import PortalRecordSource, records_from_export
from traceherb.adapters.sqlalchemy.source import SqlAlchemyRecordSource
from traceherb.adapters.sqlalchemy.unit_of_work import (
    SqlAlchemyRecordUnitOfWork,
    is_started,
    startup,
)
from traceherb.config import get_portal_configs, get_sync_config
from traceherb.domain.data_integration import store_records
from traceherb.domain.model import SourceRole
from traceherb.domain.notifications import ChangeNotifier
from traceherb.domain.reconciliation import ReconciliationEngine
from traceherb.domain.timestamps import utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from traceherb.config import PortalConfig, SyncConfig
    from traceherb.domain.data_integration import ResyncResult, StoreRecordsResult
    from traceherb.domain.ports.persistence import BatchStateStore
    from traceherb.domain.ports.sources import RecordSource
    from traceherb.domain.ports.unit_of_work import RecordUnitOfWork
    from traceherb.domain.timestamps import Clock

type UnitOfWorkFactory = Callable[[], RecordUnitOfWork]

log = getLogger(__name__)


def _ensure_started() -> None:
    if not is_started():
        startup()


def build_sources(
    *,
    roles: Iterable[SourceRole] = tuple(SourceRole),
    unit_of_work_factory: UnitOfWorkFactory | None = None,
    portal_configs: Sequence[PortalConfig] | None = None,
) -> list[RecordSource]:
    """SQL record store sources for ``roles`` plus every configured portal."""

    if unit_of_work_factory is None:
        _ensure_started()
    effective_uow = unit_of_work_factory or SqlAlchemyRecordUnitOfWork
    sources: list[RecordSource] = [
        SqlAlchemyRecordSource(role=role, unit_of_work_factory=effective_uow) for role in roles
    ]
    configs = get_portal_configs() if portal_configs is None else portal_configs
    sources.extend(PortalRecordSource(config=config) for config in configs)
    log.info(
        "Configured %d record source(s): %s",
        len(sources),
        ", ".join(source.name for source in sources),
    )
    return sources


def build_engine(
    *,
    sources: Iterable[RecordSource] | None = None,
    sync_config: SyncConfig | None = None,
    store: BatchStateStore | None = None,
    clock: Clock = utcnow,
) -> ReconciliationEngine:
    """Reconciliation engine wired to the configured sources."""

    config = sync_config or get_sync_config()
    return ReconciliationEngine(
        store=store or InMemoryBatchStateStore(),
        sources=build_sources() if sources is None else sources,
        notifier=ChangeNotifier(default_maxsize=config.subscriber_buffer),
        clock=clock,
        resync_timeout=config.resync_timeout_seconds,
        min_fuzzy_length=config.fuzzy_min_length,
    )


def import_portal_export(
    path: Path | str,
    *,
    role: SourceRole | None = None,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
) -> StoreRecordsResult:
    """Store the batches of a portal export file in the SQL record store."""

    if unit_of_work_factory is None:
        _ensure_started()
    export = json.loads(Path(path).read_text(encoding="utf-8"))
    by_role = records_from_export(export, role=role)
    records = [record for role_records in by_role.values() for record in role_records]
    log.info(
        "Importing %d record(s) from %s (%s)",
        len(records),
        path,
        ", ".join(f"{key}={len(value)}" for key, value in sorted(by_role.items())),
    )
    return store_records(
        records, unit_of_work_factory=unit_of_work_factory or SqlAlchemyRecordUnitOfWork
    )


def resync_once(engine: ReconciliationEngine | None = None) -> ResyncResult:
    """Run one resync cycle, building an engine from configuration if needed."""

    effective_engine = engine or build_engine()
    result = effective_engine.resync_report()
    log.info(
        f"Finished resync: fetched={result.fetched}, ingested={result.ingested}, "
        f"changed={len(result.changed_identities)}, unavailable={list(result.unavailable_sources)}"
    )
    return result
