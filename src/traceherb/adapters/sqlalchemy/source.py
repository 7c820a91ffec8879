"""Record source reading one role's records from the SQL record store."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from traceherb.adapters.sqlalchemy.unit_of_work import SqlAlchemyRecordUnitOfWork, StartupError
from traceherb.domain.errors import SourceUnavailableError
from traceherb.domain.ports.sources import SourceFetchResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from traceherb.domain.model import SourceRole
    from traceherb.domain.ports.sources import SourceCursor
    from traceherb.domain.ports.unit_of_work import RecordUnitOfWork

log = getLogger(__name__)


@dataclass(slots=True)
class SqlAlchemyRecordSource:
    role: SourceRole
    unit_of_work_factory: Callable[[], RecordUnitOfWork] = field(
        default=SqlAlchemyRecordUnitOfWork
    )

    @property
    def name(self) -> str:
        return f"sql:{self.role}"

    def __call__(self, *, since: SourceCursor | None = None) -> SourceFetchResult:
        after = since if isinstance(since, int) else None
        try:
            with self.unit_of_work_factory() as uow:
                stored = uow.repositories.records.list_for_role(self.role, after=after)
        except (SQLAlchemyError, StartupError) as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc
        log.debug("Read %d record(s) for %s", len(stored), self.name)
        return SourceFetchResult(
            records=tuple(item.record for item in stored),
            cursor=max((item.sequence for item in stored), default=after),
        )
