"""Single-status arbitration across the records of one identity."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from traceherb.domain.model import TERMINAL_PRECEDENCE, BatchStatus, StatusConflict

from .contracts import StatusDecision

if TYPE_CHECKING:
    from collections.abc import Iterable

    from traceherb.domain.model import BatchRecord

log = logging.getLogger(__name__)


def arbitrate_status(records: Iterable[BatchRecord]) -> StatusDecision:
    """Pick the one status of a batch.

    The highest-ranked status wins, so a terminal status never regresses as
    more records arrive. Different terminal statuses are settled by
    ``TERMINAL_PRECEDENCE`` and reported as a conflict. Once terminal, every
    record reporting another status is overruled for decision fields.
    """

    pool = tuple(records)
    if not pool:
        raise ValueError("Cannot arbitrate the status of an empty record set")

    top_rank = max(record.status.rank for record in pool)
    contenders = {record.status for record in pool if record.status.rank == top_rank}
    status = _by_precedence(contenders)
    if not status.is_terminal:
        return StatusDecision(status=status)

    conflict: StatusConflict | None = None
    if len(contenders) > 1:
        overruled_pairs = sorted(
            {
                (record.status, record.source_role)
                for record in pool
                if record.status in contenders and record.status is not status
            },
            key=lambda pair: (TERMINAL_PRECEDENCE.index(pair[0]), pair[1].pipeline_order),
        )
        conflict = StatusConflict(chosen=status, overruled=tuple(overruled_pairs))
        log.debug(
            "Conflicting terminal statuses %s; keeping %s",
            ", ".join(sorted(contenders)),
            status,
        )
    overruled = frozenset(record.fingerprint for record in pool if record.status is not status)
    return StatusDecision(status=status, conflict=conflict, overruled=overruled)


def _by_precedence(statuses: set[BatchStatus]) -> BatchStatus:
    if len(statuses) == 1:
        return next(iter(statuses))
    for candidate in TERMINAL_PRECEDENCE:
        if candidate in statuses:
            return candidate
    # Only terminal statuses share a rank.
    raise AssertionError(f"Non-terminal statuses share a rank: {statuses}")
