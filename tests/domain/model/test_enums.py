from __future__ import annotations

import pytest

from traceherb.domain.model import BatchStatus


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (BatchStatus.PENDING, 10),
        (BatchStatus.PROCESSING, 25),
        (BatchStatus.PROCESSED, 50),
        (BatchStatus.TESTING, 75),
        (BatchStatus.TESTED, 85),
        (BatchStatus.APPROVED, 100),
        (BatchStatus.REJECTED, 0),
        (BatchStatus.COMPLETED, 100),
    ],
)
def test_progress(status: BatchStatus, expected: int) -> None:
    assert status.progress == expected


def test_next_status_follows_the_happy_path() -> None:
    path = [BatchStatus.PENDING]
    while (following := path[-1].next_status) is not None:
        path.append(following)

    assert path == [
        BatchStatus.PENDING,
        BatchStatus.PROCESSING,
        BatchStatus.PROCESSED,
        BatchStatus.TESTING,
        BatchStatus.TESTED,
        BatchStatus.APPROVED,
        BatchStatus.COMPLETED,
    ]
    assert BatchStatus.REJECTED.next_status is None


def test_terminal_statuses() -> None:
    assert {status for status in BatchStatus if status.is_terminal} == {
        BatchStatus.APPROVED,
        BatchStatus.REJECTED,
        BatchStatus.COMPLETED,
    }
