from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
import pytest

from traceherb.adapters.http_resilience import ResilientClient
from traceherb.adapters.portal import PortalRecordSource
from traceherb.config.http_resilience import (
    CacheConfig,
    RateLimit,
    ResilienceConfig,
    RetryPolicy,
)
from traceherb.config.portals import PortalConfig
from traceherb.domain.errors import SourceUnavailableError
from traceherb.domain.model import BatchStatus, SourceRole
from traceherb.domain.ports.sources import RecordSource

if TYPE_CHECKING:
    from pathlib import Path

    from aiolimiter import AsyncLimiter

BASE_URL = "https://processor.portal.test/api/"


def _make_client_factory(
    handler: Callable[[httpx.Request], httpx.Response],
) -> Callable[..., ResilientClient]:
    async def async_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    def factory(
        resilience: ResilienceConfig, *, limiter: AsyncLimiter | None = None
    ) -> ResilientClient:
        client = ResilientClient(resilience, limiter=limiter)
        client._client = httpx.AsyncClient(  # noqa: SLF001  # type: ignore[reportPrivateUsage]
            base_url=BASE_URL, transport=httpx.MockTransport(async_handler)
        )
        return client

    return factory


def _source(handler: Callable[[httpx.Request], httpx.Response]) -> PortalRecordSource:
    config = PortalConfig(
        role="processor",
        base_url=BASE_URL,
        resilience=ResilienceConfig(name="portal-processor", base_url=BASE_URL, cache=None),
    )
    return PortalRecordSource(config=config, client_factory=_make_client_factory(handler))


def test_portal_source_satisfies_port() -> None:
    source = _source(lambda _request: httpx.Response(200, json={"success": True, "data": []}))

    assert isinstance(source, RecordSource)
    assert source.role is SourceRole.PROCESSOR
    assert source.name == "portal:processor"


def test_fetch_translates_envelope_and_advances_cursor() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": [
                    {
                        "qrCode": "HERB_1",
                        "status": "processing",
                        "processingStarted": "2024-04-06T08:00:00Z",
                        "lastUpdated": "2024-04-06T08:00:00Z",
                    },
                    {"qrCode": "HERB_2", "status": "processed", "lastUpdated": 1712400000000},
                ],
            },
        )

    result = _source(handler)()

    assert requests[0].url.path == "/api/batches"
    assert "since" not in requests[0].url.params
    assert [record.status for record in result.records] == [
        BatchStatus.PROCESSING,
        BatchStatus.PROCESSED,
    ]
    assert all(record.source_role is SourceRole.PROCESSOR for record in result.records)
    assert result.records[0].fields["processingStarted"].value == "2024-04-06T08:00:00Z"
    assert result.cursor == datetime(2024, 4, 6, 10, 40, tzinfo=UTC)


def test_fetch_passes_cursor_and_keeps_it_when_nothing_changed() -> None:
    since = datetime(2024, 4, 6, 8, 0, tzinfo=UTC)
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params.get("since"))
        return httpx.Response(200, json={"success": True, "data": {"batches": []}})

    result = _source(handler)(since=since)

    assert seen == [since.isoformat()]
    assert result.records == ()
    assert result.cursor == since


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"success": False}),
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"success": False, "message": "Database locked"}),
        httpx.Response(200, json={"success": True, "data": "oops"}),
    ],
)
def test_unusable_responses_make_source_unavailable(response: httpx.Response) -> None:
    source = _source(lambda _request: response)

    with pytest.raises(SourceUnavailableError) as exc:
        source()

    assert exc.value.source == "portal:processor"


def test_transport_errors_make_source_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SourceUnavailableError, match="connection refused"):
        _source(handler)()


def test_bad_item_is_skipped_without_failing_the_poll(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": [
                    {"qrCode": {"nested": 1}, "status": "processing"},
                    {"qrCode": "HERB_2", "status": 7},
                    {"qrCode": "HERB_3", "status": "processed"},
                ],
            },
        )

    result = _source(handler)()

    assert [sorted(record.id_values) for record in result.records] == [["HERB_3"]]
    assert "Skipping processor payload #0" in caplog.text
    assert "Skipping processor payload #1" in caplog.text


def test_cached_envelope_is_reused_across_polls(tmp_path: Path) -> None:
    calls: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200, json={"success": True, "data": [{"qrCode": "HERB_1", "status": "processing"}]}
        )

    resilience = ResilienceConfig(
        name="portal-processor",
        base_url=BASE_URL,
        retry=RetryPolicy(total=0),
        cache=CacheConfig(
            backend="sqlite",
            sqlite_path=str(tmp_path / "http_cache.db"),
            default_ttl_seconds=60.0,
            should_cache=lambda payload: isinstance(payload, dict),
        ),
    )

    def factory(
        config: ResilienceConfig, *, limiter: AsyncLimiter | None = None
    ) -> ResilientClient:
        return ResilientClient(config, limiter=limiter, transport=httpx.MockTransport(handler))

    source = PortalRecordSource(
        config=PortalConfig(role="processor", base_url=BASE_URL, resilience=resilience),
        client_factory=factory,
    )

    first = source()
    second = source()

    assert len(calls) == 1
    assert first.records == second.records


def test_polls_share_one_rate_limiter() -> None:
    limiters: list[AsyncLimiter | None] = []
    inner = _make_client_factory(
        lambda _request: httpx.Response(200, json={"success": True, "data": []})
    )

    def factory(
        resilience: ResilienceConfig, *, limiter: AsyncLimiter | None = None
    ) -> ResilientClient:
        limiters.append(limiter)
        return inner(resilience, limiter=limiter)

    resilience = ResilienceConfig(
        name="portal-processor",
        base_url=BASE_URL,
        ratelimit=RateLimit(max_calls=4, per_seconds=1.0),
        cache=None,
    )
    source = PortalRecordSource(
        config=PortalConfig(role="processor", base_url=BASE_URL, resilience=resilience),
        client_factory=factory,
    )

    source()
    source()

    assert limiters[0] is not None
    assert limiters[0] is limiters[1]
