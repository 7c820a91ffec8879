"""HTTP record source polling a participant portal."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from logging import getLogger
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from traceherb.adapters.http_resilience import ResilientClient, build_limiter
from traceherb.domain.errors import SourceUnavailableError
from traceherb.domain.model import SourceRole
from traceherb.domain.ports.sources import SourceFetchResult

from .schema import PortalEnvelope
from .translator import parse_batch_records

if TYPE_CHECKING:
    from collections.abc import Callable

    from aiolimiter import AsyncLimiter

    from traceherb.config.http_resilience import ResilienceConfig
    from traceherb.config.portals import PortalConfig
    from traceherb.domain.ports.sources import SourceCursor

log = getLogger(__name__)


def _default_client_factory(
    config: ResilienceConfig, *, limiter: AsyncLimiter | None = None
) -> ResilientClient:
    return ResilientClient(config, limiter=limiter)


@dataclass(slots=True)
class PortalRecordSource:
    """Reads ``GET {base_url}/batches?since=...`` from one portal.

    Every poll opens a fresh client inside its own event loop; the rate
    limiter lives on the source and responses are cached on disk, so both
    carry over from one poll to the next.
    """

    config: PortalConfig
    client_factory: Callable[..., ResilientClient] = field(default=_default_client_factory)
    _limiter: AsyncLimiter | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self._limiter = build_limiter(self.config.resilience)

    @property
    def role(self) -> SourceRole:
        return SourceRole(self.config.role)

    @property
    def name(self) -> str:
        return f"portal:{self.config.role}"

    def __call__(self, *, since: SourceCursor | None = None) -> SourceFetchResult:
        return asyncio.run(self._fetch_async(since=since))

    async def _fetch_async(self, *, since: SourceCursor | None) -> SourceFetchResult:
        params = {"since": since.isoformat()} if isinstance(since, datetime) else None
        try:
            async with self.client_factory(
                self.config.resilience, limiter=self._limiter
            ) as client:
                response = await client.get(self.config.batches_path, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc
        except ValueError as exc:
            raise SourceUnavailableError(self.name, "response is not JSON") from exc

        try:
            envelope = PortalEnvelope.model_validate(payload)
        except ValidationError as exc:
            raise SourceUnavailableError(self.name, "unexpected response payload") from exc
        if not envelope.success:
            log.error(f"Portal {self.name} reported failure: {envelope.message}")
            raise SourceUnavailableError(self.name, envelope.message)

        records = tuple(parse_batch_records(envelope.data, role=self.role))
        stamps = [record.last_updated for record in records if record.last_updated is not None]
        cursor = max(stamps, default=since)
        log.debug("Fetched %d record(s) from %s", len(records), self.name)
        return SourceFetchResult(records=records, cursor=cursor)
