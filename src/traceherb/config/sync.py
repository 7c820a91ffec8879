"""Reconciliation and resync defaults."""

from __future__ import annotations

from dataclasses import dataclass

from traceherb.domain.data_integration import (
    DEFAULT_RESYNC_INTERVAL_SECONDS,
    DEFAULT_RESYNC_TIMEOUT_SECONDS,
)
from traceherb.domain.reconciliation.identity import DEFAULT_MIN_FUZZY_LENGTH

from .env import float_env_var, int_env_var

DEFAULT_SUBSCRIBER_BUFFER = 0


@dataclass(frozen=True, slots=True)
class SyncConfig:
    resync_interval_seconds: float = DEFAULT_RESYNC_INTERVAL_SECONDS
    resync_timeout_seconds: float = DEFAULT_RESYNC_TIMEOUT_SECONDS
    # 0 means unbounded
    subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER
    fuzzy_min_length: int = DEFAULT_MIN_FUZZY_LENGTH


def get_sync_config() -> SyncConfig:
    return SyncConfig(
        resync_interval_seconds=float_env_var(
            "TRACEHERB_RESYNC_INTERVAL_SECONDS", DEFAULT_RESYNC_INTERVAL_SECONDS, minimum=0.1
        ),
        resync_timeout_seconds=float_env_var(
            "TRACEHERB_RESYNC_TIMEOUT_SECONDS", DEFAULT_RESYNC_TIMEOUT_SECONDS, minimum=0.1
        ),
        subscriber_buffer=int_env_var("TRACEHERB_SUBSCRIBER_BUFFER", DEFAULT_SUBSCRIBER_BUFFER),
        fuzzy_min_length=int_env_var(
            "TRACEHERB_FUZZY_MIN_LENGTH", DEFAULT_MIN_FUZZY_LENGTH, minimum=1
        ),
    )
