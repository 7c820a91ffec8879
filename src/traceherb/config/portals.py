"""Participant portal endpoints polled during resync."""

from __future__ import annotations

from dataclasses import dataclass

from .env import optional_env_var, require_env_vars
from .http_resilience import CacheConfig, RateLimit, ResilienceConfig, RetryPolicy

PORTAL_ROLES = ("originator", "processor", "laboratory", "regulator")
PORTAL_TIMEOUT_SECONDS = 10.0
# Short TTL: several dashboards resyncing at once should hit a portal only once.
# Cached on disk; every poll runs in a fresh event loop with a fresh client.
PORTAL_CACHE_TTL_SECONDS = 2.0


@dataclass(frozen=True, slots=True)
class PortalConfig:
    """Endpoint and client settings for one participant portal."""

    role: str
    base_url: str
    resilience: ResilienceConfig
    batches_path: str = "batches"


def _is_successful_envelope(payload: object) -> bool:
    return isinstance(payload, dict) and payload.get("success", True) is not False


def _portal_resilience(role: str, base_url: str, token: str | None) -> ResilienceConfig:
    headers = {"Accept": "application/json"}
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    return ResilienceConfig(
        name=f"portal-{role}",
        base_url=base_url,
        timeout_seconds=PORTAL_TIMEOUT_SECONDS,
        retry=RetryPolicy(total=2, max_backoff_wait=5.0),
        ratelimit=RateLimit(max_calls=4, per_seconds=1.0),
        cache=CacheConfig(
            backend="sqlite",
            default_ttl_seconds=PORTAL_CACHE_TTL_SECONDS,
            should_cache=_is_successful_envelope,
        ),
        default_headers=headers,
    )


def get_portal_config(role: str) -> PortalConfig | None:
    """Return the portal configured for ``role`` or ``None`` when no URL is set.

    A token without a URL is a half-configured portal and raises
    ``MissingConfigurationError``.
    """

    prefix = f"TRACEHERB_{role.upper()}_PORTAL"
    token = optional_env_var(f"{prefix}_TOKEN")
    if token is None:
        base_url = optional_env_var(f"{prefix}_URL")
        if base_url is None:
            return None
    else:
        url_var = f"{prefix}_URL"
        base_url = require_env_vars([url_var])[url_var].strip()
    normalized = base_url.rstrip("/") + "/"
    return PortalConfig(
        role=role,
        base_url=normalized,
        resilience=_portal_resilience(role, normalized, token),
    )


def get_portal_configs() -> tuple[PortalConfig, ...]:
    configs: list[PortalConfig] = []
    for role in PORTAL_ROLES:
        config = get_portal_config(role)
        if config is not None:
            configs.append(config)
    return tuple(configs)
