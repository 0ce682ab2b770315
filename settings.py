"""
Runtime configuration for Buurtscore.

Every knob is read from the environment (the CLI loads a .env file first
via python-dotenv). Defaults match the public endpoints and the cache
lifetimes the sources tolerate.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentSettings:
    """Source endpoints, cache lifetimes and radius bounds for one process."""
    report_cache_minutes: int = 1440
    min_radius_meters: int = 200
    max_radius_meters: int = 5000

    pdok_base_url: str = "https://api.pdok.nl"
    cbs_base_url: str = "https://opendata.cbs.nl/ODataApi/odata"
    overpass_base_url: str = "https://overpass-api.de/api/interpreter"
    luchtmeetnet_base_url: str = "https://api.luchtmeetnet.nl"

    # Second-level (SQLite) cache lifetimes for raw source responses
    resolver_cache_minutes: int = 1440
    cbs_cache_minutes: int = 1440
    amenities_cache_minutes: int = 360
    air_cache_minutes: int = 60

    def __post_init__(self):
        if self.min_radius_meters <= 0:
            raise ValueError(
                f"min_radius_meters must be positive, got {self.min_radius_meters}"
            )
        if self.min_radius_meters > self.max_radius_meters:
            raise ValueError(
                f"min_radius_meters ({self.min_radius_meters}) exceeds "
                f"max_radius_meters ({self.max_radius_meters})"
            )
        if self.report_cache_minutes < 0:
            raise ValueError("report_cache_minutes must not be negative")

    @property
    def report_cache_ttl_seconds(self) -> float:
        return self.report_cache_minutes * 60.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EnrichmentSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            report_cache_minutes=_env_int(env, "CONTEXT_REPORT_CACHE_MINUTES", defaults.report_cache_minutes),
            min_radius_meters=_env_int(env, "CONTEXT_MIN_RADIUS_METERS", defaults.min_radius_meters),
            max_radius_meters=_env_int(env, "CONTEXT_MAX_RADIUS_METERS", defaults.max_radius_meters),
            pdok_base_url=_env_url(env, "CONTEXT_PDOK_BASE_URL", defaults.pdok_base_url),
            cbs_base_url=_env_url(env, "CONTEXT_CBS_BASE_URL", defaults.cbs_base_url),
            overpass_base_url=_env_url(env, "OVERPASS_BASE_URL", defaults.overpass_base_url),
            luchtmeetnet_base_url=_env_url(env, "CONTEXT_LUCHTMEETNET_BASE_URL", defaults.luchtmeetnet_base_url),
            resolver_cache_minutes=_env_int(env, "CONTEXT_RESOLVER_CACHE_MINUTES", defaults.resolver_cache_minutes),
            cbs_cache_minutes=_env_int(env, "CONTEXT_CBS_CACHE_MINUTES", defaults.cbs_cache_minutes),
            amenities_cache_minutes=_env_int(env, "CONTEXT_AMENITIES_CACHE_MINUTES", defaults.amenities_cache_minutes),
            air_cache_minutes=_env_int(env, "CONTEXT_AIR_CACHE_MINUTES", defaults.air_cache_minutes),
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using default %d", name, raw, default)
        return default


def _env_url(env: Mapping[str, str], name: str, default: str) -> str:
    raw = (env.get(name) or "").strip()
    return raw.rstrip("/") if raw else default
