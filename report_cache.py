"""
In-process TTL cache for finished context reports.

Keys quantize coordinates to 5 decimals (about 1.1 m), so queries that
resolve to the same address collapse onto one entry. Entries expire
individually; there is no size bound because keys are limited by the
distinct locations actually queried.

The store is split into shards, each with its own lock, so concurrent
requests for unrelated locations do not serialize on one lock. Two
requests for the same key may both miss and both compute; the last
write wins.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

KEY_PREFIX = "context-report:v3"


def report_cache_key(latitude: float, longitude: float, radius_meters: int) -> str:
    """'<prefix>:<lat_f5>_<lon_f5>:<radius>' with locale-independent formatting."""
    return f"{KEY_PREFIX}:{latitude:.5f}_{longitude:.5f}:{int(radius_meters)}"


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, Tuple[Any, float]] = {}


class ReportCache:
    DEFAULT_SHARDS = 16

    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._clock = clock

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: str) -> Optional[Any]:
        """Return the cached report, or None if absent or expired."""
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return None
            report, expires_at = entry
            if self._clock() >= expires_at:
                del shard.entries[key]
                logger.debug("[cache] expired %s", key)
                return None
            return report

    def set(self, key: str, report: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        shard = self._shard(key)
        expires_at = self._clock() + ttl_seconds
        with shard.lock:
            shard.entries[key] = (report, expires_at)

    def invalidate(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        removed = 0
        now = self._clock()
        for shard in self._shards:
            with shard.lock:
                stale = [k for k, (_, exp) in shard.entries.items() if now >= exp]
                for k in stale:
                    del shard.entries[k]
                removed += len(stale)
        if removed:
            logger.info("[cache] purged %d expired reports", removed)
        return removed

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
