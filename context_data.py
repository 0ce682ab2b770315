"""
Fan-out/fan-in over the four context sources.

ContextDataProvider runs the CBS, CBS crime, Overpass and Luchtmeetnet
clients concurrently on a small thread pool. Each call is isolated: any
exception other than cancellation is logged and turned into a
"Source <name> unavailable" warning with an absent snapshot, so a total
outage still produces a (sparse) result. Cancellation is polled while
waiting and re-raised immediately; workers that have not started yet
are cancelled and running ones observe the same token.

Warnings and attributions follow the fixed source order below, never
completion order.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from air_quality import AirQualitySnapshot
from amenities import AmenityStats
from bs_trace import get_trace, set_trace
from cancellation import CancelToken, RequestCancelled, check_cancelled
from cbs_client import CRIME_TABLE, NEIGHBORHOOD_TABLE, CrimeStats, NeighborhoodStats
from location import ResolvedLocation

logger = logging.getLogger(__name__)

SOURCE_CBS = "CBS"
SOURCE_CBS_CRIME = "CBS Crime"
SOURCE_OVERPASS = "Overpass"
SOURCE_LUCHTMEETNET = "Luchtmeetnet"
SOURCE_ORDER = (SOURCE_CBS, SOURCE_CBS_CRIME, SOURCE_OVERPASS, SOURCE_LUCHTMEETNET)

# Seconds between cancellation checks while waiting on workers
_CANCEL_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class SourceAttribution:
    source: str
    url: str
    license: str
    retrieved_at: datetime


# (attribution name, url, license) per source; the resolver's own entry comes first
_BASE_ATTRIBUTION = ("PDOK Locatieserver", "https://api.pdok.nl", "Publiek")
_ATTRIBUTIONS: Dict[str, Tuple[str, str, str]] = {
    SOURCE_CBS: (f"CBS StatLine {NEIGHBORHOOD_TABLE}", "https://opendata.cbs.nl", "Publiek"),
    SOURCE_CBS_CRIME: (f"CBS StatLine {CRIME_TABLE}", "https://opendata.cbs.nl", "Publiek"),
    SOURCE_OVERPASS: ("OpenStreetMap Overpass", "https://overpass-api.de", "ODbL"),
    SOURCE_LUCHTMEETNET: ("Luchtmeetnet", "https://api.luchtmeetnet.nl", "Publiek"),
}


def unavailable_warning(source: str) -> str:
    return f"Source {source} unavailable"


@dataclass(frozen=True)
class ContextSourceData:
    neighborhood: Optional[NeighborhoodStats] = None
    crime: Optional[CrimeStats] = None
    amenities: Optional[AmenityStats] = None
    air_quality: Optional[AirQualitySnapshot] = None
    sources: Tuple[SourceAttribution, ...] = ()
    warnings: Tuple[str, ...] = ()
    failed_sources: Tuple[str, ...] = field(default=())


class ContextDataProvider:
    """Runs the four source clients concurrently.

    Clients are duck-typed: each exposes fetch(location, [radius,]
    cancel_token=...) and returns a snapshot or None.
    """

    MAX_WORKERS = 4

    def __init__(
        self,
        neighborhood_client,
        crime_client,
        amenity_client,
        air_quality_client,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.neighborhood_client = neighborhood_client
        self.crime_client = crime_client
        self.amenity_client = amenity_client
        self.air_quality_client = air_quality_client
        self._now = now

    def get_source_data(
        self,
        location: ResolvedLocation,
        radius_meters: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> ContextSourceData:
        check_cancelled(cancel_token)
        parent_trace = get_trace()

        def _guarded(source: str, fn: Callable[..., Any], *args) -> Tuple[Any, Optional[str]]:
            """Run one client call in a worker thread, isolating its failure."""
            set_trace(parent_trace)
            t0 = time.time()
            try:
                check_cancelled(cancel_token)
                result = fn(*args, cancel_token=cancel_token)
            except RequestCancelled:
                raise
            except Exception:
                logger.warning(
                    "[fan-out] source %s failed after %.1fs", source, time.time() - t0,
                    exc_info=True,
                )
                return None, unavailable_warning(source)
            logger.info(
                "[fan-out] source %s %s (%.1fs)",
                source, "OK" if result is not None else "no data", time.time() - t0,
            )
            return result, None

        calls = {
            SOURCE_CBS: (self.neighborhood_client.fetch, location),
            SOURCE_CBS_CRIME: (self.crime_client.fetch, location),
            SOURCE_OVERPASS: (self.amenity_client.fetch, location, radius_meters),
            SOURCE_LUCHTMEETNET: (self.air_quality_client.fetch, location),
        }

        pool = ThreadPoolExecutor(max_workers=self.MAX_WORKERS, thread_name_prefix="fan-out")
        try:
            futures = {
                source: pool.submit(_guarded, source, fn, *args)
                for source, (fn, *args) in calls.items()
            }
            pending = set(futures.values())
            while pending:
                if cancel_token is not None and cancel_token.cancelled:
                    for f in pending:
                        f.cancel()
                    raise RequestCancelled("Request was cancelled during source fan-out")
                _, pending = wait(
                    pending,
                    timeout=_CANCEL_POLL_INTERVAL if cancel_token is not None else None,
                    return_when=FIRST_COMPLETED,
                )
            check_cancelled(cancel_token)
            # result() re-raises RequestCancelled observed inside a worker
            outcomes = {source: futures[source].result() for source in SOURCE_ORDER}
        finally:
            # Do not block on workers still unwinding after a cancellation
            pool.shutdown(wait=False, cancel_futures=True)

        snapshots = {source: outcome[0] for source, outcome in outcomes.items()}
        warnings = tuple(outcome[1] for outcome in outcomes.values() if outcome[1])
        failed = tuple(source for source, outcome in outcomes.items() if outcome[1])

        sources = [SourceAttribution(*_BASE_ATTRIBUTION, retrieved_at=self._now())]
        for source in SOURCE_ORDER:
            snapshot = snapshots[source]
            if snapshot is not None:
                name, url, license_ = _ATTRIBUTIONS[source]
                sources.append(SourceAttribution(name, url, license_, snapshot.retrieved_at))

        return ContextSourceData(
            neighborhood=snapshots[SOURCE_CBS],
            crime=snapshots[SOURCE_CBS_CRIME],
            amenities=snapshots[SOURCE_OVERPASS],
            air_quality=snapshots[SOURCE_LUCHTMEETNET],
            sources=tuple(sources),
            warnings=warnings,
            failed_sources=failed,
        )
