"""
Air quality from the nearest Luchtmeetnet monitoring station.

Luchtmeetnet (RIVM's national network) exposes stations without a
spatial query, so the client discovers every station once (paged list,
then one detail call per station for coordinates), keeps the list in
memory for a day, and picks the nearest station by great-circle
distance. The latest measurements for that station come back in a single
call; PM2.5, PM10, NO2 and O3 are picked out by formula.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from bs_trace import get_trace, set_trace
from cancellation import CancelToken, check_cancelled
from location import ResolvedLocation, haversine_meters
from source_http import fetch_json

logger = logging.getLogger(__name__)

_MAX_STATION_PAGES = 15
_STATION_LIST_TTL_S = 24 * 3600
_STATION_DETAIL_TTL_MINUTES = 48 * 60
_DISCOVERY_WORKERS = 5

SUPPORTED_FORMULAS = ("PM25", "PM10", "NO2", "O3")


@dataclass
class AirQualitySnapshot:
    station_id: str
    station_name: str
    station_distance_m: float
    pm25: Optional[float] = None   # µg/m³
    pm10: Optional[float] = None
    no2: Optional[float] = None
    o3: Optional[float] = None
    measured_at: Optional[datetime] = None
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Station:
    station_id: str
    name: str
    latitude: float
    longitude: float


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def latest_by_formula(measurements: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """First (newest, given desc ordering) measurement per supported formula."""
    latest: Dict[str, Dict[str, Any]] = {}
    for m in measurements:
        if not isinstance(m, dict):
            continue
        formula = str(m.get("formula") or "").upper()
        if formula in SUPPORTED_FORMULAS and formula not in latest:
            if isinstance(m.get("value"), (int, float)):
                latest[formula] = m
    return latest


def nearest_station(
    stations: List[Station], latitude: float, longitude: float
) -> Optional[Tuple[Station, float]]:
    best: Optional[Tuple[Station, float]] = None
    for station in stations:
        distance = haversine_meters(latitude, longitude, station.latitude, station.longitude)
        if best is None or distance < best[1]:
            best = (station, distance)
    return best


class LuchtmeetnetClient:
    def __init__(self, base_url: str = "https://api.luchtmeetnet.nl", cache_minutes: int = 60):
        self.base_url = base_url.rstrip("/")
        self.cache_minutes = cache_minutes
        self._stations: List[Station] = []
        self._stations_loaded_at = 0.0
        self._stations_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Station discovery
    # ------------------------------------------------------------------

    def _fetch_station_ids(self, cancel_token: Optional[CancelToken]) -> List[str]:
        ids: List[str] = []
        for page in range(1, _MAX_STATION_PAGES + 1):
            data = fetch_json(
                f"{self.base_url}/open_api/stations",
                service="luchtmeetnet",
                endpoint="stations",
                ttl_minutes=_STATION_DETAIL_TTL_MINUTES,
                params={"page": page},
                cancel_token=cancel_token,
            )
            if not isinstance(data, dict):
                continue
            rows = data.get("data") or []
            for row in rows:
                if not isinstance(row, dict):
                    continue
                station_id = str(row.get("number") or row.get("id") or "").strip()
                if station_id and station_id not in ids:
                    ids.append(station_id)

            last_page = (data.get("pagination") or {}).get("last_page")
            if not rows or (isinstance(last_page, int) and page >= last_page):
                break
        return ids

    def _fetch_station_detail(
        self, station_id: str, cancel_token: Optional[CancelToken]
    ) -> Optional[Station]:
        data = fetch_json(
            f"{self.base_url}/open_api/stations/{quote(station_id)}",
            service="luchtmeetnet",
            endpoint="station",
            ttl_minutes=_STATION_DETAIL_TTL_MINUTES,
            cancel_token=cancel_token,
        )
        detail = data.get("data") if isinstance(data, dict) else None
        if not isinstance(detail, dict):
            return None
        coords = (detail.get("geometry") or {}).get("coordinates")
        if not isinstance(coords, list) or len(coords) < 2:
            return None
        try:
            lon, lat = float(coords[0]), float(coords[1])
        except (TypeError, ValueError):
            return None
        name = str(detail.get("location") or detail.get("name") or "").strip() or station_id
        return Station(station_id=station_id, name=name, latitude=lat, longitude=lon)

    def get_stations(self, cancel_token: Optional[CancelToken] = None) -> List[Station]:
        with self._stations_lock:
            if self._stations and time.monotonic() - self._stations_loaded_at < _STATION_LIST_TTL_S:
                return self._stations

        logger.info("Starting Luchtmeetnet station discovery")
        station_ids = self._fetch_station_ids(cancel_token)
        parent_trace = get_trace()

        def _detail(station_id: str) -> Optional[Station]:
            set_trace(parent_trace)
            return self._fetch_station_detail(station_id, cancel_token)

        with ThreadPoolExecutor(max_workers=_DISCOVERY_WORKERS) as pool:
            stations = [s for s in pool.map(_detail, station_ids) if s is not None]
        logger.info("Discovered %d Luchtmeetnet stations with coordinates", len(stations))

        if stations:
            with self._stations_lock:
                self._stations = stations
                self._stations_loaded_at = time.monotonic()
        return stations

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def fetch(
        self, location: ResolvedLocation, cancel_token: Optional[CancelToken] = None
    ) -> Optional[AirQualitySnapshot]:
        stations = self.get_stations(cancel_token)
        found = nearest_station(stations, location.latitude, location.longitude)
        if found is None:
            logger.warning("No Luchtmeetnet stations available")
            return None
        station, distance = found

        check_cancelled(cancel_token)
        data = fetch_json(
            f"{self.base_url}/open_api/stations/{quote(station.station_id)}/measurements",
            service="luchtmeetnet",
            endpoint="measurements",
            ttl_minutes=self.cache_minutes,
            params={
                "order_by": "timestamp_measured",
                "order_direction": "desc",
                "page": 1,
            },
            cancel_token=cancel_token,
        )
        rows = data.get("data") if isinstance(data, dict) else None
        latest = latest_by_formula(rows if isinstance(rows, list) else [])
        if not latest:
            logger.warning(
                "Luchtmeetnet measurements for station %s had no supported formulas",
                station.station_id,
            )
            return None

        def _value(formula: str) -> Optional[float]:
            m = latest.get(formula)
            return float(m["value"]) if m else None

        stamps = [_parse_timestamp(m.get("timestamp_measured")) for m in latest.values()]
        stamps = [ts for ts in stamps if ts is not None]
        return AirQualitySnapshot(
            station_id=station.station_id,
            station_name=station.name,
            station_distance_m=round(distance, 1),
            pm25=_value("PM25"),
            pm10=_value("PM10"),
            no2=_value("NO2"),
            o3=_value("O3"),
            measured_at=max(stamps) if stamps else None,
        )
