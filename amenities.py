"""
Everyday amenities around a location, from OpenStreetMap via Overpass.

One union query fetches schools, supermarkets, parks, healthcare,
public transport stops and EV charging stations inside the search radius.
The response is reduced to per-category counts, the distance to the
nearest amenity of any kind, and a diversity score (share of the six
categories present at all).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from cancellation import CancelToken
from location import ResolvedLocation, haversine_meters
from overpass_http import OverpassHTTPClient, OverpassQueryError, OverpassRateLimitError

logger = logging.getLogger(__name__)

AMENITY_CATEGORIES = (
    "school",
    "supermarket",
    "park",
    "healthcare",
    "transit",
    "charging_station",
)

_HEALTHCARE_AMENITIES = frozenset({"hospital", "clinic", "doctors", "pharmacy"})


@dataclass
class AmenityStats:
    school_count: int = 0
    supermarket_count: int = 0
    park_count: int = 0
    healthcare_count: int = 0
    transit_stop_count: int = 0
    charging_station_count: int = 0
    nearest_amenity_distance_m: Optional[float] = None
    diversity_score: float = 0.0  # 0-100
    stale: bool = False
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_count(self) -> int:
        return (
            self.school_count
            + self.supermarket_count
            + self.park_count
            + self.healthcare_count
            + self.transit_stop_count
            + self.charging_station_count
        )


# =============================================================================
# Query + parsing
# =============================================================================

def build_amenity_query(latitude: float, longitude: float, radius_meters: int) -> str:
    """Overpass QL union over every amenity category, with way/relation centers."""
    around = f"around:{int(radius_meters)},{latitude:.6f},{longitude:.6f}"
    selectors = (
        "[amenity=school]",
        "[shop=supermarket]",
        "[leisure=park]",
        '[amenity~"hospital|clinic|doctors|pharmacy"]',
        "[highway=bus_stop]",
        "[railway=station]",
        "[amenity=charging_station]",
    )
    body = "".join(f"nwr({around}){sel};" for sel in selectors)
    return f"[out:json][timeout:25];({body});out center tags;"


def categorize_amenity(tags: Dict[str, Any]) -> Optional[str]:
    amenity = tags.get("amenity")
    if amenity == "school":
        return "school"
    if amenity in _HEALTHCARE_AMENITIES:
        return "healthcare"
    if amenity == "charging_station":
        return "charging_station"
    if tags.get("shop") == "supermarket":
        return "supermarket"
    if tags.get("leisure") == "park":
        return "park"
    if tags.get("highway") == "bus_stop" or tags.get("railway") == "station":
        return "transit"
    return None


def element_coordinates(element: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    """Nodes carry lat/lon; ways and relations carry a center with 'out center'."""
    lat, lon = element.get("lat"), element.get("lon")
    if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
        return float(lat), float(lon)
    center = element.get("center")
    if isinstance(center, dict):
        lat, lon = center.get("lat"), center.get("lon")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
            return float(lat), float(lon)
    return None


def parse_amenity_stats(
    elements: Iterable[Dict[str, Any]], latitude: float, longitude: float
) -> AmenityStats:
    counts = {category: 0 for category in AMENITY_CATEGORIES}
    nearest: Optional[float] = None

    for element in elements:
        if not isinstance(element, dict):
            continue
        coords = element_coordinates(element)
        if coords is None:
            continue

        distance = haversine_meters(latitude, longitude, coords[0], coords[1])
        if nearest is None or distance < nearest:
            nearest = distance

        tags = element.get("tags") or {}
        category = categorize_amenity(tags if isinstance(tags, dict) else {})
        if category is not None:
            counts[category] += 1

    populated = sum(1 for c in counts.values() if c > 0)
    return AmenityStats(
        school_count=counts["school"],
        supermarket_count=counts["supermarket"],
        park_count=counts["park"],
        healthcare_count=counts["healthcare"],
        transit_stop_count=counts["transit"],
        charging_station_count=counts["charging_station"],
        nearest_amenity_distance_m=nearest,
        diversity_score=populated / len(AMENITY_CATEGORIES) * 100.0,
    )


# =============================================================================
# Client
# =============================================================================

class OverpassAmenityClient:
    def __init__(self, http: Optional[OverpassHTTPClient] = None, cache_minutes: int = 360):
        self.http = http or OverpassHTTPClient()
        self.cache_minutes = cache_minutes

    def fetch(
        self,
        location: ResolvedLocation,
        radius_meters: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> Optional[AmenityStats]:
        query = build_amenity_query(location.latitude, location.longitude, radius_meters)
        try:
            data = self.http.query(
                query,
                caller="amenities",
                ttl_minutes=self.cache_minutes,
                cancel_token=cancel_token,
            )
        except (OverpassQueryError, OverpassRateLimitError):
            logger.warning(
                "Overpass amenity lookup failed for (%.5f, %.5f) r=%dm",
                location.latitude, location.longitude, radius_meters,
                exc_info=True,
            )
            return None

        elements = data.get("elements") if isinstance(data, dict) else None
        if not isinstance(elements, list):
            logger.warning("Overpass response had no elements array")
            return None

        stats = parse_amenity_stats(elements, location.latitude, location.longitude)
        stats.stale = bool(data.get("_stale"))
        return stats
