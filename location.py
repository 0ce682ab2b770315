"""
Location resolution via the PDOK Locatieserver.

Turns free text ("Damrak 1 Amsterdam") or a listing URL into a
ResolvedLocation: WGS84 coordinates, RD New coordinates, and the CBS
administrative hierarchy (municipality, district, neighborhood codes)
that the CBS clients key their OData lookups on.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from cancellation import CancelToken
from source_http import fetch_json

logger = logging.getLogger(__name__)

# Query-string parameters that carry an address in map/search URLs, in priority order
_ADDRESS_QUERY_PARAMS = ("q", "query", "address", "location", "loc")

_EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class ResolvedLocation:
    query: str
    display_address: str
    latitude: float
    longitude: float
    rd_x: Optional[float] = None
    rd_y: Optional[float] = None
    municipality_code: Optional[str] = None
    municipality_name: Optional[str] = None
    district_code: Optional[str] = None
    district_name: Optional[str] = None
    neighborhood_code: Optional[str] = None
    neighborhood_name: Optional[str] = None
    postal_code: Optional[str] = None

    def region_codes(self) -> Tuple[str, ...]:
        """CBS region codes from most to least specific, skipping blanks."""
        codes = (self.neighborhood_code, self.district_code, self.municipality_code)
        return tuple(c.strip() for c in codes if c and c.strip())


# =============================================================================
# Pure helpers
# =============================================================================

def normalize_input(text: str) -> str:
    """Reduce raw user input to a PDOK search string.

    Plain text is trimmed. For an absolute http(s) URL, an address query
    parameter wins; otherwise the last path segment is used with - and _
    turned into spaces (listing sites put the address in the slug).
    """
    stripped = text.strip()
    parsed = urlparse(stripped)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return stripped

    params = parse_qs(parsed.query)
    for name in _ADDRESS_QUERY_PARAMS:
        for value in params.get(name, []):
            if value.strip():
                return value.strip()

    segments = [s for s in parsed.path.split("/") if s.strip()]
    if segments:
        slug = unquote(segments[-1]).replace("-", " ").replace("_", " ").strip()
        if "funda.nl" in parsed.netloc.lower() or any(ch.isalpha() for ch in slug):
            return slug

    return stripped


_WKT_POINT = re.compile(r"^POINT\s*\(\s*(\S+)\s+(\S+)\s*\)$", re.IGNORECASE)


def parse_wkt_point(point: Optional[str]) -> Optional[Tuple[float, float]]:
    """Parse 'POINT(x y)' into (x, y). Returns None for anything else."""
    if not point:
        return None
    match = _WKT_POINT.match(point.strip())
    if not match:
        return None
    try:
        return float(match.group(1)), float(match.group(2))
    except ValueError:
        return None


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(a))


def _prefix_code(code: Optional[str], prefix: str) -> Optional[str]:
    if not code or not code.strip():
        return None
    code = code.strip()
    if code.upper().startswith(prefix):
        return code.upper()
    return f"{prefix}{code}"


def _doc_str(doc: dict, key: str) -> Optional[str]:
    value = doc.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# =============================================================================
# PDOK resolver
# =============================================================================

class PdokLocationResolver:
    """Resolves addresses with the PDOK Locatieserver 'free' endpoint.

    fq=type:adres limits matches to concrete addresses so a bare city or
    street name never resolves to an arbitrary centroid.
    """

    def __init__(self, base_url: str = "https://api.pdok.nl", cache_minutes: int = 1440):
        self.base_url = base_url.rstrip("/")
        self.cache_minutes = cache_minutes

    def resolve(
        self, text: str, cancel_token: Optional[CancelToken] = None
    ) -> Optional[ResolvedLocation]:
        if not text or not text.strip():
            return None

        normalized = normalize_input(text)
        data = fetch_json(
            f"{self.base_url}/bzk/locatieserver/search/v3_1/free",
            service="pdok",
            endpoint="free",
            ttl_minutes=self.cache_minutes,
            params={"q": normalized, "fq": "type:adres", "rows": 1},
            cancel_token=cancel_token,
        )
        if not isinstance(data, dict):
            return None

        docs = (data.get("response") or {}).get("docs") or []
        if not docs or not isinstance(docs[0], dict):
            logger.info("PDOK found no address for %r", normalized)
            return None

        doc = docs[0]
        point_ll = parse_wkt_point(doc.get("centroide_ll"))
        point_rd = parse_wkt_point(doc.get("centroide_rd"))
        if point_ll is None:
            logger.warning("PDOK response did not include valid coordinates for %r", normalized)
            return None

        return ResolvedLocation(
            query=text,
            display_address=_doc_str(doc, "weergavenaam") or normalized,
            latitude=point_ll[1],
            longitude=point_ll[0],
            rd_x=point_rd[0] if point_rd else None,
            rd_y=point_rd[1] if point_rd else None,
            municipality_code=_prefix_code(_doc_str(doc, "gemeentecode"), "GM"),
            municipality_name=_doc_str(doc, "gemeentenaam"),
            district_code=_doc_str(doc, "wijkcode"),
            district_name=_doc_str(doc, "wijknaam"),
            neighborhood_code=_doc_str(doc, "buurtcode"),
            neighborhood_name=_doc_str(doc, "buurtnaam"),
            postal_code=_doc_str(doc, "postcode"),
        )
