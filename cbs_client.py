"""
CBS StatLine (Statistics Netherlands) OData clients.

Two tables feed the report:
  - 85618NED "Kerncijfers wijken en buurten": population, WOZ, income,
    households, education, housing stock, car ownership and distances to
    everyday facilities. One snapshot feeds five report categories.
  - 83765NED: registered crime counts per region, turned into rates per
    1000 residents.

CBS keys regions as 10-character codes (BU/WK/GM prefix, right-padded
with spaces). Lookups walk from neighborhood to district to municipality
and keep the first region CBS has a row for, since small or new
neighborhoods are often suppressed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cancellation import CancelToken, check_cancelled
from location import ResolvedLocation
from source_http import fetch_json

logger = logging.getLogger(__name__)

NEIGHBORHOOD_TABLE = "85618NED"
CRIME_TABLE = "83765NED"

_REGION_CODE_WIDTH = 10

_NEIGHBORHOOD_FIELDS = (
    "WijkenEnBuurten", "SoortRegio_2", "AantalInwoners_5", "Bevolkingsdichtheid_34",
    "GemiddeldeWOZWaardeVanWoningen_36", "HuishoudensMetEenLaagInkomen_73",
    "Mannen_6", "Vrouwen_7", "k_0Tot15Jaar_8", "k_15Tot25Jaar_9", "k_25Tot45Jaar_10",
    "k_45Tot65Jaar_11", "k_65JaarOfOuder_12",
    "Eenpersoonshuishoudens_30", "HuishoudensZonderKinderen_31",
    "HuishoudensMetKinderen_32", "GemiddeldeHuishoudensgrootte_33",
    "MateVanStedelijkheid_125",
    "GemiddeldInkomenPerInkomensontvanger_80", "GemiddeldInkomenPerInwoner_81",
    "BasisonderwijsVmboMbo1_70", "HavoVwoMbo24_71", "HboWo_72",
    "Koopwoningen_41", "HuurwoningenTotaal_42", "InBezitWoningcorporatie_43",
    "InBezitOverigeVerhuurders_44", "BouwjaarVoor2000_46", "BouwjaarVanaf2000_47",
    "PercentageMeergezinswoning_38",
    "PersonenautoSPerHuishouden_112", "PersonenautoSNaarOppervlakte_113",
    "PersonenautoSTotaal_109",
    "AfstandTotHuisartsenpraktijk_115", "AfstandTotGroteSupermarkt_116",
    "AfstandTotKinderdagverblijf_117", "AfstandTotSchool_118", "ScholenBinnen3Km_119",
)

_CRIME_FIELDS = (
    "WijkenEnBuurten", "AantalInwoners_5", "TotaalDiefstalUitWoningSchuurED_106",
    "VernielingMisdrijfTegenOpenbareOrde_107", "GeweldsEnSeksueleMisdrijven_108",
)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class NeighborhoodStats:
    """One CBS 85618NED row. Every figure is optional; CBS suppresses
    small counts for privacy and leaves whole columns empty for new regions."""
    region_code: str
    region_type: str = "Onbekend"
    residents: Optional[int] = None
    population_density: Optional[int] = None      # people/km²
    average_woz_keur: Optional[float] = None      # k€
    low_income_households_pct: Optional[float] = None

    men: Optional[int] = None
    women: Optional[int] = None
    age_0_15: Optional[int] = None
    age_15_25: Optional[int] = None
    age_25_45: Optional[int] = None
    age_45_65: Optional[int] = None
    age_65_plus: Optional[int] = None

    single_households: Optional[int] = None
    households_without_children: Optional[int] = None
    households_with_children: Optional[int] = None
    average_household_size: Optional[float] = None
    urbanity: Optional[str] = None                # "1".."5" or a category name

    average_income_per_recipient: Optional[float] = None  # k€
    average_income_per_inhabitant: Optional[float] = None  # k€
    education_low: Optional[int] = None
    education_medium: Optional[int] = None
    education_high: Optional[int] = None

    # Housing stock, all percentages
    pct_owner_occupied: Optional[int] = None
    pct_rental: Optional[int] = None
    pct_social_housing: Optional[int] = None
    pct_private_rental: Optional[int] = None
    pct_pre_2000: Optional[int] = None
    pct_post_2000: Optional[int] = None
    pct_multi_family: Optional[int] = None

    # Mobility
    cars_per_household: Optional[float] = None
    car_density: Optional[int] = None             # cars/km²
    total_cars: Optional[int] = None

    # Proximity (km by road)
    distance_to_gp_km: Optional[float] = None
    distance_to_supermarket_km: Optional[float] = None
    distance_to_daycare_km: Optional[float] = None
    distance_to_school_km: Optional[float] = None
    schools_within_3km: Optional[float] = None

    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CrimeStats:
    """Registered crime per 1000 residents for one region."""
    total_crimes_per_1000: Optional[int] = None
    burglary_per_1000: Optional[int] = None
    violent_crime_per_1000: Optional[int] = None
    theft_per_1000: Optional[int] = None
    vandalism_per_1000: Optional[int] = None
    year_over_year_change_pct: Optional[float] = None
    region_code: str = ""
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Parsing helpers
# =============================================================================

def _safe_int(value: Any) -> Optional[int]:
    """CBS sends numbers, numeric strings, or null. bool is never a count."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _safe_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def round_half_up(value: float) -> int:
    """Round .5 away from zero (Python's round() is banker's rounding)."""
    if value >= 0:
        return int(value + 0.5)
    return -int(-value + 0.5)


def rate_per_1000(count: Optional[int], residents: Optional[int]) -> Optional[int]:
    """Convert an absolute count to a rate per 1000 residents.

    Without a usable resident count the raw count is returned as-is.
    """
    if count is None:
        return None
    if residents is None or residents <= 0:
        return count
    return round_half_up(count * 1000.0 / residents)


def region_candidates(location: ResolvedLocation) -> List[str]:
    """CBS OData region keys, most specific first."""
    return [code.ljust(_REGION_CODE_WIDTH) for code in location.region_codes()]


def parse_neighborhood_row(row: Dict[str, Any], region_code: str) -> NeighborhoodStats:
    return NeighborhoodStats(
        region_code=_safe_str(row.get("WijkenEnBuurten")) or region_code.strip(),
        region_type=_safe_str(row.get("SoortRegio_2")) or "Onbekend",
        residents=_safe_int(row.get("AantalInwoners_5")),
        population_density=_safe_int(row.get("Bevolkingsdichtheid_34")),
        average_woz_keur=_safe_float(row.get("GemiddeldeWOZWaardeVanWoningen_36")),
        low_income_households_pct=_safe_float(row.get("HuishoudensMetEenLaagInkomen_73")),
        men=_safe_int(row.get("Mannen_6")),
        women=_safe_int(row.get("Vrouwen_7")),
        age_0_15=_safe_int(row.get("k_0Tot15Jaar_8")),
        age_15_25=_safe_int(row.get("k_15Tot25Jaar_9")),
        age_25_45=_safe_int(row.get("k_25Tot45Jaar_10")),
        age_45_65=_safe_int(row.get("k_45Tot65Jaar_11")),
        age_65_plus=_safe_int(row.get("k_65JaarOfOuder_12")),
        single_households=_safe_int(row.get("Eenpersoonshuishoudens_30")),
        households_without_children=_safe_int(row.get("HuishoudensZonderKinderen_31")),
        households_with_children=_safe_int(row.get("HuishoudensMetKinderen_32")),
        average_household_size=_safe_float(row.get("GemiddeldeHuishoudensgrootte_33")),
        urbanity=_safe_str(row.get("MateVanStedelijkheid_125")),
        average_income_per_recipient=_safe_float(row.get("GemiddeldInkomenPerInkomensontvanger_80")),
        average_income_per_inhabitant=_safe_float(row.get("GemiddeldInkomenPerInwoner_81")),
        education_low=_safe_int(row.get("BasisonderwijsVmboMbo1_70")),
        education_medium=_safe_int(row.get("HavoVwoMbo24_71")),
        education_high=_safe_int(row.get("HboWo_72")),
        pct_owner_occupied=_safe_int(row.get("Koopwoningen_41")),
        pct_rental=_safe_int(row.get("HuurwoningenTotaal_42")),
        pct_social_housing=_safe_int(row.get("InBezitWoningcorporatie_43")),
        pct_private_rental=_safe_int(row.get("InBezitOverigeVerhuurders_44")),
        pct_pre_2000=_safe_int(row.get("BouwjaarVoor2000_46")),
        pct_post_2000=_safe_int(row.get("BouwjaarVanaf2000_47")),
        pct_multi_family=_safe_int(row.get("PercentageMeergezinswoning_38")),
        cars_per_household=_safe_float(row.get("PersonenautoSPerHuishouden_112")),
        car_density=_safe_int(row.get("PersonenautoSNaarOppervlakte_113")),
        total_cars=_safe_int(row.get("PersonenautoSTotaal_109")),
        distance_to_gp_km=_safe_float(row.get("AfstandTotHuisartsenpraktijk_115")),
        distance_to_supermarket_km=_safe_float(row.get("AfstandTotGroteSupermarkt_116")),
        distance_to_daycare_km=_safe_float(row.get("AfstandTotKinderdagverblijf_117")),
        distance_to_school_km=_safe_float(row.get("AfstandTotSchool_118")),
        schools_within_3km=_safe_float(row.get("ScholenBinnen3Km_119")),
    )


def parse_crime_row(row: Dict[str, Any], region_code: str) -> CrimeStats:
    residents = _safe_int(row.get("AantalInwoners_5"))
    theft = rate_per_1000(_safe_int(row.get("TotaalDiefstalUitWoningSchuurED_106")), residents)
    vandalism = rate_per_1000(_safe_int(row.get("VernielingMisdrijfTegenOpenbareOrde_107")), residents)
    violent = rate_per_1000(_safe_int(row.get("GeweldsEnSeksueleMisdrijven_108")), residents)

    total = None
    if theft is not None or vandalism is not None or violent is not None:
        total = (theft or 0) + (vandalism or 0) + (violent or 0)

    return CrimeStats(
        total_crimes_per_1000=total,
        # 83765NED only separates theft from homes and sheds, which is burglary
        burglary_per_1000=theft,
        violent_crime_per_1000=violent,
        theft_per_1000=theft,
        vandalism_per_1000=vandalism,
        region_code=_safe_str(row.get("WijkenEnBuurten")) or region_code.strip(),
    )


# =============================================================================
# Clients
# =============================================================================

class _CbsTableClient:
    table: str = ""
    fields: tuple = ()
    service: str = "cbs"

    def __init__(
        self,
        base_url: str = "https://opendata.cbs.nl/ODataApi/odata",
        cache_minutes: int = 1440,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_minutes = cache_minutes

    def _first_row(
        self, location: ResolvedLocation, cancel_token: Optional[CancelToken]
    ) -> Optional[tuple]:
        """Return (row, region_code) for the most specific region with data."""
        for code in region_candidates(location):
            check_cancelled(cancel_token)
            data = fetch_json(
                f"{self.base_url}/{self.table}/TypedDataSet",
                service=self.service,
                endpoint=self.table,
                ttl_minutes=self.cache_minutes,
                params={
                    "$filter": f"WijkenEnBuurten eq '{code}'",
                    "$top": 1,
                    "$select": ",".join(self.fields),
                },
                cancel_token=cancel_token,
            )
            if not isinstance(data, dict):
                continue
            rows = data.get("value")
            if isinstance(rows, list) and rows and isinstance(rows[0], dict):
                return rows[0], code
            logger.debug("CBS %s has no row for region %s", self.table, code.strip())
        return None


class CbsNeighborhoodStatsClient(_CbsTableClient):
    table = NEIGHBORHOOD_TABLE
    fields = _NEIGHBORHOOD_FIELDS
    service = "cbs"

    def fetch(
        self, location: ResolvedLocation, cancel_token: Optional[CancelToken] = None
    ) -> Optional[NeighborhoodStats]:
        hit = self._first_row(location, cancel_token)
        if hit is None:
            return None
        row, code = hit
        stats = parse_neighborhood_row(row, code)
        if stats.residents is None or stats.population_density is None:
            logger.debug("CBS %s partial data for %s", self.table, stats.region_code)
        return stats


class CbsCrimeStatsClient(_CbsTableClient):
    table = CRIME_TABLE
    fields = _CRIME_FIELDS
    service = "cbs_crime"

    def fetch(
        self, location: ResolvedLocation, cancel_token: Optional[CancelToken] = None
    ) -> Optional[CrimeStats]:
        hit = self._first_row(location, cancel_token)
        if hit is None:
            return None
        row, code = hit
        return parse_crime_row(row, code)
