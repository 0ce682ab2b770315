"""
Metric builders: raw source snapshots -> ContextMetric lists per category.

Each builder is a pure function of one (or, for amenities, two)
snapshots and returns (metrics, warnings). A missing primary snapshot
yields no metrics and one warning naming the source; Demographics,
Housing and Mobility read the same CBS snapshot as Social and stay
silent so a CBS outage is reported once.

Metric order inside a category is fixed by the order of the lists below.
Descriptive metrics (raw counts and shares) carry value only; scored
metrics carry a score exactly when they carry a value.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from air_quality import AirQualitySnapshot
from amenities import AmenityStats
from cbs_client import CRIME_TABLE, NEIGHBORHOOD_TABLE, CrimeStats, NeighborhoodStats
from scoring_config import (
    SCORING_MODEL,
    education_share,
    normalize_urbanity,
    percent_of,
    round_half_up,
    score_amenity_count,
    score_amenity_proximity,
    score_build_mix,
    score_burglary,
    score_crime_rate,
    score_density,
    score_education,
    score_family_friendly,
    score_income,
    score_low_income,
    score_no2,
    score_o3,
    score_owner_occupied,
    score_pm10,
    score_pm25,
    score_private_rental,
    score_proximity,
    score_urbanity,
    score_violent_crime,
    score_woz,
)

SOURCE_CBS = f"CBS StatLine {NEIGHBORHOOD_TABLE}"
SOURCE_CBS_CRIME = f"CBS StatLine {CRIME_TABLE}"
SOURCE_OSM = "OpenStreetMap / Overpass"
SOURCE_LUCHTMEETNET = "Luchtmeetnet Open API"
SOURCE_COMPOSITE = "Buurtscore composite"

WARN_SOCIAL = "CBS neighborhood indicators were unavailable; social score is partial."
WARN_SAFETY = "CBS crime statistics were unavailable; safety score is partial."
WARN_AMENITIES = "OSM amenities were unavailable; amenity score is partial."
WARN_ENVIRONMENT = "Air quality source was unavailable; environment score is partial."

BuilderResult = Tuple[List["ContextMetric"], List[str]]


@dataclass(frozen=True)
class ContextMetric:
    key: str
    label: str
    value: Optional[float]
    unit: Optional[str]
    score: Optional[float]  # 0-100
    source: str
    note: Optional[str] = None


def _num(value) -> Optional[float]:
    return None if value is None else float(value)


def _scored(
    key: str,
    label: str,
    value,
    unit: Optional[str],
    score: Optional[float],
    source: str,
    note: Optional[str] = None,
) -> ContextMetric:
    value = _num(value)
    return ContextMetric(
        key=key,
        label=label,
        value=value,
        unit=unit,
        score=None if value is None else score,
        source=source,
        note=note,
    )


def _info(key: str, label: str, value, unit: Optional[str], source: str,
          note: Optional[str] = None) -> ContextMetric:
    return ContextMetric(key=key, label=label, value=_num(value), unit=unit,
                         score=None, source=source, note=note)


def _composite(key: str, label: str, score: Optional[float]) -> ContextMetric:
    """Derived scores whose value is the score itself."""
    return ContextMetric(key=key, label=label, value=score, unit="score",
                         score=score, source=SOURCE_COMPOSITE)


# =============================================================================
# Social
# =============================================================================

def build_social(cbs: Optional[NeighborhoodStats]) -> BuilderResult:
    if cbs is None:
        return [], [WARN_SOCIAL]

    metrics = [
        _info("residents", "Residents", cbs.residents, "people", SOURCE_CBS),
        _scored("population_density", "Population Density", cbs.population_density,
                "people/km²", score_density(cbs.population_density), SOURCE_CBS),
        _scored("low_income_households", "Low Income Households", cbs.low_income_households_pct,
                "%", score_low_income(cbs.low_income_households_pct), SOURCE_CBS),
        _scored("average_woz", "Average WOZ Value", cbs.average_woz_keur,
                "k€", score_woz(cbs.average_woz_keur), SOURCE_CBS),
    ]
    return metrics, []


# =============================================================================
# Safety
# =============================================================================

def build_safety(crime: Optional[CrimeStats]) -> BuilderResult:
    if crime is None:
        return [], [WARN_SAFETY]

    metrics = [
        _scored("total_crimes", "Total Crimes", crime.total_crimes_per_1000, "per 1000",
                score_crime_rate(crime.total_crimes_per_1000), SOURCE_CBS_CRIME),
        _scored("burglary", "Burglary Rate", crime.burglary_per_1000, "per 1000",
                score_burglary(crime.burglary_per_1000), SOURCE_CBS_CRIME),
        _scored("violent_crime", "Violent Crime", crime.violent_crime_per_1000, "per 1000",
                score_violent_crime(crime.violent_crime_per_1000), SOURCE_CBS_CRIME),
        _info("theft", "Theft Rate", crime.theft_per_1000, "per 1000", SOURCE_CBS_CRIME),
        _info("vandalism", "Vandalism Rate", crime.vandalism_per_1000, "per 1000", SOURCE_CBS_CRIME),
    ]
    return metrics, []


# =============================================================================
# Demographics
# =============================================================================

def _total_households(cbs: NeighborhoodStats) -> Optional[int]:
    parts = (cbs.single_households, cbs.households_without_children, cbs.households_with_children)
    if any(p is None for p in parts):
        return None
    return sum(parts)


def build_demographics(cbs: Optional[NeighborhoodStats]) -> BuilderResult:
    if cbs is None:
        return [], []

    residents = cbs.residents
    households = _total_households(cbs)
    pct_children = percent_of(cbs.age_0_15, residents)
    pct_family = percent_of(cbs.households_with_children, households)

    family_score = score_family_friendly(pct_family, pct_children, cbs.average_household_size)
    income = cbs.average_income_per_inhabitant
    urbanity = normalize_urbanity(cbs.urbanity)

    metrics = [
        _info("age_0_14", "Age 0-14", pct_children, "%", SOURCE_CBS),
        _info("age_15_24", "Age 15-24", percent_of(cbs.age_15_25, residents), "%", SOURCE_CBS),
        _info("age_25_44", "Age 25-44", percent_of(cbs.age_25_45, residents), "%", SOURCE_CBS),
        _info("age_45_64", "Age 45-64", percent_of(cbs.age_45_65, residents), "%", SOURCE_CBS),
        _info("age_65_plus", "Age 65+", percent_of(cbs.age_65_plus, residents), "%", SOURCE_CBS),
        _info("single_households", "Single Households",
              percent_of(cbs.single_households, households), "%", SOURCE_CBS),
        _info("households_with_children", "Households with Children", pct_family, "%", SOURCE_CBS),
        _info("avg_household_size", "Avg Household Size", cbs.average_household_size,
              "people", SOURCE_CBS),
        _composite("family_friendly", "Family-Friendly Score",
                   None if family_score is None else round_half_up(family_score)),
        _scored("average_income", "Average Income per Resident", income, "k€",
                score_income(income), SOURCE_CBS),
        _scored("education_level", "Higher Education Share",
                education_share(cbs.education_low, cbs.education_medium, cbs.education_high),
                "%",
                score_education(cbs.education_low, cbs.education_medium, cbs.education_high),
                SOURCE_CBS),
        _scored("urbanity", "Urbanity Level", urbanity.level, "level",
                score_urbanity(cbs.urbanity), SOURCE_CBS,
                note=urbanity.name.replace("_", " ").lower() if urbanity.level else cbs.urbanity),
    ]
    return metrics, []


# =============================================================================
# Housing
# =============================================================================

def build_housing(cbs: Optional[NeighborhoodStats]) -> BuilderResult:
    if cbs is None:
        return [], []

    metrics = [
        _scored("housing_owner", "Owner-Occupied", cbs.pct_owner_occupied, "%",
                score_owner_occupied(cbs.pct_owner_occupied), SOURCE_CBS),
        _info("housing_rental", "Rental Properties", cbs.pct_rental, "%", SOURCE_CBS),
        _info("housing_social", "Social Housing", cbs.pct_social_housing, "%", SOURCE_CBS),
        _scored("housing_private_rental", "Private Rental", cbs.pct_private_rental, "%",
                score_private_rental(cbs.pct_private_rental), SOURCE_CBS),
        _info("housing_pre2000", "Built Pre-2000", cbs.pct_pre_2000, "%", SOURCE_CBS),
        _info("housing_post2000", "Built Post-2000", cbs.pct_post_2000, "%", SOURCE_CBS),
        _composite("housing_build_mix", "Build-Year Mix",
                   score_build_mix(cbs.pct_pre_2000, cbs.pct_post_2000)),
        _info("housing_multifamily", "Multi-Family Homes", cbs.pct_multi_family, "%", SOURCE_CBS),
    ]
    return metrics, []


# =============================================================================
# Mobility
# =============================================================================

def build_mobility(cbs: Optional[NeighborhoodStats]) -> BuilderResult:
    if cbs is None:
        return [], []

    metrics = [
        _info("mobility_cars_household", "Cars per Household", cbs.cars_per_household,
              "cars", SOURCE_CBS),
        _info("mobility_car_density", "Car Density", cbs.car_density, "cars/km²", SOURCE_CBS),
        _info("mobility_total_cars", "Total Cars", cbs.total_cars, "cars", SOURCE_CBS),
    ]
    return metrics, []


# =============================================================================
# Amenities
# =============================================================================

def build_amenities(
    amenities: Optional[AmenityStats], cbs: Optional[NeighborhoodStats]
) -> BuilderResult:
    metrics: List[ContextMetric] = []
    warnings: List[str] = []

    if amenities is None:
        warnings.append(WARN_AMENITIES)
    else:
        count_score = score_amenity_count(amenities.total_count)
        nearest_m = (None if amenities.nearest_amenity_distance_m is None
                     else round_half_up(amenities.nearest_amenity_distance_m))
        metrics.extend([
            _info("schools", "Schools in Radius", amenities.school_count, "count", SOURCE_OSM),
            _info("supermarkets", "Supermarkets in Radius", amenities.supermarket_count,
                  "count", SOURCE_OSM),
            _info("parks", "Parks in Radius", amenities.park_count, "count", SOURCE_OSM),
            _info("healthcare", "Healthcare in Radius", amenities.healthcare_count,
                  "count", SOURCE_OSM),
            _info("transit_stops", "Transit Stops in Radius", amenities.transit_stop_count,
                  "count", SOURCE_OSM),
            _info("charging_stations", "Charging Stations in Radius",
                  amenities.charging_station_count, "count", SOURCE_OSM),
            _scored("amenity_diversity", "Amenity Diversity",
                    round_half_up(amenities.diversity_score), "score",
                    round_half_up(amenities.diversity_score), SOURCE_OSM),
            _scored("amenity_proximity", "Nearest Amenity Distance", nearest_m,
                    "m", score_amenity_proximity(nearest_m), SOURCE_OSM),
            _scored("amenity_count_score", "Amenity Volume Score", count_score, "score",
                    count_score, SOURCE_OSM),
        ])

    if cbs is not None:
        metrics.extend([
            _scored("dist_supermarket", "Dist. to Supermarket", cbs.distance_to_supermarket_km,
                    "km", score_proximity(cbs.distance_to_supermarket_km,
                                          SCORING_MODEL.proximity_supermarket), SOURCE_CBS),
            _scored("dist_gp", "Dist. to GP", cbs.distance_to_gp_km, "km",
                    score_proximity(cbs.distance_to_gp_km, SCORING_MODEL.proximity_gp),
                    SOURCE_CBS),
            _scored("dist_school", "Dist. to School", cbs.distance_to_school_km, "km",
                    score_proximity(cbs.distance_to_school_km, SCORING_MODEL.proximity_school),
                    SOURCE_CBS),
            _info("dist_daycare", "Dist. to Daycare", cbs.distance_to_daycare_km, "km", SOURCE_CBS),
            _info("schools_3km", "Schools within 3km", cbs.schools_within_3km, "count", SOURCE_CBS),
        ])

    return metrics, warnings


# =============================================================================
# Environment
# =============================================================================

def build_environment(air: Optional[AirQualitySnapshot]) -> BuilderResult:
    if air is None:
        return [], [WARN_ENVIRONMENT]

    metrics = [
        _scored("pm25", "PM2.5", air.pm25, "µg/m³", score_pm25(air.pm25), SOURCE_LUCHTMEETNET),
        _scored("pm10", "PM10", air.pm10, "µg/m³", score_pm10(air.pm10), SOURCE_LUCHTMEETNET),
        _scored("no2", "NO2", air.no2, "µg/m³", score_no2(air.no2), SOURCE_LUCHTMEETNET),
        _scored("o3", "O3", air.o3, "µg/m³", score_o3(air.o3), SOURCE_LUCHTMEETNET),
        _info("air_station", "Nearest Station", None, None, SOURCE_LUCHTMEETNET,
              note=air.station_name),
        _info("air_station_distance", "Distance to Station", air.station_distance_m, "m",
              SOURCE_LUCHTMEETNET),
    ]
    return metrics, []
