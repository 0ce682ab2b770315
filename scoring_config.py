"""
Scoring model configuration for Buurtscore.

Owns every numeric constant that turns a raw neighborhood statistic into
a 0-100 metric score: bucket tables, linear formulas, and the urbanity
lookup. Metric builders (metric_builders.py) only decide which function
applies to which field.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.

Bucket tables are step functions, not curves: a value maps to the score
of the first bucket whose upper bound it does not exceed, and to the
fallback score above the last bound. There is no interpolation between
buckets.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class ScoreBucket:
    """Values <= upper_bound score `score` (when no earlier bucket matched)."""
    upper_bound: float
    score: float


@dataclass(frozen=True)
class BucketTable:
    buckets: Tuple[ScoreBucket, ...]
    fallback: float  # score for values above the last upper_bound


@dataclass(frozen=True)
class ProximityThresholds:
    """Distance-to-facility thresholds in km for CBS proximity metrics."""
    optimal_km: float
    acceptable_km: float
    optimal_score: float = 100.0
    acceptable_score: float = 70.0
    far_score: float = 40.0


@dataclass(frozen=True)
class ContextScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    crime_total: BucketTable
    burglary: BucketTable
    violent_crime: BucketTable
    population_density: BucketTable
    amenity_proximity: BucketTable
    pm25: BucketTable
    pm10: BucketTable
    no2: BucketTable
    o3: BucketTable
    private_rental: BucketTable
    proximity_supermarket: ProximityThresholds
    proximity_gp: ProximityThresholds
    proximity_school: ProximityThresholds


def _table(*pairs: Tuple[float, float], fallback: float) -> BucketTable:
    return BucketTable(
        buckets=tuple(ScoreBucket(upper_bound=b, score=s) for b, s in pairs),
        fallback=fallback,
    )


# =============================================================================
# Pure helpers
# =============================================================================

def apply_buckets(table: BucketTable, value: float) -> float:
    """Score of the first bucket whose upper bound is >= value, else fallback."""
    for bucket in table.buckets:
        if value <= bucket.upper_bound:
            return bucket.score
    return table.fallback


def clamp_score(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_half_up(value: float, digits: int = 1) -> float:
    """Round to *digits* decimals with .5 going up.

    Uses floor(x + 0.5) instead of Python's round() to avoid banker's
    rounding, which would turn 72.25 into 72.2.
    """
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percent_of(count: Optional[float], denominator: Optional[float]) -> Optional[float]:
    """count / denominator * 100 to one decimal; None if either side is unusable."""
    if count is None or denominator is None or denominator == 0:
        return None
    return round_half_up(count / denominator * 100.0)


# =============================================================================
# Urbanity
# =============================================================================

class Urbanity(Enum):
    VERY_STRONGLY_URBAN = 1
    STRONGLY_URBAN = 2
    MODERATELY_URBAN = 3
    SLIGHTLY_URBAN = 4
    NOT_URBAN = 5
    UNRECOGNIZED = 0

    @property
    def level(self) -> Optional[int]:
        """CBS 'mate van stedelijkheid' ordinal (1 = most urban)."""
        return None if self is Urbanity.UNRECOGNIZED else self.value


# English labels plus the Dutch ones CBS publishes
_URBANITY_NAMES: Dict[str, Urbanity] = {
    "very strongly urban": Urbanity.VERY_STRONGLY_URBAN,
    "strongly urban": Urbanity.STRONGLY_URBAN,
    "moderately urban": Urbanity.MODERATELY_URBAN,
    "slightly urban": Urbanity.SLIGHTLY_URBAN,
    "not urban": Urbanity.NOT_URBAN,
    "zeer sterk stedelijk": Urbanity.VERY_STRONGLY_URBAN,
    "sterk stedelijk": Urbanity.STRONGLY_URBAN,
    "matig stedelijk": Urbanity.MODERATELY_URBAN,
    "weinig stedelijk": Urbanity.SLIGHTLY_URBAN,
    "niet stedelijk": Urbanity.NOT_URBAN,
}

_URBANITY_SCORES: Dict[Urbanity, float] = {
    Urbanity.VERY_STRONGLY_URBAN: 65.0,
    Urbanity.STRONGLY_URBAN: 85.0,
    Urbanity.MODERATELY_URBAN: 100.0,
    Urbanity.SLIGHTLY_URBAN: 85.0,
    Urbanity.NOT_URBAN: 70.0,
}


def normalize_urbanity(raw: Optional[str]) -> Urbanity:
    """The only place urbanity strings are interpreted.

    Accepts a category name (English or Dutch, any case or spacing) or a
    literal ordinal "1".."5".
    """
    if raw is None:
        return Urbanity.UNRECOGNIZED
    text = " ".join(str(raw).lower().split())
    if text in _URBANITY_NAMES:
        return _URBANITY_NAMES[text]
    if text.isdigit():
        level = int(text)
        for member in Urbanity:
            if member.value == level and member is not Urbanity.UNRECOGNIZED:
                return member
    return Urbanity.UNRECOGNIZED


def score_urbanity(raw: Optional[str]) -> Optional[float]:
    return _URBANITY_SCORES.get(normalize_urbanity(raw))


def urbanity_level(raw: Optional[str]) -> Optional[int]:
    return normalize_urbanity(raw).level


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

SCORING_MODEL = ContextScoringModel(
    version="3.0.0",

    # Registered crimes per 1000 residents
    crime_total=_table((20, 100), (35, 85), (50, 70), (75, 50), (100, 30), fallback=15),
    burglary=_table((2, 100), (5, 80), (10, 60), (15, 40), fallback=20),
    violent_crime=_table((2, 100), (5, 75), (10, 50), fallback=25),

    # People/km². Interior optimum: urban enough for services, not overcrowded.
    population_density=_table(
        (500, 65), (1500, 85), (3500, 100), (7000, 70), fallback=50,
    ),

    # Meters to the nearest amenity of any category
    amenity_proximity=_table(
        (250, 100), (500, 85), (1000, 70), (1500, 55), (2000, 40), fallback=25,
    ),

    # µg/m³, loosely following WHO 2021 guideline steps
    pm25=_table((5, 100), (10, 85), (15, 70), (25, 50), (35, 25), fallback=10),
    pm10=_table((15, 100), (25, 85), (35, 70), (45, 50), (60, 30), fallback=15),
    no2=_table((20, 100), (30, 85), (40, 70), (60, 50), (80, 30), fallback=15),
    o3=_table((60, 100), (90, 85), (120, 70), (150, 50), (180, 30), fallback=15),

    # Share of homes let by private landlords. Some rental market is healthy.
    private_rental=_table((10, 70), (20, 85), (35, 100), (50, 80), fallback=60),

    proximity_supermarket=ProximityThresholds(optimal_km=1.0, acceptable_km=2.5),
    proximity_gp=ProximityThresholds(optimal_km=1.5, acceptable_km=3.0),
    proximity_school=ProximityThresholds(optimal_km=1.0, acceptable_km=3.0),
)


# =============================================================================
# Scoring functions (None in, None out)
# =============================================================================

def _bucket_score(table: BucketTable, value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return apply_buckets(table, value)


def score_crime_rate(per_1000: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.crime_total, per_1000)


def score_burglary(per_1000: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.burglary, per_1000)


def score_violent_crime(per_1000: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.violent_crime, per_1000)


def score_density(people_per_km2: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.population_density, people_per_km2)


def score_amenity_proximity(meters: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.amenity_proximity, meters)


def score_pm25(value: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.pm25, value)


def score_pm10(value: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.pm10, value)


def score_no2(value: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.no2, value)


def score_o3(value: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.o3, value)


def score_private_rental(pct: Optional[float]) -> Optional[float]:
    return _bucket_score(SCORING_MODEL.private_rental, pct)


def score_low_income(pct: Optional[float]) -> Optional[float]:
    if pct is None:
        return None
    return clamp_score(100.0 - pct * 8.0)


def score_woz(woz_keur: Optional[float]) -> Optional[float]:
    if woz_keur is None:
        return None
    return clamp_score((woz_keur - 150.0) / 3.0)


def score_owner_occupied(pct: Optional[float]) -> Optional[float]:
    if pct is None:
        return None
    return clamp_score(pct * 1.25)


def score_income(income_keur: Optional[float]) -> Optional[float]:
    if income_keur is None:
        return None
    return clamp_score((income_keur - 18.0) * 6.5)


def score_amenity_count(total: Optional[int]) -> Optional[float]:
    if total is None:
        return None
    return clamp_score(total * 4.0)


def score_build_mix(pct_pre_2000: Optional[float], pct_post_2000: Optional[float]) -> Optional[float]:
    """Balanced housing ages score high; a single era scores low."""
    if pct_pre_2000 is None and pct_post_2000 is None:
        return None
    if pct_pre_2000 is None or pct_post_2000 is None:
        return 70.0
    return clamp_score(100.0 - abs(pct_pre_2000 - pct_post_2000) * 1.2, 40.0, 100.0)


def score_proximity(km: Optional[float], thresholds: ProximityThresholds) -> Optional[float]:
    if km is None:
        return None
    if km <= thresholds.optimal_km:
        return thresholds.optimal_score
    if km <= thresholds.acceptable_km:
        return thresholds.acceptable_score
    return thresholds.far_score


def score_family_friendly(
    pct_family_households: Optional[float],
    pct_children: Optional[float],
    avg_household_size: Optional[float],
) -> Optional[float]:
    """Composite of family households, young children and household size.

    A missing input contributes nothing (its term is neutral); the score is
    None only when all three are missing.
    """
    if pct_family_households is None and pct_children is None and avg_household_size is None:
        return None
    score = 50.0
    if pct_family_households is not None:
        score += (pct_family_households - 20.0) * 1.5
    if pct_children is not None:
        score += (pct_children - 15.0) * 2.0
    if avg_household_size is not None:
        score += (avg_household_size - 2.0) * 15.0
    return clamp_score(score)


def education_share(
    low: Optional[float], medium: Optional[float], high: Optional[float]
) -> Optional[float]:
    """Percentage with higher education (HBO/WO), one decimal."""
    if low is None or medium is None or high is None:
        return None
    total = low + medium + high
    if total <= 0:
        return None
    return round_half_up(high / total * 100.0)


def score_education(
    low: Optional[float], medium: Optional[float], high: Optional[float]
) -> Optional[float]:
    share = education_share(low, medium, high)
    if share is None:
        return None
    return clamp_score(share * 1.4)
