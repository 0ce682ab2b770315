"""Shared fixtures for the Buurtscore test suite.

Points the source-response cache at a temporary SQLite file and provides
fake source clients plus representative snapshots for report tests.
"""

import atexit
import os
import tempfile
from datetime import datetime, timezone

import pytest

# Point the DB at a temp file BEFORE importing models (it reads DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["BUURTSCORE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

from air_quality import AirQualitySnapshot  # noqa: E402
from amenities import AmenityStats  # noqa: E402
from bs_trace import clear_trace  # noqa: E402
from cbs_client import CrimeStats, NeighborhoodStats  # noqa: E402
from location import ResolvedLocation  # noqa: E402
from models import init_db, _get_db  # noqa: E402

FIXED_TS = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty the source cache before every test."""
    init_db()
    conn = _get_db()
    conn.execute("DELETE FROM source_cache")
    conn.commit()
    conn.close()
    clear_trace()
    yield
    clear_trace()


# =========================================================================
# Representative data (Amsterdam, Burgwallen-Oude Zijde)
# =========================================================================

@pytest.fixture()
def damrak_location():
    return ResolvedLocation(
        query="Damrak 1 Amsterdam",
        display_address="Damrak 1, 1012LG Amsterdam",
        latitude=52.37714,
        longitude=4.89803,
        rd_x=121580.0,
        rd_y=487790.0,
        municipality_code="GM0363",
        municipality_name="Amsterdam",
        district_code="WK036300",
        district_name="Burgwallen-Oude Zijde",
        neighborhood_code="BU03630000",
        neighborhood_name="Kop Zeedijk",
        postal_code="1012LG",
    )


@pytest.fixture()
def neighborhood_stats():
    return NeighborhoodStats(
        region_code="BU03630000",
        region_type="Buurt",
        residents=1000,
        population_density=3000,
        average_woz_keur=450.0,
        low_income_households_pct=5.0,
        men=510,
        women=490,
        age_0_15=150,
        age_15_25=200,
        age_25_45=350,
        age_45_65=200,
        age_65_plus=100,
        single_households=300,
        households_without_children=200,
        households_with_children=100,
        average_household_size=1.8,
        urbanity="1",
        average_income_per_recipient=41.2,
        average_income_per_inhabitant=30.0,
        education_low=100,
        education_medium=200,
        education_high=300,
        pct_owner_occupied=40,
        pct_rental=60,
        pct_social_housing=30,
        pct_private_rental=30,
        pct_pre_2000=80,
        pct_post_2000=20,
        pct_multi_family=95,
        cars_per_household=0.3,
        car_density=1500,
        total_cars=250,
        distance_to_gp_km=0.4,
        distance_to_supermarket_km=0.3,
        distance_to_daycare_km=0.5,
        distance_to_school_km=0.6,
        schools_within_3km=25.0,
        retrieved_at=FIXED_TS,
    )


@pytest.fixture()
def crime_stats():
    return CrimeStats(
        total_crimes_per_1000=45,
        burglary_per_1000=4,
        violent_crime_per_1000=8,
        theft_per_1000=4,
        vandalism_per_1000=33,
        region_code="BU03630000",
        retrieved_at=FIXED_TS,
    )


@pytest.fixture()
def amenity_stats():
    return AmenityStats(
        school_count=3,
        supermarket_count=4,
        park_count=2,
        healthcare_count=5,
        transit_stop_count=10,
        charging_station_count=1,
        nearest_amenity_distance_m=120.0,
        diversity_score=100.0,
        retrieved_at=FIXED_TS,
    )


@pytest.fixture()
def air_snapshot():
    return AirQualitySnapshot(
        station_id="NL49014",
        station_name="Amsterdam-Vondelpark",
        station_distance_m=1850.0,
        pm25=8.0,
        pm10=18.0,
        no2=32.0,
        o3=55.0,
        measured_at=FIXED_TS,
        retrieved_at=FIXED_TS,
    )


# =========================================================================
# Fake collaborators
# =========================================================================

class FakeClient:
    """Source client double: returns a fixed snapshot or raises."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def fetch(self, location, *args, cancel_token=None):
        self.calls.append((location, args))
        if self.error is not None:
            raise self.error
        return self.result


class FakeResolver:
    def __init__(self, location):
        self.location = location
        self.calls = []

    def resolve(self, text, cancel_token=None):
        self.calls.append(text)
        return self.location


@pytest.fixture()
def fake_clients(neighborhood_stats, crime_stats, amenity_stats, air_snapshot):
    return {
        "neighborhood_client": FakeClient(neighborhood_stats),
        "crime_client": FakeClient(crime_stats),
        "amenity_client": FakeClient(amenity_stats),
        "air_quality_client": FakeClient(air_snapshot),
    }
