"""Unit tests for settings.py: defaults, validation, environment overrides."""

import pytest

from settings import EnrichmentSettings


class TestEnrichmentSettings:
    def test_defaults(self):
        s = EnrichmentSettings()
        assert s.min_radius_meters == 200
        assert s.max_radius_meters == 5000
        assert s.report_cache_minutes == 1440
        assert s.report_cache_ttl_seconds == 86400.0

    @pytest.mark.parametrize("kwargs", [
        {"min_radius_meters": 0},
        {"min_radius_meters": 6000},
        {"report_cache_minutes": -1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            EnrichmentSettings(**kwargs)


class TestFromEnv:
    def test_empty_env_gives_defaults(self):
        assert EnrichmentSettings.from_env({}) == EnrichmentSettings()

    def test_overrides(self):
        s = EnrichmentSettings.from_env({
            "CONTEXT_REPORT_CACHE_MINUTES": "30",
            "CONTEXT_MAX_RADIUS_METERS": "3000",
            "OVERPASS_BASE_URL": "http://localhost:12345/api/interpreter/",
            "CONTEXT_AIR_CACHE_MINUTES": " 15 ",
        })
        assert s.report_cache_minutes == 30
        assert s.max_radius_meters == 3000
        assert s.overpass_base_url == "http://localhost:12345/api/interpreter"
        assert s.air_cache_minutes == 15

    def test_non_integer_falls_back(self, caplog):
        s = EnrichmentSettings.from_env({"CONTEXT_MIN_RADIUS_METERS": "abc"})
        assert s.min_radius_meters == 200
        assert "CONTEXT_MIN_RADIUS_METERS" in caplog.text

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("CONTEXT_CBS_CACHE_MINUTES", "5")
        assert EnrichmentSettings.from_env().cbs_cache_minutes == 5

    def test_inconsistent_bounds_rejected(self):
        with pytest.raises(ValueError):
            EnrichmentSettings.from_env({"CONTEXT_MIN_RADIUS_METERS": "800",
                                         "CONTEXT_MAX_RADIUS_METERS": "500"})
