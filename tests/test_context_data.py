"""Unit tests for context_data.py: concurrent fan-out, failure isolation, cancellation."""

import threading
from datetime import datetime, timezone

import pytest
import requests

from cancellation import CancelToken, RequestCancelled
from context_data import (
    SOURCE_CBS,
    SOURCE_CBS_CRIME,
    SOURCE_LUCHTMEETNET,
    SOURCE_OVERPASS,
    ContextDataProvider,
    unavailable_warning,
)
from conftest import FIXED_TS, FakeClient

NOW = datetime(2025, 3, 2, 8, 0, tzinfo=timezone.utc)


def _provider(**clients):
    return ContextDataProvider(now=lambda: NOW, **clients)


class BlockingClient:
    """Backs off on the cancel token until it fires, like a retrying client."""

    def __init__(self):
        self.started = threading.Event()

    def fetch(self, location, *args, cancel_token=None):
        self.started.set()
        while True:
            cancel_token.sleep(0.01)


# =========================================================================
# Happy path
# =========================================================================

class TestGetSourceData:
    def test_all_sources(self, damrak_location, fake_clients, neighborhood_stats):
        data = _provider(**fake_clients).get_source_data(damrak_location, 1000)
        assert data.neighborhood is neighborhood_stats
        assert data.crime is not None
        assert data.amenities is not None
        assert data.air_quality is not None
        assert data.warnings == ()
        assert data.failed_sources == ()

    def test_radius_only_reaches_amenity_client(self, damrak_location, fake_clients):
        _provider(**fake_clients).get_source_data(damrak_location, 750)
        assert fake_clients["amenity_client"].calls == [(damrak_location, (750,))]
        assert fake_clients["neighborhood_client"].calls == [(damrak_location, ())]

    def test_attributions_base_first_then_fixed_order(self, damrak_location, fake_clients):
        data = _provider(**fake_clients).get_source_data(damrak_location, 1000)
        names = [s.source for s in data.sources]
        assert names == [
            "PDOK Locatieserver",
            "CBS StatLine 85618NED",
            "CBS StatLine 83765NED",
            "OpenStreetMap Overpass",
            "Luchtmeetnet",
        ]
        assert data.sources[0].retrieved_at == NOW
        assert all(s.retrieved_at == FIXED_TS for s in data.sources[1:])

    def test_no_data_is_not_a_failure(self, damrak_location, fake_clients):
        fake_clients["air_quality_client"] = FakeClient(None)
        data = _provider(**fake_clients).get_source_data(damrak_location, 1000)
        assert data.air_quality is None
        assert data.warnings == ()
        assert len(data.sources) == 4


# =========================================================================
# Failure isolation
# =========================================================================

class TestFailureIsolation:
    def test_one_source_raises(self, damrak_location, fake_clients):
        fake_clients["crime_client"] = FakeClient(error=requests.ConnectionError("boom"))
        data = _provider(**fake_clients).get_source_data(damrak_location, 1000)
        assert data.crime is None
        assert data.neighborhood is not None
        assert data.warnings == (unavailable_warning(SOURCE_CBS_CRIME),)
        assert data.failed_sources == (SOURCE_CBS_CRIME,)
        assert "CBS StatLine 83765NED" not in [s.source for s in data.sources]

    def test_any_exception_type_is_isolated(self, damrak_location, fake_clients):
        fake_clients["amenity_client"] = FakeClient(error=KeyError("elements"))
        data = _provider(**fake_clients).get_source_data(damrak_location, 1000)
        assert data.warnings == ("Source Overpass unavailable",)

    def test_total_outage_is_still_a_result(self, damrak_location):
        err = RuntimeError("down")
        data = _provider(
            neighborhood_client=FakeClient(error=err),
            crime_client=FakeClient(error=err),
            amenity_client=FakeClient(error=err),
            air_quality_client=FakeClient(error=err),
        ).get_source_data(damrak_location, 1000)
        assert data.warnings == tuple(
            unavailable_warning(s)
            for s in (SOURCE_CBS, SOURCE_CBS_CRIME, SOURCE_OVERPASS, SOURCE_LUCHTMEETNET)
        )
        assert [s.source for s in data.sources] == ["PDOK Locatieserver"]


# =========================================================================
# Cancellation
# =========================================================================

class TestCancellation:
    def test_already_cancelled(self, damrak_location, fake_clients):
        token = CancelToken()
        token.cancel()
        with pytest.raises(RequestCancelled):
            _provider(**fake_clients).get_source_data(damrak_location, 1000, token)
        assert fake_clients["neighborhood_client"].calls == []

    def test_cancel_during_fan_out(self, damrak_location, fake_clients):
        blocking = BlockingClient()
        fake_clients["air_quality_client"] = blocking
        token = CancelToken()

        def _cancel_when_started():
            blocking.started.wait(2)
            token.cancel()

        threading.Thread(target=_cancel_when_started, daemon=True).start()
        with pytest.raises(RequestCancelled):
            _provider(**fake_clients).get_source_data(damrak_location, 1000, token)

    def test_cancellation_raised_by_client_propagates(self, damrak_location, fake_clients):
        fake_clients["crime_client"] = FakeClient(error=RequestCancelled("stop"))
        with pytest.raises(RequestCancelled):
            _provider(**fake_clients).get_source_data(damrak_location, 1000, CancelToken())
