"""Unit tests for overpass_http.py: cache, retries, error classification, stale fallback.

The source cache is the real SQLite file from conftest; HTTP goes through
a patched requests.Session.post and sleeps are patched out.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from bs_trace import TraceContext, clear_trace, set_trace
from cancellation import CancelToken, RequestCancelled
from models import get_source_cache, set_source_cache, source_cache_key, _get_db
from overpass_http import OverpassHTTPClient, OverpassQueryError, OverpassRateLimitError

QUERY = "[out:json][timeout:25];(nwr(around:1000,52.377140,4.898030)[amenity=school];);out center tags;"


def _mock_response(status_code=200, json_data=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


def _store_stale(data, created_at="2024-01-15T12:00:00+00:00"):
    key = source_cache_key("overpass", QUERY)
    set_source_cache(key, data if isinstance(data, str) else json.dumps(data))
    conn = _get_db()
    conn.execute("UPDATE source_cache SET created_at = ? WHERE cache_key = ?", (created_at, key))
    conn.commit()
    conn.close()


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("overpass_http.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture()
def client():
    return OverpassHTTPClient("https://overpass.example/api/interpreter")


# =========================================================================
# Cache integration
# =========================================================================

class TestCache:
    def test_miss_fetches_and_stores(self, client):
        with patch.object(requests.Session, "post",
                          return_value=_mock_response(200, {"elements": []})) as mock_post:
            assert client.query(QUERY, caller="test") == {"elements": []}

        args, kwargs = mock_post.call_args
        assert args[0] == "https://overpass.example/api/interpreter"
        assert kwargs["data"] == {"data": QUERY}
        assert get_source_cache(source_cache_key("overpass", QUERY), 60) is not None

    def test_hit_skips_http(self, client):
        set_source_cache(source_cache_key("overpass", QUERY), '{"elements": [{"id": 1}]}')
        trace = TraceContext(trace_id="t")
        set_trace(trace)
        try:
            with patch.object(requests.Session, "post") as mock_post:
                assert client.query(QUERY, caller="amenities") == {"elements": [{"id": 1}]}
        finally:
            clear_trace()
        mock_post.assert_not_called()
        assert trace.api_calls[0].provider_status == "cache_hit"
        assert trace.api_calls[0].endpoint == "amenities"

    def test_zero_ttl_bypasses_cache(self, client):
        set_source_cache(source_cache_key("overpass", QUERY), '{"elements": [{"id": 1}]}')
        with patch.object(requests.Session, "post",
                          return_value=_mock_response(200, {"elements": []})):
            assert client.query(QUERY, ttl_minutes=0) == {"elements": []}

    def test_corrupted_entry_falls_through(self, client):
        set_source_cache(source_cache_key("overpass", QUERY), "not valid json{{")
        with patch.object(requests.Session, "post",
                          return_value=_mock_response(200, {"elements": []})):
            assert client.query(QUERY) == {"elements": []}


# =========================================================================
# Errors
# =========================================================================

class TestHTTPErrors:
    def test_429_raises_rate_limit_error(self, client):
        client.MAX_RETRIES = 0
        with patch.object(requests.Session, "post", return_value=_mock_response(429)):
            with pytest.raises(OverpassRateLimitError):
                client.query(QUERY)

    def test_504_raises_query_error(self, client):
        client.MAX_RETRIES = 0
        with patch.object(requests.Session, "post", return_value=_mock_response(504)):
            with pytest.raises(OverpassQueryError, match="504"):
                client.query(QUERY)

    def test_non_json_response(self, client):
        client.MAX_RETRIES = 0
        with patch.object(requests.Session, "post", return_value=_mock_response(200)):
            with pytest.raises(OverpassQueryError, match="non-JSON"):
                client.query(QUERY)

    def test_timeout(self, client):
        client.MAX_RETRIES = 0
        with patch.object(requests.Session, "post", side_effect=requests.Timeout("slow")):
            with pytest.raises(OverpassQueryError, match="timeout"):
                client.query(QUERY)

    def test_rate_limit_remark_in_body(self, client):
        client.MAX_RETRIES = 0
        body = {"elements": [], "remark": "Too many requests, please slow down"}
        with patch.object(requests.Session, "post", return_value=_mock_response(200, body)):
            with pytest.raises(OverpassRateLimitError):
                client.query(QUERY)

    def test_runtime_error_remark_in_body(self, client):
        client.MAX_RETRIES = 0
        body = {"elements": [], "osm3s": {"remark": "runtime error: Query timed out"}}
        with patch.object(requests.Session, "post", return_value=_mock_response(200, body)):
            with pytest.raises(OverpassQueryError, match="server error"):
                client.query(QUERY)


# =========================================================================
# Retry + stale fallback
# =========================================================================

class TestRetryLogic:
    def test_retries_then_succeeds(self, client, _no_sleep):
        responses = [_mock_response(429), _mock_response(503), _mock_response(200, {"elements": []})]
        with patch.object(requests.Session, "post", side_effect=responses) as mock_post:
            assert client.query(QUERY) == {"elements": []}
        assert mock_post.call_count == 3
        backoffs = [c.args[0] for c in _no_sleep.call_args_list if c.args[0] in (2, 4)]
        assert backoffs == [2, 4]

    def test_400_is_not_retried_and_skips_stale(self, client):
        _store_stale({"elements": []})
        with patch.object(requests.Session, "post", return_value=_mock_response(400)) as mock_post:
            with pytest.raises(OverpassQueryError, match="400"):
                client.query(QUERY)
        assert mock_post.call_count == 1

    def test_stale_fallback_after_exhausted_retries(self, client):
        _store_stale({"elements": [{"id": 1, "type": "way"}]})
        with patch.object(requests.Session, "post", return_value=_mock_response(504)):
            result = client.query(QUERY, ttl_minutes=60)
        assert result["elements"] == [{"id": 1, "type": "way"}]
        assert result["_stale"] is True
        assert result["_stale_created_at"] == "2024-01-15T12:00:00+00:00"

    def test_corrupted_stale_entry_reraises(self, client):
        _store_stale("not valid json{{")
        client.MAX_RETRIES = 0
        with patch.object(requests.Session, "post", return_value=_mock_response(504)):
            with pytest.raises(OverpassQueryError, match="504"):
                client.query(QUERY, ttl_minutes=60)

    def test_cancel_during_backoff(self, client):
        token = CancelToken()

        def _post(*args, **kwargs):
            token.cancel()
            return _mock_response(429)

        with patch.object(requests.Session, "post", side_effect=_post) as mock_post:
            with pytest.raises(RequestCancelled):
                client.query(QUERY, cancel_token=token)
        assert mock_post.call_count == 1


class TestIsRetryableError:
    @pytest.mark.parametrize("message,expected", [
        ("Overpass request timeout after 30s", True),
        ("Overpass server error in response body", True),
        ("Overpass request failed: connection reset", True),
        ("Overpass 504 Gateway Timeout", True),
        ("Overpass HTTP 502", True),
        ("Overpass HTTP 400", False),
        ("Overpass returned non-JSON response (HTTP 200)", False),
    ])
    def test_classification(self, message, expected):
        assert OverpassHTTPClient._is_retryable_error(OverpassQueryError(message)) is expected
