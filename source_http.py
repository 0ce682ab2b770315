"""
Cache-first JSON GET helper shared by the PDOK, CBS and Luchtmeetnet clients.

Overpass has its own coordinated layer (overpass_http.py) because it needs
POST bodies, rate limiting and retry; the other sources are plain GETs
against well-provisioned government endpoints.

fetch_json() never raises for ordinary unavailability: non-2xx responses,
timeouts, connection errors and malformed JSON all return None (after
trying a stale cache entry). The only exception that escapes is
RequestCancelled.
"""

import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from bs_trace import get_trace
from cancellation import CancelToken, check_cancelled
from models import (
    get_source_cache,
    get_source_cache_stale,
    set_source_cache,
    source_cache_key,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15  # seconds


def _request_text(url: str, params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return url
    return f"{url}?{urlencode(sorted(params.items()))}"


def fetch_json(
    url: str,
    service: str,
    endpoint: str,
    ttl_minutes: int,
    params: Optional[Dict[str, Any]] = None,
    cancel_token: Optional[CancelToken] = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> Optional[Any]:
    """GET *url* and return the parsed JSON body, or None on failure."""
    cache_key = source_cache_key(service, _request_text(url, params))
    trace = get_trace()

    cached = get_source_cache(cache_key, ttl_minutes)
    if cached is not None:
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupted %s cache entry for key %s, refetching", service, cache_key)
        else:
            if trace:
                trace.record_api_call(
                    service=service,
                    endpoint=endpoint,
                    elapsed_ms=0,
                    status_code=200,
                    provider_status="cache_hit",
                )
            return data

    check_cancelled(cancel_token)
    t0 = time.time()
    try:
        resp = requests.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
        elapsed_ms = (time.time() - t0) * 1000

        if trace:
            trace.record_api_call(
                service=service,
                endpoint=endpoint,
                elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
                provider_status="OK" if resp.ok else "ERROR",
            )

        if not resp.ok:
            logger.warning("%s %s returned HTTP %d", service, endpoint, resp.status_code)
            return _stale_or_none(cache_key, service)

        data = resp.json()
    except requests.Timeout:
        logger.warning("%s %s timed out after %ds", service, endpoint, timeout)
        if trace:
            trace.record_api_call(
                service=service,
                endpoint=endpoint,
                elapsed_ms=(time.time() - t0) * 1000,
                status_code=0,
                provider_status="TIMEOUT",
            )
        return _stale_or_none(cache_key, service)
    except (requests.RequestException, ValueError):
        logger.warning("%s %s request failed", service, endpoint, exc_info=True)
        return _stale_or_none(cache_key, service)

    set_source_cache(cache_key, json.dumps(data))
    return data


def _stale_or_none(cache_key: str, service: str) -> Optional[Any]:
    stale = get_source_cache_stale(cache_key)
    if stale is None:
        return None
    json_text, created_at = stale
    try:
        data = json.loads(json_text)
    except (json.JSONDecodeError, TypeError):
        return None
    logger.warning("%s unavailable; serving stale cache from %s", service, created_at)
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=service,
            endpoint="stale",
            elapsed_ms=0,
            status_code=0,
            provider_status="stale_cache",
        )
    return data
