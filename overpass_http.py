"""
Coordinated Overpass API HTTP layer.

All Overpass HTTP requests in Buurtscore go through this module.
It provides:
- SQLite cache check before any HTTP request (models.source_cache, per-call TTL)
- Process-local rate limiting: 1 request/second minimum spacing
- Thread-safe request execution (no shared requests.Session)
- Retry with backoff on 429/5xx (2 retries, 2s/4s), interruptible by cancellation
- bs_trace integration for observability

Rate limiting is per-process. When self-hosting Overpass, set
OVERPASS_BASE_URL and lower MIN_SPACING.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

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

DEFAULT_BASE_URL = "https://overpass-api.de/api/interpreter"


class OverpassRateLimitError(Exception):
    """Raised when Overpass returns 429 or rate-limit indicators after all retries are exhausted."""

    pass


class OverpassQueryError(Exception):
    """Raised when Overpass returns a non-retryable error after all retries are exhausted."""

    pass


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 30  # seconds
    DEFAULT_TTL_MINUTES = 360
    MIN_SPACING = 1.0  # seconds between HTTP requests
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]  # seconds

    def __init__(self, base_url: Optional[str] = None):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self.base_url = base_url or DEFAULT_BASE_URL

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query with cache-first, rate-limited HTTP.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier for trace attribution (e.g. "amenities").
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.
            ttl_minutes: Cache TTL for this lookup; None uses DEFAULT_TTL_MINUTES.
            cancel_token: Checked before each attempt and during backoff.

        Returns:
            Parsed JSON response dict from Overpass.

        Raises:
            OverpassRateLimitError: If Overpass returns 429 or rate-limit
                indicators after MAX_RETRIES attempts.
            OverpassQueryError: If Overpass returns a non-retryable error
                after MAX_RETRIES attempts.
            RequestCancelled: If the request is cancelled.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT
        if ttl_minutes is None:
            ttl_minutes = self.DEFAULT_TTL_MINUTES

        # --- Cache check (no lock needed, no rate limiter engagement) ---
        cache_key = source_cache_key("overpass", overpass_ql)
        cached = get_source_cache(cache_key, ttl_minutes)
        if cached is not None:
            try:
                result = json.loads(cached)
            except (json.JSONDecodeError, TypeError):
                # Corrupted cache entry, fall through to HTTP
                logger.warning(
                    "Corrupted Overpass cache entry for key %s, falling through to HTTP",
                    cache_key,
                )
            else:
                trace = get_trace()
                if trace:
                    trace.record_api_call(
                        service="overpass",
                        endpoint=caller,
                        elapsed_ms=0,
                        status_code=200,
                        provider_status="cache_hit",
                    )
                return result

        # --- Rate-limited HTTP ---
        try:
            for attempt in range(1 + self.MAX_RETRIES):
                check_cancelled(cancel_token)
                try:
                    result = self._do_request(overpass_ql, caller, timeout)
                    set_source_cache(cache_key, json.dumps(result))
                    return result
                except (OverpassRateLimitError, OverpassQueryError) as e:
                    retryable = isinstance(e, OverpassRateLimitError) or self._is_retryable_error(e)
                    if attempt < self.MAX_RETRIES and retryable:
                        sleep_time = self.RETRY_BACKOFF[attempt]
                        logger.info(
                            "Overpass %s (attempt %d/%d), sleeping %ds before retry [caller=%s]",
                            "rate limited" if isinstance(e, OverpassRateLimitError) else "query error",
                            attempt + 1,
                            1 + self.MAX_RETRIES,
                            sleep_time,
                            caller,
                        )
                        self._backoff(sleep_time, cancel_token)
                        continue
                    raise
            raise OverpassQueryError("Overpass query failed after all retries")
        except OverpassQueryError as e:
            if not self._is_retryable_error(e):
                raise
            return self._try_stale_fallback(cache_key, caller, e)
        except OverpassRateLimitError as e:
            return self._try_stale_fallback(cache_key, caller, e)

    @staticmethod
    def _backoff(seconds: float, cancel_token: Optional[CancelToken]):
        if cancel_token is not None:
            cancel_token.sleep(seconds)
        else:
            time.sleep(seconds)

    def _do_request(
        self, overpass_ql: str, caller: str, timeout: int
    ) -> Dict[str, Any]:
        """Make a single rate-limited HTTP request to Overpass."""
        # Enforce minimum spacing
        with self._lock:
            now = time.monotonic()
            elapsed_since_last = now - self._last_request_time
            if elapsed_since_last < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - elapsed_since_last)
            self._last_request_time = time.monotonic()

        # Fresh session per request (thread-safe, no shared state)
        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = ""):
            if trace:
                trace.record_api_call(
                    service="overpass",
                    endpoint=caller,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                )

        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.post(
                self.base_url,
                data={"data": overpass_ql},
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise OverpassQueryError(
                f"Overpass request timeout after {timeout}s [caller={caller}]"
            )
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise OverpassQueryError(
                f"Overpass request failed: {e} [caller={caller}]"
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            _record(429, "rate_limit")
            raise OverpassRateLimitError(
                f"Overpass 429 Too Many Requests [caller={caller}]"
            )
        if status_code == 504:
            _record(504, "timeout")
            raise OverpassQueryError(
                f"Overpass 504 Gateway Timeout [caller={caller}]"
            )
        if status_code >= 400:
            _record(status_code, "http_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [caller={caller}]"
            )

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")

        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            _record(status_code, "rate_limit")
            raise OverpassRateLimitError(
                f"Overpass rate limit in response body [caller={caller}]"
            )
        if any(
            indicator in remark_lower
            for indicator in ("runtime error", "timed out", "out of memory")
        ):
            _record(status_code, "body_error")
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]"
            )

        _record(status_code)
        return data

    @staticmethod
    def _try_stale_fallback(
        cache_key: str, caller: str, original_exc: Exception
    ) -> Dict[str, Any]:
        """Attempt to serve stale cache after an availability failure.

        Raises the original exception if no usable stale entry exists.
        """
        stale = get_source_cache_stale(cache_key)
        if stale is not None:
            json_text, created_at = stale
            try:
                result = json.loads(json_text)
            except (json.JSONDecodeError, TypeError):
                raise original_exc
            logger.warning(
                "Overpass unavailable for %s; serving stale cache from %s",
                caller,
                created_at,
            )
            result["_stale"] = True
            result["_stale_created_at"] = created_at
            trace = get_trace()
            if trace:
                trace.record_api_call(
                    service="overpass",
                    endpoint=caller,
                    elapsed_ms=0,
                    status_code=0,
                    provider_status="stale_cache",
                )
            return result
        raise original_exc

    @staticmethod
    def _is_retryable_error(e: Exception) -> bool:
        """5xx errors, timeouts, and server body errors are retryable. 4xx are not."""
        msg = str(e).lower()
        if "timeout" in msg or "server error" in msg or "request failed" in msg:
            return True
        for code in ("500", "502", "503", "504"):
            if code in msg:
                return True
        return False
