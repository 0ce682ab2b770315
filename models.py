"""
SQLite persistence for raw source responses.

A second-level cache underneath the in-process report cache: PDOK, CBS,
Overpass and Luchtmeetnet responses survive process restarts, so a cold
report cache does not mean a burst of calls against the public APIs.

No ORM, just raw sqlite3. Cache errors are logged and swallowed so a
broken or locked database file never breaks a report.
"""

import sqlite3
import os
import hashlib
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("BUURTSCORE_DB_PATH", "buurtscore.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS source_cache (
            cache_key     TEXT PRIMARY KEY,
            source        TEXT NOT NULL,
            response_json TEXT NOT NULL,
            created_at    TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_source_cache_created ON source_cache(created_at);
    """)
    conn.close()


# ---------------------------------------------------------------------------
# Source response cache
# ---------------------------------------------------------------------------

def source_cache_key(source: str, request_text: str) -> str:
    """Deterministic key for one source request (URL, query body, etc.)."""
    digest = hashlib.sha256(request_text.encode()).hexdigest()
    return f"{source}:{digest}"


def _parse_created(created_str: Optional[str]) -> Optional[datetime]:
    if not created_str:
        return None
    try:
        created = datetime.fromisoformat(created_str)
    except (ValueError, TypeError):
        return None
    # Handle naive timestamps by assuming UTC
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


def get_source_cache(cache_key: str, ttl_minutes: int) -> Optional[str]:
    """Look up a cached response by key.

    Returns the raw JSON string if found and younger than *ttl_minutes*,
    else None. A TTL of zero disables the lookup.
    """
    if ttl_minutes <= 0:
        return None
    try:
        conn = _get_db()
        row = conn.execute(
            """SELECT response_json, created_at FROM source_cache
               WHERE cache_key = ?""",
            (cache_key,),
        ).fetchone()
        conn.close()

        if not row:
            return None

        created = _parse_created(row["created_at"])
        if created is None:
            return None
        age = datetime.now(timezone.utc) - created
        if age > timedelta(minutes=ttl_minutes):
            return None  # Expired

        return row["response_json"]
    except Exception:
        logger.warning("Source cache lookup failed", exc_info=True)
        return None


def get_source_cache_stale(cache_key: str) -> Optional[Tuple[str, str]]:
    """Return (response_json, created_at) regardless of age, or None.

    Used only as a fallback when the upstream source is unavailable.
    """
    try:
        conn = _get_db()
        row = conn.execute(
            """SELECT response_json, created_at FROM source_cache
               WHERE cache_key = ?""",
            (cache_key,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return row["response_json"], row["created_at"]
    except Exception:
        logger.warning("Stale source cache lookup failed", exc_info=True)
        return None


def set_source_cache(cache_key: str, response_json: str) -> None:
    """Store a response in the persistent cache."""
    source = cache_key.split(":", 1)[0]
    try:
        conn = _get_db()
        conn.execute(
            """INSERT OR REPLACE INTO source_cache (cache_key, source, response_json, created_at)
               VALUES (?, ?, ?, ?)""",
            (cache_key, source, response_json, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Source cache write failed", exc_info=True)


def purge_source_cache(older_than_minutes: int) -> int:
    """Delete entries older than the given age. Returns rows removed."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
    conn = _get_db()
    cur = conn.execute(
        "DELETE FROM source_cache WHERE created_at < ?",
        (cutoff.isoformat(),),
    )
    conn.commit()
    count = cur.rowcount
    conn.close()
    logger.info("Purged %d source cache rows older than %d minutes", count, older_than_minutes)
    return count
