"""
Per-request tracing for context reports.

A report request runs three timed stages (resolve, fan_out, score) and, inside
them, a handful of outbound calls to PDOK, CBS, Overpass and Luchtmeetnet.
TraceContext collects both so one log line at the end says where the time went
and which source misbehaved. ``buurtscore --trace`` prints the full record.

The context lives in thread-local storage. The fan-out runs clients on pool
threads, so the provider hands the parent context to each worker with
set_trace(); all workers then append to the same TraceContext.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# provider_status values that mean no live request was made
CACHED_STATUSES = frozenset({"cache_hit", "stale_cache"})


@dataclass
class APICallRecord:
    service: str          # pdok | cbs | cbs_crime | overpass | luchtmeetnet
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""

    @property
    def cached(self) -> bool:
        return self.provider_status in CACHED_STATUSES


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage_name,
            "elapsed_ms": self.elapsed_ms,
            "api_calls": self.api_calls_made,
            "error": f"{self.error_class}: {self.error_message}" if self.error_class else None,
        }


@dataclass
class TraceContext:
    """Timing and outbound-call record for one report request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    scoring_version: str = ""
    report_cache_hit: bool = False
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=calls,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)
        self.end_stage()

        if error_class:
            logger.info("  [stage] trace=%s %s failed after %dms (%s: %s)",
                        self.trace_id, stage_name, rec.elapsed_ms, error_class, error_message)
        else:
            logger.info("  [stage] trace=%s %s %dms api_calls=%d",
                        self.trace_id, stage_name, rec.elapsed_ms, calls)

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int(elapsed_ms),
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.debug("  [api] trace=%s %s/%s %dms http=%d %s",
                     self.trace_id, service, endpoint, rec.elapsed_ms,
                     status_code, provider_status or "-")

    def _outcome(self, errored: int) -> str:
        if errored:
            return "error"
        if self.report_cache_hit:
            return "cache_hit"
        return "success" if self.stages else "empty"

    def summary_dict(self) -> Dict[str, Any]:
        """Counts and outcome for the end-of-request log line."""
        errored = sum(1 for s in self.stages if s.error_class)
        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(self.api_calls),
            "cached_api_calls": sum(1 for c in self.api_calls if c.cached),
            "stages_completed": len(self.stages) - errored,
            "stages_errored": errored,
            "final_outcome": self._outcome(errored),
            "calls_by_service": dict(Counter(c.service for c in self.api_calls)),
        }
        if self.scoring_version:
            result["scoring_version"] = self.scoring_version
        return result

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s outcome=%s total_ms=%d api_calls=%d cached=%d "
            "stages=%d/%d",
            s["trace_id"],
            s["final_outcome"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["cached_api_calls"],
            s["stages_completed"],
            s["stages_completed"] + s["stages_errored"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus every stage and call, as printed by ``--trace``."""
        full = self.summary_dict()
        full["stages"] = [s.as_dict() for s in self.stages]
        full["api_calls"] = [asdict(c) for c in self.api_calls]
        return full


_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
