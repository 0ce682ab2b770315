"""Unit tests for bs_trace.py: request-scoped tracing.

Tests cover: stage recording, API call attribution, summary outcome,
and thread-local storage.
"""

import threading

from bs_trace import TraceContext, clear_trace, get_trace, set_trace


# =========================================================================
# Stages
# =========================================================================

class TestStageRecording:
    def test_defaults(self):
        ctx = TraceContext(trace_id="t-1")
        assert ctx.stages == []
        assert ctx.api_calls == []
        assert ctx.scoring_version == ""
        assert ctx.report_cache_hit is False
        assert ctx.request_start > 0

    def test_record_stage(self):
        ctx = TraceContext(trace_id="t-1")
        ctx.record_stage("resolve", 100.0, 100.5)
        assert ctx.stages[0].stage_name == "resolve"
        assert ctx.stages[0].elapsed_ms == 500
        assert ctx.stages[0].error_class == ""

    def test_record_errored_stage(self):
        ctx = TraceContext(trace_id="t-1")
        ctx.record_stage("resolve", 100.0, 100.1,
                         error_class="ReportValidationError", error_message="no match")
        assert ctx.stages[0].error_class == "ReportValidationError"
        assert ctx.stages[0].error_message == "no match"

    def test_api_calls_attributed_to_current_stage(self):
        ctx = TraceContext(trace_id="t-1")
        ctx.start_stage("fan_out")
        ctx.record_api_call("cbs", "85618NED", 120, 200, "OK")
        ctx.record_api_call("overpass", "amenities", 0, 200, "cache_hit")
        ctx.record_stage("fan_out", 100.0, 101.0)
        ctx.record_api_call("pdok", "free", 50, 200)

        assert ctx.stages[0].api_calls_made == 2
        assert ctx._current_stage == ""
        assert ctx.api_calls[2].stage == ""


# =========================================================================
# Summary
# =========================================================================

class TestSummary:
    def test_empty(self):
        assert TraceContext(trace_id="t").summary_dict()["final_outcome"] == "empty"

    def test_success(self):
        ctx = TraceContext(trace_id="t", scoring_version="3.0.0")
        ctx.record_stage("resolve", 100.0, 100.1)
        ctx.record_api_call("cbs", "85618NED", 10, 200, "cache_hit")
        s = ctx.summary_dict()
        assert s["final_outcome"] == "success"
        assert s["total_api_calls"] == 1
        assert s["cached_api_calls"] == 1
        assert s["scoring_version"] == "3.0.0"

    def test_stale_fallback_counts_as_cached(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_api_call("cbs", "TypedDataSet", 900, 503, "ERROR")
        ctx.record_api_call("cbs", "stale", 0, 200, "stale_cache")
        ctx.record_api_call("overpass", "amenities", 300, 200, "OK")
        s = ctx.summary_dict()
        assert s["cached_api_calls"] == 1
        assert s["calls_by_service"] == {"cbs": 2, "overpass": 1}

    def test_report_cache_hit(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_stage("resolve", 100.0, 100.1)
        ctx.report_cache_hit = True
        assert ctx.summary_dict()["final_outcome"] == "cache_hit"

    def test_error_wins(self):
        ctx = TraceContext(trace_id="t", report_cache_hit=True)
        ctx.record_stage("score", 100.0, 100.1, error_class="TypeError")
        s = ctx.summary_dict()
        assert s["final_outcome"] == "error"
        assert s["stages_errored"] == 1
        assert s["stages_completed"] == 0

    def test_full_trace_dict(self):
        ctx = TraceContext(trace_id="t")
        ctx.start_stage("fan_out")
        ctx.record_api_call("luchtmeetnet", "measurements", 80, 503, "ERROR")
        ctx.record_stage("fan_out", 100.0, 100.2)
        full = ctx.full_trace_dict()
        assert full["stages"][0]["stage"] == "fan_out"
        assert full["stages"][0]["error"] is None
        assert full["api_calls"][0]["status_code"] == 503
        assert full["api_calls"][0]["stage"] == "fan_out"


# =========================================================================
# Thread-local storage
# =========================================================================

class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_workers_append_to_parent_trace(self):
        parent = TraceContext(trace_id="p")

        def worker(n):
            set_trace(parent)
            for _ in range(50):
                get_trace().record_api_call("cbs", f"ep{n}", 1, 200)
            clear_trace()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(parent.api_calls) == 200

    def test_not_shared_across_threads(self):
        set_trace(TraceContext(trace_id="main"))
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        clear_trace()
        assert seen == [None]
