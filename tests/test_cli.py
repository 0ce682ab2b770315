"""Unit tests for cli.py: argument handling, exit codes, JSON output."""

import json
from unittest.mock import MagicMock, patch

from bs_trace import get_trace
from cancellation import CancelToken, RequestCancelled
from cli import main
from context_report import ContextReportService, ReportValidationError
from context_data import ContextDataProvider
from report_cache import ReportCache
from conftest import FakeResolver


def _service(damrak_location, fake_clients):
    return ContextReportService(
        FakeResolver(damrak_location), ContextDataProvider(**fake_clients), ReportCache())


class TestMain:
    def test_prints_report_json(self, damrak_location, fake_clients, capsys):
        with patch("context_report.build_default_service",
                   return_value=_service(damrak_location, fake_clients)):
            code = main(["Damrak 1 Amsterdam", "--radius", "800"])

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["radius_meters"] == 800
        assert data["location"]["neighborhood_code"] == "BU03630000"
        assert 0 < data["composite_score"] < 100

    def test_validation_error_exit_code(self, capsys):
        service = MagicMock()
        service.build.side_effect = ReportValidationError("Input is required.")
        with patch("context_report.build_default_service", return_value=service):
            assert main([""]) == 2
        assert "Input is required." in capsys.readouterr().err

    def test_cancelled_exit_code(self):
        service = MagicMock()
        service.build.side_effect = RequestCancelled("stop")
        with patch("context_report.build_default_service", return_value=service):
            assert main(["Damrak 1"]) == 130

    def test_keyboard_interrupt_cancels_token(self):
        service = MagicMock()
        service.build.side_effect = KeyboardInterrupt
        with patch("context_report.build_default_service", return_value=service):
            assert main(["Damrak 1"]) == 130
        token = service.build.call_args.kwargs["cancel_token"]
        assert isinstance(token, CancelToken)
        assert token.cancelled

    def test_trace_flag_prints_trace_to_stderr(self, damrak_location, fake_clients, capsys):
        with patch("context_report.build_default_service",
                   return_value=_service(damrak_location, fake_clients)):
            code = main(["Damrak 1 Amsterdam", "--trace"])

        assert code == 0
        captured = capsys.readouterr()
        trace = json.loads(captured.err[captured.err.index('{\n  "trace_id"'):])
        assert [s["stage"] for s in trace["stages"]] == ["resolve", "fan_out", "score"]
        assert trace["final_outcome"] == "success"
        assert json.loads(captured.out)["composite_score"] > 0
        assert get_trace() is None

    def test_trace_printed_on_validation_error(self, capsys):
        service = MagicMock()
        service.build.side_effect = ReportValidationError("Input is required.")
        with patch("context_report.build_default_service", return_value=service):
            assert main(["", "--trace"]) == 2
        err = capsys.readouterr().err
        assert "Input is required." in err
        assert '"trace_id"' in err
