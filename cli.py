"""
Command-line entry point: build one context report and print it as JSON.

    python cli.py "Damrak 1 Amsterdam" --radius 1000 --trace
    buurtscore "https://www.funda.nl/koop/amsterdam/appartement-1234-damrak-1/"

Exit codes: 0 on success, 2 on validation failure (empty input,
unresolvable address), 130 when interrupted.
"""

import argparse
import json
import logging
import os
import sys
import uuid
from typing import List, Optional

from dotenv import load_dotenv

from bs_trace import TraceContext, clear_trace, set_trace
from cancellation import CancelToken, RequestCancelled

logger = logging.getLogger(__name__)


def _init_sentry():
    """Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    import requests.exceptions

    from context_report import ReportValidationError

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            if exc_type is not None and issubclass(exc_type, ReportValidationError):
                sentry_sdk.add_breadcrumb(category="validation", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="source", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, RequestCancelled):
                return None
        return event

    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=0.0,
        environment=os.environ.get("BUURTSCORE_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buurtscore",
        description="Build a neighborhood context report for a Dutch address.",
    )
    parser.add_argument("input", help="Address, postcode + house number, or listing URL")
    parser.add_argument(
        "--radius", type=int, default=1000,
        help="Amenity search radius in meters (clamped to the configured bounds)",
    )
    parser.add_argument("--indent", type=int, default=2, help="JSON indent (0 for compact)")
    parser.add_argument(
        "--trace", action="store_true",
        help="Print stage timings and outbound calls as JSON on stderr",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    _init_sentry()

    # Imported after load_dotenv() so models.DB_PATH sees .env values
    from context_report import (
        ContextReportRequest,
        ReportValidationError,
        build_default_service,
        report_to_dict,
    )
    from models import init_db

    init_db()
    service = build_default_service()
    token = CancelToken()
    trace = TraceContext(trace_id=uuid.uuid4().hex[:12]) if args.trace else None
    if trace:
        set_trace(trace)
    try:
        report = service.build(
            ContextReportRequest(input=args.input, radius_meters=args.radius),
            cancel_token=token,
        )
    except ReportValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        token.cancel()
        return 130
    except RequestCancelled:
        return 130
    finally:
        if trace:
            trace.log_summary()
            print(json.dumps(trace.full_trace_dict(), indent=2), file=sys.stderr)
            clear_trace()

    print(json.dumps(report_to_dict(report), indent=args.indent or None, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
