"""
NLA Oracle — Structured Logging Tests

Tests:
  - JSONFormatter emits one JSON object per line with service fields
  - configure_logging replaces handlers instead of stacking them
  - ArbitrationLogger: trace_id on every line, span_id per fulfillment
  - event_failed carries uid, error_kind, stage, cause
  - DEBUG events suppressed at INFO
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from nla.logging import (
    ArbitrationLogger,
    JSONFormatter,
    configure_logging,
    generate_span_id,
    generate_trace_id,
    get_logger,
)


class LoggingTestCase(unittest.TestCase):

    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="DEBUG", stream=self.buf)

    def tearDown(self):
        root = logging.getLogger("nla")
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)

    def entries(self):
        return [json.loads(line) for line in self.buf.getvalue().splitlines() if line.strip()]


class TestFormatter(LoggingTestCase):

    def test_plain_record(self):
        get_logger("test").info("hello %s", "world")
        entry = self.entries()[0]
        self.assertEqual(entry["message"], "hello world")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "nla.test")
        self.assertEqual(entry["service.name"], "nla_oracle")
        self.assertIn("timestamp", entry)

    def test_exception_fields(self):
        try:
            raise ValueError("bad bytes")
        except ValueError:
            get_logger("test").exception("decode failed")
        entry = self.entries()[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad bytes")

    def test_service_name(self):
        record = logging.LogRecord("nla.x", logging.INFO, "", 0, "m", (), None)
        entry = json.loads(JSONFormatter(service_name="custom").format(record))
        self.assertEqual(entry["service.name"], "custom")


class TestConfigure(LoggingTestCase):

    def test_handlers_not_stacked(self):
        configure_logging(level="INFO", stream=self.buf)
        configure_logging(level="INFO", stream=self.buf)
        self.assertEqual(len(logging.getLogger("nla").handlers), 1)

    def test_level_applied(self):
        configure_logging(level="WARNING", stream=self.buf)
        get_logger("test").info("dropped")
        get_logger("test").warning("kept")
        self.assertEqual([e["message"] for e in self.entries()], ["kept"])


class TestIds(unittest.TestCase):

    def test_lengths(self):
        self.assertEqual(len(generate_trace_id()), 32)
        self.assertEqual(len(generate_span_id()), 16)


class TestArbitrationLogger(LoggingTestCase):

    def test_request_lifecycle_shares_span(self):
        events = ArbitrationLogger(oracle="0xoracle", trace_id="t" * 32)
        events.on_request_received("0xaa", block_number=7)
        events.on_verdict("0xaa", True, provider="OpenAI", model="gpt-4o-mini", latency_ms=12.34)
        events.on_decision_recorded("0xaa", True, tx_hash="0xtx")

        received, verdict, recorded = self.entries()
        self.assertEqual(received["action"], "request_received")
        self.assertEqual(received["block_number"], 7)
        self.assertEqual(verdict["latency_ms"], 12.3)
        self.assertEqual(received["span_id"], verdict["span_id"])
        self.assertEqual(verdict["span_id"], recorded["span_id"])
        for entry in (received, verdict, recorded):
            self.assertEqual(entry["trace_id"], "t" * 32)
            self.assertEqual(entry["oracle"], "0xoracle")

    def test_distinct_spans_per_uid(self):
        events = ArbitrationLogger()
        events.on_request_received("0xaa")
        events.on_request_received("0xbb")
        a, b = self.entries()
        self.assertNotEqual(a["span_id"], b["span_id"])

    def test_event_failed_fields(self):
        events = ArbitrationLogger()
        events.on_request_received("0xaa")
        events.on_event_failed("0xaa", "decode_error", ValueError("short data"), stage="decode_demand")
        failed = self.entries()[-1]
        self.assertEqual(failed["level"], "WARNING")
        self.assertEqual(failed["uid"], "0xaa")
        self.assertEqual(failed["error_kind"], "decode_error")
        self.assertEqual(failed["stage"], "decode_demand")
        self.assertEqual(failed["cause"], "short data")

    def test_cause_truncated(self):
        ArbitrationLogger().on_event_failed("0xaa", "x", "y" * 2000)
        self.assertEqual(len(self.entries()[0]["cause"]), 500)

    def test_poll_failed(self):
        ArbitrationLogger().on_poll_failed(42, ConnectionError("refused"))
        entry = self.entries()[0]
        self.assertEqual(entry["action"], "poll_failed")
        self.assertEqual(entry["from_block"], 42)
        self.assertEqual(entry["error_kind"], "ConnectionError")

    def test_debug_suppressed_at_info(self):
        configure_logging(level="INFO", stream=self.buf)
        events = ArbitrationLogger()
        events.on_duplicate_skipped("0xaa")
        events.on_demand_decoded("0xaa", "OpenAI", "gpt", 10, 20)
        self.assertEqual(self.entries(), [])


if __name__ == "__main__":
    unittest.main()
