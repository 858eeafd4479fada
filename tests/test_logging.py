"""
Compliance Flow — Structured Logging Tests

Tests:
  - test_required_fields_present — every entry has the base schema
  - test_correlation_id_on_every_event — bound id travels with each line
  - test_bind_keeps_component — bind() swaps only the correlation id
  - test_transition_logged — from/to/actor/version
  - test_log_level_filtering — DEBUG shows successful attempts, INFO hides them
  - test_callback_levels — late/closed/unknown callbacks log at WARNING
  - test_json_parseable — every log line is valid JSON
  - test_exception_fields — exc_info becomes exception.type / message
  - test_reconfigure_no_duplicates — configure_logging twice, one handler
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.logging import (
    ROOT_LOGGER,
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
)


def _capture_logs(level="DEBUG"):
    """Set up a StringIO capture on the compliance_flow logger."""
    buf = io.StringIO()
    configure_logging(level=level, stream=buf)
    return buf


def _parse_log_lines(buf):
    """Parse all JSON lines from buffer."""
    buf.seek(0)
    return [json.loads(line) for line in buf.readlines() if line.strip()]


class _LoggingTestCase(unittest.TestCase):

    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.setLevel(logging.NOTSET)
        root.propagate = True


class TestLogEntrySchema(_LoggingTestCase):

    def test_required_fields_present(self):
        buf = _capture_logs()
        StructuredLogger("req-1").transition("received", "validating", version=2)
        entry = _parse_log_lines(buf)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name",
                    "service.version", "correlation_id", "event"):
            self.assertIn(key, entry)
        self.assertEqual(entry["logger"], "compliance_flow.workflow")
        self.assertEqual(entry["service.name"], "compliance_flow")
        self.assertEqual(entry["level"], "INFO")

    def test_correlation_id_on_every_event(self):
        buf = _capture_logs()
        log = StructuredLogger("req-7")
        log.transition(None, "received", actor="intake")
        log.decision({"branch": "proceed", "action": "notify", "matched_rule": "r1"})
        log.approval_opened("apr_1", 1_700_000_000.0)
        log.action_dispatched("notify", "executed", 12.345)
        entries = _parse_log_lines(buf)
        self.assertEqual(len(entries), 4)
        self.assertTrue(all(e["correlation_id"] == "req-7" for e in entries))
        self.assertEqual(
            [e["event"] for e in entries],
            ["transition", "decision", "approval_opened", "action_dispatched"])
        self.assertEqual(entries[2]["deadline"], "2023-11-14T22:13:20+00:00")
        self.assertEqual(entries[3]["latency_ms"], 12.3)

    def test_bind_keeps_component(self):
        base = StructuredLogger(component="api")
        bound = base.bind("req-9")
        self.assertEqual(bound.component, "api")
        self.assertEqual(bound.correlation_id, "req-9")
        self.assertEqual(base.correlation_id, "")


class TestWorkflowEvents(_LoggingTestCase):

    def test_transition_logged(self):
        buf = _capture_logs()
        StructuredLogger("req-1").transition(
            "enriching", "escalated", actor="crm", version=4,
            escalation_reason="connector_exhausted")
        entry = _parse_log_lines(buf)[0]
        self.assertEqual(entry["from_state"], "enriching")
        self.assertEqual(entry["to_state"], "escalated")
        self.assertEqual(entry["actor"], "crm")
        self.assertEqual(entry["version"], 4)
        self.assertEqual(entry["escalation_reason"], "connector_exhausted")

    def test_request_rejected(self):
        buf = _capture_logs()
        StructuredLogger("req-1").request_rejected([
            {"field": "correlationId", "message": "is required"},
            {"field": "requestedAction", "message": "is required"},
        ])
        entry = _parse_log_lines(buf)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["violation_count"], 2)
        self.assertEqual(entry["fields"], ["correlationId", "requestedAction"])

    def test_connector_exhausted_truncates_error(self):
        buf = _capture_logs()
        StructuredLogger("req-1").connector_exhausted("crm", 3, "x" * 2000)
        entry = _parse_log_lines(buf)[0]
        self.assertEqual(entry["attempts"], 3)
        self.assertEqual(len(entry["error"]), 500)

    def test_halted_is_critical(self):
        buf = _capture_logs()
        StructuredLogger("req-1").halted("disk I/O error")
        self.assertEqual(_parse_log_lines(buf)[0]["level"], "CRITICAL")


class TestLogLevelFiltering(_LoggingTestCase):

    def test_debug_shows_successful_attempts(self):
        buf = _capture_logs("DEBUG")
        StructuredLogger("req-1").connector_attempt(
            {"connector": "crm", "attempt": 1, "status": "success"})
        self.assertEqual(len(_parse_log_lines(buf)), 1)

    def test_info_hides_successful_attempts(self):
        buf = _capture_logs("INFO")
        log = StructuredLogger("req-1")
        log.connector_attempt({"connector": "crm", "attempt": 1, "status": "success"})
        log.connector_attempt({"connector": "crm", "attempt": 2, "status": "retryable_error"})
        entries = _parse_log_lines(buf)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["status"], "retryable_error")

    def test_warning_shows_only_problems(self):
        buf = _capture_logs("WARNING")
        log = StructuredLogger("req-1")
        log.transition("received", "validating")
        log.connector_exhausted("crm", 3, "HTTP 503")
        entries = _parse_log_lines(buf)
        self.assertEqual([e["event"] for e in entries], ["connector_exhausted"])

    def test_callback_levels(self):
        buf = _capture_logs("INFO")
        log = StructuredLogger("req-1")
        for status in ("accepted", "duplicate", "late", "closed", "unknown"):
            log.approval_callback("apr_1", "approve", "alice", status)
        levels = {e["status"]: e["level"] for e in _parse_log_lines(buf)}
        self.assertEqual(levels, {
            "accepted": "INFO", "duplicate": "INFO",
            "late": "WARNING", "closed": "WARNING", "unknown": "WARNING",
        })


class TestJsonFormatter(_LoggingTestCase):

    def test_json_parseable(self):
        buf = _capture_logs()
        get_logger("orchestrator").info("Resuming %s from %s", "req-1", "enriching")
        StructuredLogger("req-1").decision({"branch": "human_review", "reason": {"nested": "obj"}})
        entries = _parse_log_lines(buf)
        self.assertEqual(entries[0]["message"], "Resuming req-1 from enriching")
        self.assertEqual(entries[0]["logger"], "compliance_flow.orchestrator")
        self.assertEqual(entries[1]["branch"], "human_review")

    def test_exception_fields(self):
        record = logging.LogRecord("compliance_flow.api", logging.ERROR, "", 0, "boom", (), None)
        try:
            raise RuntimeError("disk full")
        except RuntimeError:
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["exception.type"], "RuntimeError")
        self.assertEqual(entry["exception.message"], "disk full")

    def test_service_name(self):
        buf = io.StringIO()
        configure_logging(level="INFO", stream=buf, service_name="cf-worker")
        get_logger("api").info("hello")
        self.assertEqual(_parse_log_lines(buf)[0]["service.name"], "cf-worker")

    def test_reconfigure_no_duplicates(self):
        _capture_logs()
        buf = _capture_logs()
        get_logger("store").warning("once")
        self.assertEqual(len(_parse_log_lines(buf)), 1)
        self.assertEqual(len(logging.getLogger(ROOT_LOGGER).handlers), 1)


if __name__ == "__main__":
    unittest.main()
