#!/usr/bin/env python3
"""
Unit tests for alertsync.logging_utils

Tests cover:
- NDJSON format validation
- Correlation ID fallback and filter
- Correlation ID hand-off to worker threads
- setup_json_logging handler configuration
"""

import json
import logging
import os
import threading
import unittest
from unittest.mock import patch

from alertsync.logging_utils import (
    CorrelationID,
    CorrelationIdFilter,
    NDJSONFormatter,
    setup_json_logging,
    get_logger,
)


def make_record(msg="Test message", exc_info=None):
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestNDJSONFormatter(unittest.TestCase):
    """Test the NDJSON formatter."""

    def setUp(self):
        self.formatter = NDJSONFormatter(service_name="reconciler", version="1.0")

    def test_basic_format(self):
        record = make_record()
        record.correlation_id = "cycle-abc123"

        log_entry = json.loads(self.formatter.format(record))

        self.assertEqual(log_entry["level"], "INFO")
        self.assertEqual(log_entry["message"], "Test message")
        self.assertEqual(log_entry["logger"], "test")
        self.assertEqual(log_entry["service"], "reconciler")
        self.assertEqual(log_entry["version"], "1.0")
        self.assertEqual(log_entry["correlation_id"], "cycle-abc123")
        self.assertIn("timestamp", log_entry)

    def test_correlation_id_fallback(self):
        log_entry = json.loads(self.formatter.format(make_record()))
        self.assertEqual(log_entry["correlation_id"], "system")

    def test_extra_fields_included(self):
        record = make_record()
        record.alert_count = 12
        record.tags = {"db", "web"}  # not JSON serializable

        log_entry = json.loads(self.formatter.format(record))

        self.assertEqual(log_entry["alert_count"], 12)
        self.assertIsInstance(log_entry["tags"], str)

    def test_exception_info(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            import sys
            record = make_record(exc_info=sys.exc_info())

        log_entry = json.loads(self.formatter.format(record))

        self.assertEqual(log_entry["error"]["type"], "ValueError")
        self.assertEqual(log_entry["error"]["message"], "bad row")
        self.assertIn("Traceback", log_entry["error"]["traceback"])


class TestCorrelationID(unittest.TestCase):

    def tearDown(self):
        CorrelationID.clear()

    def test_default_is_system(self):
        CorrelationID.clear()
        self.assertEqual(CorrelationID.get(), "system")

    def test_filter_stamps_current_id(self):
        CorrelationID.set("cycle-1")
        record = make_record()

        CorrelationIdFilter().filter(record)

        self.assertEqual(record.correlation_id, "cycle-1")

    def test_id_is_thread_local(self):
        CorrelationID.set("cycle-main")
        seen = []

        thread = threading.Thread(target=lambda: seen.append(CorrelationID.get()))
        thread.start()
        thread.join()

        self.assertEqual(seen, ["system"])

    def test_bind_carries_id_into_worker_thread(self):
        CorrelationID.set("cycle-main")
        seen = []
        bound = CorrelationID.bind(lambda: seen.append(CorrelationID.get()))

        thread = threading.Thread(target=bound)
        thread.start()
        thread.join()

        self.assertEqual(seen, ["cycle-main"])


class TestSetupJsonLogging(unittest.TestCase):

    def tearDown(self):
        logging.getLogger().handlers.clear()

    @patch.dict(os.environ, {"LOG_JSON_ENABLED": "true", "LOG_LEVEL": "DEBUG"})
    def test_json_enabled(self):
        logger = setup_json_logging("reconciler", "1.0")

        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0].formatter, NDJSONFormatter)
        self.assertEqual(logger.level, logging.DEBUG)

    @patch.dict(os.environ, {"LOG_JSON_ENABLED": "false"})
    def test_text_format_has_correlation_filter(self):
        logger = setup_json_logging("api", "1.0", level="WARNING")

        handler = logger.handlers[0]
        self.assertNotIsInstance(handler.formatter, NDJSONFormatter)
        self.assertTrue(any(isinstance(f, CorrelationIdFilter) for f in handler.filters))

    def test_get_logger_returns_named_logger(self):
        self.assertEqual(get_logger("alertsync.test").name, "alertsync.test")


if __name__ == "__main__":
    unittest.main()
