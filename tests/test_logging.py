#!/usr/bin/env python3
"""
Unit tests for logging setup and sensitive data filtering.
"""

import json
import logging
import logging.handlers
import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scim_sync.logging_setup import JSONFormatter, SensitiveDataFilter, setup_logging


def make_record(msg, *args):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg, *args):
        record = make_record(msg, *args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_key_value_pairs(self):
        self.assertEqual(self.scrub('password=secret123'), 'password=****')
        self.assertEqual(self.scrub('access_token=abc123, retry=1'), 'access_token=****, retry=1')

    def test_json_values(self):
        self.assertEqual(self.scrub('{"bind_password": "topsecret"}'), '{"bind_password": "****"}')

    def test_authorization_headers(self):
        self.assertEqual(self.scrub('Authorization: Bearer abc.def.ghi'), 'Authorization: Bearer ****')
        self.assertEqual(self.scrub('Authorization: Basic dXNlcjpwYXNz'), 'Authorization: Basic ****')

    def test_formatting_args_are_scrubbed(self):
        self.assertEqual(self.scrub('sending %s', 'token=xyz'), 'sending token=****')

    def test_plain_messages_untouched(self):
        self.assertEqual(self.scrub('Creating user a@example.com'), 'Creating user a@example.com')


class TestSetupLogging(unittest.TestCase):
    """Test cases for setup_logging."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = logging.getLogger()
        self.saved_handlers = list(root.handlers)
        self.saved_level = root.level

    def tearDown(self):
        root = logging.getLogger()
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = self.saved_handlers
        root.setLevel(self.saved_level)
        self.temp_dir.cleanup()

    def test_file_and_console_handlers(self):
        setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir.name, 'retention_days': 3}, force=True)

        root = logging.getLogger()
        self.assertEqual(root.level, logging.DEBUG)
        file_handlers = [h for h in root.handlers if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
        self.assertEqual(len(file_handlers), 1)
        self.assertEqual(file_handlers[0].backupCount, 3)
        self.assertTrue(all(any(isinstance(f, SensitiveDataFilter) for f in h.filters) for h in root.handlers))
        self.assertTrue(os.path.exists(os.path.join(self.temp_dir.name, 'app.log')))

    def test_console_disabled_and_no_rotation(self):
        setup_logging({'log_dir': self.temp_dir.name, 'rotation': 'none', 'console_output': False}, force=True)

        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0], logging.FileHandler)
        self.assertNotIsInstance(root.handlers[0], logging.handlers.TimedRotatingFileHandler)

    def test_json_format(self):
        setup_logging({'log_dir': self.temp_dir.name, 'format': 'json', 'console_output': False}, force=True)

        root = logging.getLogger()
        self.assertIsInstance(root.handlers[0].formatter, JSONFormatter)

        line = JSONFormatter().format(make_record('hello %s', 'world'))
        self.assertEqual(json.loads(line)['message'], 'hello world')


if __name__ == '__main__':
    unittest.main()
