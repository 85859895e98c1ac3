#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scim_sync.errors import ProvisioningAPIError
from scim_sync.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call


@patch('scim_sync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self, mock_sleep):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, max_attempts=3), 'ok')
        func.assert_called_once()
        mock_sleep.assert_not_called()

    def test_succeeds_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        self.assertEqual(retry_call(func, max_attempts=3, delay=1.0), 'ok')
        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_backoff_multiplies_delay(self, mock_sleep):
        func = Mock(side_effect=[TimeoutError(), TimeoutError(), 'ok'])

        retry_call(func, max_attempts=3, delay=1.0, backoff=2.0)

        self.assertEqual([c[0][0] for c in mock_sleep.call_args_list], [1.0, 2.0])

    def test_exhausted_attempts_raise(self, mock_sleep):
        error = ProvisioningAPIError("unavailable", status_code=503)
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as context:
            retry_call(func, max_attempts=2, exceptions=(ProvisioningAPIError,))

        self.assertEqual(context.exception.attempts, 2)
        self.assertIs(context.exception.last_exception, error)
        self.assertEqual(context.exception.status_code, 503)

    def test_retry_if_false_reraises_immediately(self, mock_sleep):
        error = ProvisioningAPIError("bad request", status_code=400)
        func = Mock(side_effect=error)

        with self.assertRaises(ProvisioningAPIError):
            retry_call(func, max_attempts=5, retry_if=is_retryable_error)

        func.assert_called_once()

    def test_on_retry_callback(self, mock_sleep):
        callback = Mock()
        func = Mock(side_effect=[ConnectionError('x'), 'ok'])

        retry_call(func, max_attempts=2, on_retry=callback)

        callback.assert_called_once()
        self.assertEqual(callback.call_args[0][0], 1)

    def test_retryable_errors_exhaust_attempts(self, mock_sleep):
        func = Mock(side_effect=ProvisioningAPIError("throttled", status_code=429))

        with self.assertRaises(MaxRetriesExceeded):
            retry_call(func, max_attempts=3, retry_if=is_retryable_error)

        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_retry_callback_logs_request(self, mock_sleep):
        with self.assertLogs('scim_sync.retry', level='WARNING') as logs:
            create_retry_callback('GET /Users')(1, ConnectionError('reset'))

        self.assertIn('GET /Users failed (attempt 1)', logs.output[0])


class TestIsRetryableError(unittest.TestCase):
    """Test cases for is_retryable_error."""

    def test_status_codes(self):
        for status in (429, 500, 502, 503, 504, 599):
            self.assertTrue(is_retryable_error(ProvisioningAPIError("x", status_code=status)), status)
        for status in (400, 401, 403, 404, 409):
            self.assertFalse(is_retryable_error(ProvisioningAPIError("x", status_code=status)), status)

    def test_network_errors(self):
        self.assertTrue(is_retryable_error(ConnectionResetError()))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(OSError("Temporary failure in name resolution")))

    def test_other_errors(self):
        self.assertFalse(is_retryable_error(ValueError("invalid literal")))


if __name__ == '__main__':
    unittest.main()
